"""
Aggregator: typed records -> daily buckets

Every bucket is keyed by the record's creation day (YYYY-MM-DD), never by
fetch time, so re-fetching a historical window only ever replaces existing
keys. Daily buckets are the only durable state; analytics.py derives every
aggregate from them.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

from crmpulse.models.records import UNKNOWN, ContactRecord, DealRecord, PipelineDefinition, PipelineIndex
from crmpulse.models.snapshot import CONTACTS, DAILY_KEYS, DEALS
from crmpulse.utils.logger import log


@dataclass(frozen=True)
class EntityBuckets:
    """All daily buckets of one entity type"""
    entity: str
    daily: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    undated: int = 0

    def days(self) -> Sequence[str]:
        primary = DAILY_KEYS[self.entity][0]
        return sorted(self.daily.get(primary, {}))


def _plain(value: Any) -> Any:
    """defaultdict trees -> plain dicts with sorted keys"""
    if isinstance(value, dict):
        return {k: _plain(value[k]) for k in sorted(value)}
    return value


def aggregate_contacts(records: Iterable[ContactRecord]) -> EntityBuckets:
    daily_creation: Dict[str, int] = defaultdict(int)
    daily_by_source = defaultdict(lambda: defaultdict(int))
    daily_by_lifecycle = defaultdict(lambda: defaultdict(int))
    daily_conversions = defaultdict(lambda: {"contacts_with_events": 0, "events": 0})
    undated = 0

    for contact in records:
        day = contact.day
        if day is None:
            undated += 1
            continue

        daily_creation[day] += 1
        daily_by_source[day][contact.source or UNKNOWN] += 1
        daily_by_lifecycle[day][contact.lifecycle_stage or UNKNOWN] += 1

        conversions = daily_conversions[day]
        conversions["events"] += contact.num_conversion_events
        if contact.num_conversion_events > 0:
            conversions["contacts_with_events"] += 1

    if undated:
        log.warning(f"{undated} contacts without a creation date were left out of the daily buckets")

    return EntityBuckets(
        entity=CONTACTS,
        daily={
            "daily_creation": _plain(daily_creation),
            "daily_by_source": _plain(daily_by_source),
            "daily_by_lifecycle": _plain(daily_by_lifecycle),
            "daily_conversions": {day: dict(daily_conversions[day]) for day in sorted(daily_conversions)},
        },
        undated=undated,
    )


def aggregate_deals(
    records: Iterable[DealRecord],
    pipelines: Sequence[PipelineDefinition],
    source_map: Optional[Mapping[str, str]] = None,
) -> EntityBuckets:
    """
    Bucket deals by creation day.

    Pipeline and stage ids are stored by display name; deals without a
    resolved source count under "unknown"; only positive amounts count as
    revenue.
    """
    index = PipelineIndex(pipelines)
    source_map = source_map or {}

    daily_deals: Dict[str, int] = defaultdict(int)
    daily_by_pipeline = defaultdict(lambda: defaultdict(int))
    daily_by_pipeline_stage = defaultdict(lambda: defaultdict(lambda: defaultdict(int)))
    daily_source_by_pipeline = defaultdict(lambda: defaultdict(lambda: defaultdict(int)))
    daily_revenue = defaultdict(lambda: defaultdict(float))
    undated = 0

    for deal in records:
        day = deal.day
        if day is None:
            undated += 1
            continue

        pipeline_name = index.pipeline_name(deal.pipeline_id)
        stage_name = index.stage_name(deal.stage_id, deal.pipeline_id)
        source = source_map.get(deal.id, UNKNOWN)

        daily_deals[day] += 1
        daily_by_pipeline[day][pipeline_name] += 1
        daily_by_pipeline_stage[day][pipeline_name][stage_name] += 1
        daily_source_by_pipeline[day][pipeline_name][source] += 1
        day_revenue = daily_revenue[day]
        if deal.amount > 0:
            day_revenue[pipeline_name] += deal.amount

    if undated:
        log.warning(f"{undated} deals without a creation date were left out of the daily buckets")

    revenue = {
        day: {name: round(amount, 2) for name, amount in sorted(by_pipeline.items())}
        for day, by_pipeline in sorted(daily_revenue.items())
    }

    return EntityBuckets(
        entity=DEALS,
        daily={
            "daily_deals": _plain(daily_deals),
            "daily_by_pipeline": _plain(daily_by_pipeline),
            "daily_by_pipeline_stage": _plain(daily_by_pipeline_stage),
            "daily_source_by_pipeline": _plain(daily_source_by_pipeline),
            "daily_revenue": revenue,
        },
        undated=undated,
    )


def aggregate(
    contacts: Iterable[ContactRecord],
    deals: Iterable[DealRecord],
    pipelines: Sequence[PipelineDefinition],
    source_map: Optional[Mapping[str, str]] = None,
) -> Dict[str, EntityBuckets]:
    """Daily buckets for every tracked entity"""
    return {
        CONTACTS: aggregate_contacts(contacts),
        DEALS: aggregate_deals(deals, pipelines, source_map),
    }


SCALAR_DAILY_KEYS = ("daily_creation", "daily_deals")


def empty_day_value(key: str) -> Any:
    """Bucket value for a covered day that had no records"""
    if key in SCALAR_DAILY_KEYS:
        return 0
    if key == "daily_conversions":
        return {"contacts_with_events": 0, "events": 0}
    return {}


def restrict_to_days(buckets: EntityBuckets, days: Iterable[str]) -> EntityBuckets:
    """
    Keep exactly `days` in every daily bucket.

    Days outside the set are dropped (e.g. a partially fetched edge day);
    covered days without records get an empty entry so that a merge replaces
    stale counts for records deleted upstream.
    """
    wanted = sorted(set(days))
    daily = {}
    for key in DAILY_KEYS[buckets.entity]:
        current = buckets.daily.get(key, {})
        daily[key] = {
            day: current[day] if day in current else empty_day_value(key)
            for day in wanted
        }
    return EntityBuckets(entity=buckets.entity, daily=daily, undated=buckets.undated)
