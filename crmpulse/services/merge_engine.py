"""
Merge engine

Incremental runs only fetch the last few days. Their daily buckets replace the
same dates of the stored snapshot wholesale (never added to them), then every
aggregate is recomputed from the merged buckets. Neither input is modified.
"""
import copy
from typing import Any, Dict, Mapping, Sequence

from crmpulse.models.records import PipelineDefinition, visible_pipelines
from crmpulse.models.snapshot import (
    CONTACTS,
    DAILY_KEYS,
    DEALS,
    ENTITIES,
    MODE_FULL,
    MODE_INCREMENTAL,
    FreshFetch,
    Snapshot,
    SnapshotMetadata,
)
from crmpulse.services.analytics import derive_contact_aggregates, derive_deal_aggregates
from crmpulse.utils.logger import log


def merge_daily(existing_daily: Mapping[str, Any], fresh_daily: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Date-level overwrite: each day in `fresh_daily` replaces that day in
    `existing_daily`. Result is sorted by day.
    """
    merged = {day: copy.deepcopy(value) for day, value in existing_daily.items()}
    for day, value in fresh_daily.items():
        merged[day] = copy.deepcopy(value)
    return dict(sorted(merged.items()))


def _entity_section(
    entity: str,
    daily: Mapping[str, Mapping[str, Any]],
    pipelines: Sequence[PipelineDefinition],
) -> Dict[str, Any]:
    """Derived aggregates plus the daily buckets they were derived from"""
    if entity == CONTACTS:
        section = derive_contact_aggregates(daily)
    else:
        section = derive_deal_aggregates(daily, pipelines)
    for key in DAILY_KEYS[entity]:
        section[key] = dict(sorted(daily.get(key, {}).items()))
    return section


def _snapshot(
    fresh: FreshFetch,
    daily: Mapping[str, Mapping[str, Mapping[str, Any]]],
    mode: str,
    last_full_run: str,
) -> Snapshot:
    return Snapshot(
        timestamp=fresh.timestamp,
        contacts=_entity_section(CONTACTS, daily[CONTACTS], fresh.pipelines),
        deals=_entity_section(DEALS, daily[DEALS], fresh.pipelines),
        pipelines=visible_pipelines(fresh.pipelines, fresh.excluded_pipeline_markers),
        campaigns=copy.deepcopy(dict(fresh.campaigns)),
        campaign_performance=tuple(copy.deepcopy(list(fresh.campaign_performance))),
        metadata=SnapshotMetadata(
            mode=mode,
            last_full_run=last_full_run,
            lookback_days=fresh.lookback_days,
            client=fresh.client,
            coverage_gaps=tuple(fresh.coverage_gaps),
            undated_records=dict(fresh.undated),
        ),
    )


def build_full_snapshot(fresh: FreshFetch) -> Snapshot:
    """Snapshot from a full rebuild; the fresh buckets are the whole history"""
    daily = {
        entity: {key: copy.deepcopy(dict(fresh.daily.get(entity, {}).get(key, {}))) for key in DAILY_KEYS[entity]}
        for entity in ENTITIES
    }
    return _snapshot(fresh, daily, MODE_FULL, fresh.timestamp)


def merge_snapshots(existing: Snapshot, fresh: FreshFetch) -> Snapshot:
    """
    Merge an incremental fetch into the stored snapshot.

    Args:
        existing: Last persisted snapshot
        fresh: Buckets and reference data of this run

    Returns:
        New snapshot: merged buckets, recomputed aggregates, fresh reference
        data, and the existing snapshot's last full run
    """
    daily = {}
    for entity in ENTITIES:
        existing_daily = existing.daily(entity)
        fresh_daily = fresh.daily.get(entity, {})
        daily[entity] = {
            key: merge_daily(existing_daily.get(key, {}), fresh_daily.get(key, {}))
            for key in DAILY_KEYS[entity]
        }
        replaced = len(fresh_daily.get(DAILY_KEYS[entity][0], {}))
        log.info(f"Merged {entity}: {replaced} days refreshed, {len(daily[entity][DAILY_KEYS[entity][0]])} days total")

    last_full_run = existing.metadata.last_full_run or existing.timestamp
    return _snapshot(fresh, daily, MODE_INCREMENTAL, last_full_run)
