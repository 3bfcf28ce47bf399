"""
Analytics: daily buckets -> derived aggregates

Pure recomputation. Every total, distribution and rate is rebuilt by scanning
the daily buckets, so a snapshot's aggregates always agree with its buckets
no matter how many incremental merges produced them.
"""
from collections import defaultdict
from typing import Any, Dict, Mapping, Sequence

from crmpulse.models.records import PipelineDefinition, PipelineIndex
from crmpulse.services.stage_classifier import LOST, WON, classify_stage
from crmpulse.utils.helpers import month_key, round_to, safe_divide


def _sum_scalar(daily: Mapping[str, Any]) -> int:
    return sum(daily.values())


def _sum_by_month(daily: Mapping[str, Any]) -> Dict[str, int]:
    monthly: Dict[str, int] = defaultdict(int)
    for day, count in daily.items():
        monthly[month_key(day)] += count
    return dict(sorted(monthly.items()))


def _sum_nested(daily: Mapping[str, Mapping[str, Any]]) -> Dict[str, Any]:
    """Collapse {day: {key: n | {...}}} into {key: n | {...}}"""
    totals: Dict[str, Any] = {}
    for by_key in daily.values():
        _add_into(totals, by_key)
    return _sorted(totals)


def _add_into(target: Dict[str, Any], source: Mapping[str, Any]):
    for key, value in source.items():
        if isinstance(value, Mapping):
            _add_into(target.setdefault(key, {}), value)
        else:
            target[key] = target.get(key, 0) + value


def _sorted(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _sorted(value[k]) for k in sorted(value)}
    return value


def derive_contact_aggregates(daily: Mapping[str, Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Contact aggregates from the contact daily buckets.

    Returns:
        total, lifecycle_distribution, source_distribution, conversion_rate (%),
        avg_conversions_per_contact and monthly_creation
    """
    daily_creation = daily.get("daily_creation", {})
    total = _sum_scalar(daily_creation)

    with_events = 0
    events = 0
    for conversions in daily.get("daily_conversions", {}).values():
        with_events += conversions.get("contacts_with_events", 0)
        events += conversions.get("events", 0)

    return {
        "total": total,
        "lifecycle_distribution": _sum_nested(daily.get("daily_by_lifecycle", {})),
        "source_distribution": _sum_nested(daily.get("daily_by_source", {})),
        "conversion_rate": round_to(safe_divide(with_events, total) * 100, 1),
        "avg_conversions_per_contact": round_to(safe_divide(events, total), 2),
        "monthly_creation": _sum_by_month(daily_creation),
    }


def derive_deal_aggregates(
    daily: Mapping[str, Mapping[str, Any]],
    pipelines: Sequence[PipelineDefinition],
) -> Dict[str, Any]:
    """
    Deal aggregates from the deal daily buckets.

    Won/lost counts classify each (pipeline, stage) pair once with
    classify_stage, using the stage definition when the pipeline is known.
    """
    index = PipelineIndex(pipelines)
    daily_deals = daily.get("daily_deals", {})
    total = _sum_scalar(daily_deals)

    pipeline_distribution = _sum_nested(daily.get("daily_by_pipeline", {}))
    stage_distribution = _sum_nested(daily.get("daily_by_pipeline_stage", {}))
    revenue_by_pipeline = {
        name: round_to(amount, 2)
        for name, amount in _sum_nested(daily.get("daily_revenue", {})).items()
    }
    total_revenue = round_to(sum(revenue_by_pipeline.values()), 2)

    won_lost_by_pipeline = {}
    won_deals = 0
    lost_deals = 0
    for pipeline_name, stages in stage_distribution.items():
        counts = {"won": 0, "lost": 0, "total": pipeline_distribution.get(pipeline_name, 0)}
        for stage_name, count in stages.items():
            outcome = classify_stage(stage_name, index.stage_definition(pipeline_name, stage_name))
            if outcome == WON:
                counts["won"] += count
            elif outcome == LOST:
                counts["lost"] += count
        won_deals += counts["won"]
        lost_deals += counts["lost"]
        won_lost_by_pipeline[pipeline_name] = counts

    return {
        "total": total,
        "pipeline_distribution": pipeline_distribution,
        "stage_distribution": stage_distribution,
        "won_lost_by_pipeline": won_lost_by_pipeline,
        "source_by_pipeline": _sum_nested(daily.get("daily_source_by_pipeline", {})),
        "revenue": {
            "total": total_revenue,
            "by_pipeline": revenue_by_pipeline,
            "avg_deal_value": round_to(safe_divide(total_revenue, total), 2),
        },
        "win_rate": round_to(safe_divide(won_deals, won_deals + lost_deals) * 100, 1),
        "won_deals": won_deals,
        "lost_deals": lost_deals,
        "monthly_deals": _sum_by_month(daily_deals),
    }
