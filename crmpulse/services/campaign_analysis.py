"""
Campaign analysis

Campaigns are reference data: the whole collection is re-fetched every run
and analyzed from scratch, so there is nothing to merge. Spend and budget are
spread evenly over each campaign's active range to give the front end a
date-filterable daily series.
"""
from collections import defaultdict
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Sequence

from crmpulse.models.records import CampaignRecord
from crmpulse.utils.helpers import parse_timestamp, round_to, safe_divide
from crmpulse.utils.logger import log

ACTIVE_STATUS = "in_progress"
MAX_CURRENT = 10
MAX_RECENT = 20


def _to_date(value: Optional[str]) -> Optional[date]:
    dt = parse_timestamp(value)
    return dt.date() if dt else None


def spread_evenly(amount: float, start: date, end: date) -> Dict[str, float]:
    """
    Split `amount` evenly over every day of [start, end] (inclusive).

    An end before the start collapses the range to the start day.
    """
    if end < start:
        end = start
    days = (end - start).days + 1
    per_day = amount / days
    return {(start + timedelta(days=i)).isoformat(): per_day for i in range(days)}


def _sort_recent(campaigns: List[CampaignRecord]) -> List[CampaignRecord]:
    """Start date descending, undated campaigns last"""
    dated = sorted((c for c in campaigns if c.start_date), key=lambda c: c.start_date, reverse=True)
    undated = [c for c in campaigns if not c.start_date]
    return dated + undated


def analyze_campaigns(campaigns: Sequence[CampaignRecord], today: date) -> Dict[str, Any]:
    """
    Build the campaigns section of the snapshot.

    Args:
        campaigns: Every campaign returned by the API
        today: End of the range for campaigns without an end date

    Returns:
        Totals, daily spend/budget series and the current/recent campaign lists
    """
    total_budget = sum(c.budget for c in campaigns)
    total_spend = sum(c.spend for c in campaigns)

    daily_spend: Dict[str, float] = defaultdict(float)
    daily_budget: Dict[str, float] = defaultdict(float)
    spend_without_dates = 0.0
    budget_without_dates = 0.0
    with_dates = 0

    for campaign in campaigns:
        start = _to_date(campaign.start_date)
        if start is None:
            spend_without_dates += campaign.spend
            budget_without_dates += campaign.budget
            continue

        end = _to_date(campaign.end_date) or today
        if campaign.spend > 0:
            for day, amount in spread_evenly(campaign.spend, start, end).items():
                daily_spend[day] += amount
        if campaign.budget > 0:
            for day, amount in spread_evenly(campaign.budget, start, end).items():
                daily_budget[day] += amount
        with_dates += 1

    log.info(f"Campaigns with dates for daily_spend: {with_dates}")
    if spend_without_dates > 0:
        log.info(f"Spend without dates (not spread): ${spend_without_dates:,.0f}")

    named = _sort_recent([c for c in campaigns if c.is_named])
    current = [c for c in named if c.status == ACTIVE_STATUS]

    return {
        "total": len(campaigns),
        "active_count": len(current),
        "total_budget": round_to(total_budget, 2),
        "total_spend": round_to(total_spend, 2),
        "budget_utilization": round_to(safe_divide(total_spend, total_budget) * 100, 1),
        "daily_spend": {day: round_to(v, 2) for day, v in sorted(daily_spend.items())},
        "daily_budget": {day: round_to(v, 2) for day, v in sorted(daily_budget.items())},
        "spend_without_dates": round_to(spend_without_dates, 2),
        "budget_without_dates": round_to(budget_without_dates, 2),
        "current_campaigns": [c.to_dict() for c in current[:MAX_CURRENT]],
        "recent_campaigns": [c.to_dict() for c in named[:MAX_RECENT]],
    }
