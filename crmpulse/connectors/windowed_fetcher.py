"""
Windowed search fetcher

The search endpoint caps the total matches of a single query (~10,000), so a
long lookback is split into fixed-size creation-date windows that are each
paginated to completion. A window that fails is logged and skipped; sibling
windows still run.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from crmpulse.config import Settings, get_settings
from crmpulse.connectors.crm_client import CrmClient
from crmpulse.connectors.errors import ApiError, AuthFailure, TransportError, WindowFetchFailure
from crmpulse.models.records import RawRecord
from crmpulse.utils.helpers import isoformat_z, utc_now
from crmpulse.utils.logger import log


@dataclass(frozen=True)
class FetchWindow:
    """Half-open creation-date range [start, end)"""
    start: datetime
    end: datetime

    @property
    def days(self) -> float:
        return (self.end - self.start).total_seconds() / 86400

    def __str__(self) -> str:
        return f"{self.start.date().isoformat()} -> {self.end.date().isoformat()}"


def build_windows(lookback_days: int, window_size_days: int, now: datetime) -> List[FetchWindow]:
    """
    Partition [now - lookback_days, now) into windows, newest first.

    Windows walk backward from `now` in `window_size_days` steps; the oldest
    one is clipped so the union covers exactly `lookback_days`.
    """
    if window_size_days <= 0:
        raise ValueError(f"window_size_days must be positive, got {window_size_days}")
    if lookback_days <= 0:
        return []

    windows = []
    for offset in range(0, lookback_days, window_size_days):
        end = now - timedelta(days=offset)
        start = now - timedelta(days=min(offset + window_size_days, lookback_days))
        windows.append(FetchWindow(start=start, end=end))
    return windows


@dataclass
class WindowedFetchResult:
    entity_type: str
    records: List[RawRecord] = field(default_factory=list)
    windows: List[FetchWindow] = field(default_factory=list)
    failed_windows: List[WindowFetchFailure] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed_windows

    def covered_days(self) -> List[str]:
        """
        Days whose whole [00:00, min(next 00:00, now)) span lies inside the
        windows that succeeded, `now` being the end of the newest window.

        The clipped oldest day and any day touching a failed window are left
        out, so callers can tell a day with no records from a day not fetched.
        """
        if not self.windows:
            return []
        now = max(w.end for w in self.windows)
        failed = {f.window for f in self.failed_windows}
        merged: List[List[datetime]] = []
        for window in sorted(self.windows, key=lambda w: w.start):
            if window in failed:
                continue
            if merged and window.start <= merged[-1][1]:
                merged[-1][1] = max(merged[-1][1], window.end)
            else:
                merged.append([window.start, window.end])

        days = []
        for start, end in merged:
            day_start = start.replace(hour=0, minute=0, second=0, microsecond=0)
            if day_start < start:
                day_start += timedelta(days=1)
            while day_start < end and min(day_start + timedelta(days=1), now) <= end:
                days.append(day_start.date().isoformat())
                day_start += timedelta(days=1)
        return days


class WindowedFetcher:
    """Fetches one entity type over a lookback horizon, window by window"""

    def __init__(
        self,
        client: CrmClient,
        *,
        search_path: str = "/crm/v3/objects/{entity}/search",
        creation_field: str = "createdate",
        clock: Callable[[], datetime] = utc_now,
    ):
        self.client = client
        self.search_path = search_path
        self.creation_field = creation_field
        self.clock = clock

    @classmethod
    def from_settings(cls, client: CrmClient, settings: Optional[Settings] = None) -> "WindowedFetcher":
        settings = settings or get_settings()
        return cls(client, search_path=settings.crm_search_path)

    async def fetch_entities_in_range(
        self,
        entity_type: str,
        lookback_days: int,
        window_size_days: int = 30,
        properties: Sequence[str] = (),
    ) -> WindowedFetchResult:
        """
        Fetch every record of `entity_type` created in the last `lookback_days`.

        Args:
            entity_type: CRM object type (contacts, deals)
            lookback_days: Horizon to cover, ending now
            window_size_days: Width of each independently queried window
            properties: Properties to request for each record

        Returns:
            WindowedFetchResult with the records of every window that succeeded
            and a WindowFetchFailure for every window that did not
        """
        windows = build_windows(lookback_days, window_size_days, self.clock())
        result = WindowedFetchResult(entity_type=entity_type, windows=windows)

        log.info(
            f"Fetching {entity_type} (last {lookback_days} days, "
            f"{len(windows)} windows of {window_size_days} days)"
        )

        for window in windows:
            try:
                records = await self._fetch_window(entity_type, window, properties)
            except AuthFailure:
                raise
            except (ApiError, TransportError) as e:
                failure = WindowFetchFailure(entity_type, window, e)
                result.failed_windows.append(failure)
                log.warning(f"Skipping {entity_type} window {window}: {e}")
                continue

            result.records.extend(records)
            if records:
                log.info(f"  Window {window}: {len(records)} {entity_type}")

        log.info(f"Total {entity_type}: {len(result.records)}")
        if result.failed_windows:
            log.warning(
                f"{entity_type}: {len(result.failed_windows)} of {len(windows)} windows failed, "
                f"coverage reduced"
            )
        return result

    async def _fetch_window(
        self,
        entity_type: str,
        window: FetchWindow,
        properties: Sequence[str],
    ) -> List[RawRecord]:
        body = {
            "filters": [
                {"field": self.creation_field, "operator": "GTE", "value": isoformat_z(window.start)},
                {"field": self.creation_field, "operator": "LT", "value": isoformat_z(window.end)},
            ],
            "properties": list(properties),
            "limit": self.client.page_size,
        }
        endpoint = self.search_path.format(entity=entity_type)
        payloads = await self.client.fetch_all_pages(endpoint, "POST", body=body)
        return [RawRecord.from_api(p, self.creation_field) for p in payloads]
