"""
Sync Orchestrator
Plans a run (full or incremental), drives every fetch one step at a time and
persists the resulting snapshot only when the whole run succeeded.
"""
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from crmpulse.config import ClientConfig, Settings, get_settings
from crmpulse.connectors.association_resolver import AssociationResolver
from crmpulse.connectors.crm_client import CrmClient
from crmpulse.connectors.reference_data import ReferenceDataFetcher
from crmpulse.connectors.windowed_fetcher import WindowedFetcher, WindowedFetchResult
from crmpulse.models.records import ContactRecord, DealRecord
from crmpulse.models.snapshot import (
    CONTACTS,
    DEALS,
    MODE_FULL,
    MODE_INCREMENTAL,
    FreshFetch,
    Snapshot,
    missing_keys,
)
from crmpulse.services.aggregator import aggregate, restrict_to_days
from crmpulse.services.campaign_analysis import analyze_campaigns
from crmpulse.services.merge_engine import build_full_snapshot, merge_snapshots
from crmpulse.services.snapshot_store import SnapshotStore
from crmpulse.utils.helpers import isoformat_z, utc_now
from crmpulse.utils.logger import log

MODES = (MODE_FULL, MODE_INCREMENTAL)

# deal -> first associated contact -> original source
DEAL_SOURCE_RELATION = ("deals", "contacts")
DEAL_SOURCE_ATTRIBUTE = "hs_analytics_source"


@dataclass
class SyncPlan:
    """What a run will do, decided before any request is sent"""
    requested_mode: str
    mode: str
    lookback_days: int
    merge_base: Optional[Snapshot] = None
    reason: str = ""

    @property
    def merges(self) -> bool:
        return self.merge_base is not None


def plan_run(
    requested_mode: str,
    existing_payload: Optional[Mapping[str, Any]],
    full_lookback_days: int,
    incremental_lookback_days: int,
) -> SyncPlan:
    """
    Decide mode and lookback.

    - full: prior snapshot ignored, full lookback
    - incremental with a valid prior snapshot: short lookback, merge into it
    - incremental without one: falls back to full
    """
    if requested_mode not in MODES:
        raise ValueError(f"Unknown sync mode {requested_mode!r}, expected one of {MODES}")

    if requested_mode == MODE_FULL:
        return SyncPlan(requested_mode, MODE_FULL, full_lookback_days, reason="full rebuild requested")

    if existing_payload is None:
        log.warning("No previous snapshot found, falling back to a full rebuild")
        return SyncPlan(requested_mode, MODE_FULL, full_lookback_days, reason="no previous snapshot")

    missing = missing_keys(existing_payload)
    if missing:
        log.warning(f"Previous snapshot is incomplete (missing {', '.join(missing)}), falling back to a full rebuild")
        return SyncPlan(requested_mode, MODE_FULL, full_lookback_days, reason="previous snapshot invalid")

    return SyncPlan(
        requested_mode,
        MODE_INCREMENTAL,
        incremental_lookback_days,
        merge_base=Snapshot.from_dict(existing_payload),
        reason="merging into previous snapshot",
    )


@dataclass
class StepResult:
    """Timing and outcome of one pipeline step"""
    name: str
    status: str = "success"  # success, failed
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0


@asynccontextmanager
async def track_step(name: str):
    """
    Track timing and failure of one step.

    Usage:
        async with track_step("contacts") as result:
            await fetch()
    """
    result = StepResult(name=name, started_at=utc_now())
    start_time = time.monotonic()

    try:
        yield result
    except Exception as e:
        result.status = "failed"
        result.error_message = str(e)
        log.error(f"Step {name} failed: {e}")
        raise
    finally:
        result.completed_at = utc_now()
        result.duration_seconds = time.monotonic() - start_time


class SequentialScheduler:
    """
    Runs pipeline steps strictly one after another.

    Every step shares the API's rate-limit budget, so steps are awaited in
    order and never overlap.
    """

    def __init__(self):
        self.steps: List[StepResult] = []

    async def run(self, name: str, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        async with track_step(name) as result:
            self.steps.append(result)
            return await func(*args, **kwargs)

    def summary(self) -> Dict[str, float]:
        return {step.name: round(step.duration_seconds, 2) for step in self.steps}


@dataclass
class SyncOutcome:
    snapshot: Snapshot
    plan: SyncPlan
    coverage_gaps: List[str] = field(default_factory=list)
    steps: List[StepResult] = field(default_factory=list)
    saved_paths: List[Path] = field(default_factory=list)


class SyncOrchestrator:
    """Drives one sync run for one client"""

    def __init__(
        self,
        client_config: ClientConfig,
        *,
        fetcher: WindowedFetcher,
        resolver: AssociationResolver,
        reference: ReferenceDataFetcher,
        store: SnapshotStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.client_config = client_config
        self.fetcher = fetcher
        self.resolver = resolver
        self.reference = reference
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        client: CrmClient,
        client_config: ClientConfig,
        settings: Optional[Settings] = None,
    ) -> "SyncOrchestrator":
        settings = settings or get_settings()
        return cls(
            client_config,
            fetcher=WindowedFetcher.from_settings(client, settings),
            resolver=AssociationResolver.from_settings(client, settings),
            reference=ReferenceDataFetcher.from_settings(client, settings),
            store=SnapshotStore.from_settings(settings),
            settings=settings,
        )

    async def run(self, mode: str = MODE_INCREMENTAL) -> SyncOutcome:
        """
        Execute one run end to end.

        Raises:
            CrmSyncError: any unrecovered failure; nothing is written in that case
        """
        settings = self.settings
        plan = plan_run(
            mode,
            self.store.load_latest() if mode == MODE_INCREMENTAL else None,
            self.client_config.lookback_days(settings),
            settings.incremental_lookback_days,
        )
        window_size = self.client_config.window_size_days(settings)
        now = self.clock()
        scheduler = SequentialScheduler()

        log.info(f"CRM sync for {self.client_config.display_name}")
        log.info(f"Mode: {plan.mode} ({plan.reason}), lookback {plan.lookback_days} days")

        contacts_result = await scheduler.run(
            "contacts",
            self.fetcher.fetch_entities_in_range,
            CONTACTS,
            plan.lookback_days,
            window_size,
            ContactRecord.PROPERTIES,
        )
        deals_result = await scheduler.run(
            "deals",
            self.fetcher.fetch_entities_in_range,
            DEALS,
            plan.lookback_days,
            window_size,
            DealRecord.PROPERTIES,
        )
        pipelines = await scheduler.run("pipelines", self.reference.fetch_pipelines)
        campaigns = await scheduler.run("campaigns", self.reference.fetch_campaigns)

        contacts = [ContactRecord.from_raw(r) for r in contacts_result.records]
        deals = [DealRecord.from_raw(r) for r in deals_result.records]

        source_map = await scheduler.run(
            "deal_sources",
            self.resolver.resolve_attribute,
            [d.id for d in deals],
            DEAL_SOURCE_RELATION,
            DEAL_SOURCE_ATTRIBUTE,
        )

        campaign_performance = []
        if settings.include_campaign_performance:
            campaign_performance = await scheduler.run(
                "campaign_performance", self.reference.fetch_campaign_performance, campaigns
            )

        buckets = aggregate(contacts, deals, pipelines, source_map)
        if plan.merges:
            # Only days the fetch fully covered may overwrite stored days
            buckets = {
                CONTACTS: restrict_to_days(buckets[CONTACTS], contacts_result.covered_days()),
                DEALS: restrict_to_days(buckets[DEALS], deals_result.covered_days()),
            }

        coverage_gaps = self._coverage_gaps([contacts_result, deals_result])
        if coverage_gaps:
            log.warning(f"Reduced coverage, {len(coverage_gaps)} gaps: {'; '.join(coverage_gaps)}")

        fresh = FreshFetch(
            timestamp=isoformat_z(now),
            daily={entity: b.daily for entity, b in buckets.items()},
            pipelines=tuple(pipelines),
            campaigns=analyze_campaigns(campaigns, now.date()),
            campaign_performance=tuple(campaign_performance),
            lookback_days=plan.lookback_days,
            client=self.client_config.display_name,
            coverage_gaps=tuple(coverage_gaps),
            undated={entity: b.undated for entity, b in buckets.items()},
            excluded_pipeline_markers=tuple(self.client_config.crm.excluded_pipeline_markers),
        )

        if plan.merges:
            snapshot = merge_snapshots(plan.merge_base, fresh)
        else:
            snapshot = build_full_snapshot(fresh)

        saved_paths = self.store.save(snapshot)
        log.info(f"Step durations: {scheduler.summary()}")

        return SyncOutcome(
            snapshot=snapshot,
            plan=plan,
            coverage_gaps=coverage_gaps,
            steps=scheduler.steps,
            saved_paths=saved_paths,
        )

    def _coverage_gaps(self, results: List[WindowedFetchResult]) -> List[str]:
        gaps = [
            f"{failure.entity_type} {failure.window}"
            for result in results
            for failure in result.failed_windows
        ]
        gaps.extend(
            f"deal sources batch {failure.batch_index} ({len(failure.ids)} deals)"
            for failure in self.resolver.failed_batches
        )
        return gaps
