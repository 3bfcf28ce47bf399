"""
Sync orchestrator tests.

Guards against:
1. Incremental runs without a usable snapshot silently merging into nothing
2. Full runs leaking data from the previous snapshot
3. Failed runs overwriting the last good snapshot
4. Partial window failures aborting the run
"""
from datetime import datetime, timedelta, timezone

import pytest

from crmpulse.config import ClientConfig, Settings
from crmpulse.connectors.errors import ApiError, AuthFailure, WindowFetchFailure
from crmpulse.connectors.windowed_fetcher import WindowedFetchResult, build_windows
from crmpulse.models.records import CampaignRecord, PipelineDefinition, RawRecord, StageDefinition
from crmpulse.services.snapshot_store import SnapshotStore
from crmpulse.services.sync_orchestrator import SequentialScheduler, SyncOrchestrator, plan_run
from crmpulse.utils.helpers import parse_timestamp

from crm_fakes import _run

NOW = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)

PIPELINES = (
    PipelineDefinition("default", "Pregrado", (
        StageDefinition("s1", "Nuevo", False, 0.1),
        StageDefinition("s2", "Matriculado", True, 1.0),
    )),
)


def _contact(record_id, created, source="PAID_SOCIAL"):
    return {"id": record_id, "properties": {"createdate": created, "hs_analytics_source": source, "lifecyclestage": "lead"}}


def _deal(record_id, created, stage="s1", amount="0"):
    return {"id": record_id, "properties": {"createdate": created, "dealstage": stage, "pipeline": "default", "amount": amount}}


class FakeFetcher:
    """Serves records whose createdate falls inside each requested window"""

    def __init__(self, records, now=NOW, fail_windows=None):
        self.records = records
        self.now = now
        self.fail_windows = fail_windows or {}
        self.calls = []

    async def fetch_entities_in_range(self, entity_type, lookback_days, window_size_days=30, properties=()):
        self.calls.append((entity_type, lookback_days, window_size_days))
        windows = build_windows(lookback_days, window_size_days, self.now)
        result = WindowedFetchResult(entity_type, windows=windows)
        for index, window in enumerate(windows):
            if index in self.fail_windows.get(entity_type, ()):
                result.failed_windows.append(WindowFetchFailure(entity_type, window, ApiError(500, "boom")))
                continue
            for payload in self.records.get(entity_type, []):
                created = parse_timestamp(payload["properties"]["createdate"])
                if window.start <= created < window.end:
                    result.records.append(RawRecord.from_api(payload))
        return result


class FakeResolver:
    def __init__(self, sources=None):
        self.sources = sources or {}
        self.failed_batches = []

    async def resolve_attribute(self, parent_ids, relation, target_attribute):
        return {i: self.sources[i] for i in parent_ids if i in self.sources}


class FakeReference:
    def __init__(self, fail_pipelines=False, pipelines=PIPELINES):
        self.fail_pipelines = fail_pipelines
        self.pipelines = pipelines

    async def fetch_pipelines(self):
        if self.fail_pipelines:
            raise AuthFailure(401, {"message": "token expired"})
        return self.pipelines

    async def fetch_campaigns(self):
        return [CampaignRecord("k1", "Admision 2026", "in_progress", "2026-03-01", None, 100.0, 50.0)]

    async def fetch_campaign_performance(self, campaigns):
        return [{"id": c.id, "name": c.name, "revenue_attributed": 0.0} for c in campaigns]


def _settings(tmp_path, **overrides):
    return Settings(
        _env_file=None,
        snapshot_dir=str(tmp_path / "data"),
        public_snapshot_dir=None,
        full_lookback_days=365,
        incremental_lookback_days=7,
        **overrides,
    )


def _orchestrator(tmp_path, fetcher, reference=None, settings=None, now=NOW):
    settings = settings or _settings(tmp_path)
    return SyncOrchestrator(
        ClientConfig.model_validate({"client": "ucsp", "clientFullName": "UCSP"}),
        fetcher=fetcher,
        resolver=FakeResolver({"d1": "PAID_SOCIAL"}),
        reference=reference or FakeReference(),
        store=SnapshotStore(settings.snapshot_dir),
        settings=settings,
        clock=lambda: now,
    )


RECORDS = {
    "contacts": [
        _contact("c1", "2026-01-15T10:00:00Z"),
        _contact("c2", "2026-03-03T08:00:00Z"),
        _contact("c3", "2026-03-09T10:00:00Z", "EMAIL"),
    ],
    "deals": [
        _deal("d1", "2026-01-20T10:00:00Z", "s2", "1000"),
        _deal("d2", "2026-03-09T11:00:00Z"),
    ],
}


# ---------------------------------------------------------------------------
# Mode selection
# ---------------------------------------------------------------------------

def test_incremental_without_snapshot_runs_full(tmp_path):
    fetcher = FakeFetcher(RECORDS)

    outcome = _run(_orchestrator(tmp_path, fetcher).run("incremental"))

    assert outcome.plan.mode == "full"
    assert outcome.snapshot.metadata.mode == "full"
    assert outcome.snapshot.metadata.last_full_run == outcome.snapshot.timestamp
    assert fetcher.calls == [("contacts", 365, 30), ("deals", 365, 30)]
    assert outcome.snapshot.contacts["total"] == 3
    assert outcome.snapshot.deals["won_deals"] == 1
    assert outcome.snapshot.deals["source_by_pipeline"] == {"Pregrado": {"PAID_SOCIAL": 1, "unknown": 1}}
    assert (tmp_path / "data" / "latest.json").exists()


def test_incremental_with_invalid_snapshot_runs_full(tmp_path):
    (tmp_path / "data").mkdir()
    (tmp_path / "data" / "latest.json").write_text('{"timestamp": "x"}', encoding="utf-8")

    outcome = _run(_orchestrator(tmp_path, FakeFetcher(RECORDS)).run("incremental"))

    assert outcome.snapshot.metadata.mode == "full"


def test_full_ignores_previous_snapshot(tmp_path):
    _run(_orchestrator(tmp_path, FakeFetcher({"contacts": [_contact("old", "2025-12-01T10:00:00Z")]})).run("full"))

    outcome = _run(_orchestrator(tmp_path, FakeFetcher(RECORDS)).run("full"))

    assert "2025-12-01" not in outcome.snapshot.contacts["daily_creation"]
    assert outcome.snapshot.contacts["total"] == 3


def test_incremental_merges_into_previous_snapshot(tmp_path):
    first = _run(_orchestrator(tmp_path, FakeFetcher(RECORDS)).run("full"))

    later = NOW + timedelta(hours=2)
    updated = {
        # c3 was deleted upstream, c4 is new
        "contacts": [RECORDS["contacts"][0], RECORDS["contacts"][1], _contact("c4", "2026-03-10T16:00:00Z")],
        "deals": RECORDS["deals"],
    }
    fetcher = FakeFetcher(updated, now=later)
    outcome = _run(_orchestrator(tmp_path, fetcher, now=later).run("incremental"))

    snapshot = outcome.snapshot
    assert fetcher.calls[0] == ("contacts", 7, 30)
    assert snapshot.metadata.mode == "incremental"
    assert snapshot.metadata.last_full_run == first.snapshot.timestamp
    daily = snapshot.contacts["daily_creation"]
    # Outside the refreshed range, stored days are kept as they were
    assert daily["2026-01-15"] == 1
    # 03-03 is only partly inside the 7-day window, so the stored value stays
    assert daily["2026-03-03"] == 1
    assert daily["2026-03-09"] == 0
    assert daily["2026-03-10"] == 1
    assert snapshot.contacts["total"] == 3
    assert snapshot.contacts["source_distribution"] == {"PAID_SOCIAL": 3}
    assert snapshot.deals["total"] == 2


def test_unknown_mode_is_rejected():
    with pytest.raises(ValueError):
        plan_run("weekly", None, 365, 7)


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------

def test_fatal_error_leaves_previous_snapshot_untouched(tmp_path):
    _run(_orchestrator(tmp_path, FakeFetcher(RECORDS)).run("full"))
    latest = tmp_path / "data" / "latest.json"
    before = latest.read_text(encoding="utf-8")

    with pytest.raises(AuthFailure):
        _run(_orchestrator(tmp_path, FakeFetcher(RECORDS), FakeReference(fail_pipelines=True)).run("incremental"))

    assert latest.read_text(encoding="utf-8") == before


def test_fatal_error_on_first_run_writes_nothing(tmp_path):
    with pytest.raises(AuthFailure):
        _run(_orchestrator(tmp_path, FakeFetcher(RECORDS), FakeReference(fail_pipelines=True)).run("full"))

    assert not (tmp_path / "data" / "latest.json").exists()


def test_failed_window_reduces_coverage_but_run_succeeds(tmp_path):
    # Second window (newest first) spans 2026-01-09 .. 2026-02-08 and holds c1
    fetcher = FakeFetcher(RECORDS, fail_windows={"contacts": {1}})

    outcome = _run(_orchestrator(tmp_path, fetcher).run("full"))

    assert len(outcome.coverage_gaps) == 1
    assert outcome.coverage_gaps[0].startswith("contacts 2026-01-09")
    assert outcome.snapshot.metadata.coverage_gaps == tuple(outcome.coverage_gaps)
    assert outcome.snapshot.contacts["total"] == 2
    assert (tmp_path / "data" / "latest.json").exists()


def test_incremental_keeps_stored_days_of_a_failed_window(tmp_path):
    _run(_orchestrator(tmp_path, FakeFetcher(RECORDS)).run("full"))

    later = NOW + timedelta(hours=2)
    updated = {
        "contacts": [RECORDS["contacts"][0], RECORDS["contacts"][1], _contact("c4", "2026-03-10T16:00:00Z")],
        "deals": [RECORDS["deals"][0]],
    }
    # The 7-day lookback is a single window; losing it for contacts refreshes no contact day
    fetcher = FakeFetcher(updated, now=later, fail_windows={"contacts": {0}})
    outcome = _run(_orchestrator(tmp_path, fetcher, now=later).run("incremental"))

    snapshot = outcome.snapshot
    assert snapshot.metadata.mode == "incremental"
    assert len(outcome.coverage_gaps) == 1
    assert outcome.coverage_gaps[0].startswith("contacts ")
    contacts_daily = snapshot.contacts["daily_creation"]
    assert contacts_daily["2026-03-09"] == 1
    assert "2026-03-10" not in contacts_daily
    assert snapshot.contacts["total"] == 3
    assert snapshot.contacts["source_distribution"] == {"EMAIL": 1, "PAID_SOCIAL": 2}
    # Deals came through, so their covered days are refreshed
    assert snapshot.deals["daily_deals"]["2026-03-09"] == 0
    assert snapshot.deals["total"] == 1


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

def test_steps_run_in_fixed_order(tmp_path):
    outcome = _run(_orchestrator(tmp_path, FakeFetcher(RECORDS)).run("full"))

    assert [s.name for s in outcome.steps] == [
        "contacts", "deals", "pipelines", "campaigns", "deal_sources", "campaign_performance",
    ]
    assert all(s.status == "success" for s in outcome.steps)
    assert outcome.snapshot.campaign_performance[0]["id"] == "k1"
    assert outcome.snapshot.campaigns["active_count"] == 1


def test_campaign_performance_can_be_disabled(tmp_path):
    settings = _settings(tmp_path, include_campaign_performance=False)

    outcome = _run(_orchestrator(tmp_path, FakeFetcher(RECORDS), settings=settings).run("full"))

    assert "campaign_performance" not in [s.name for s in outcome.steps]
    assert outcome.snapshot.campaign_performance == ()


def test_scheduler_records_failed_step():
    scheduler = SequentialScheduler()

    async def boom():
        raise ApiError(500, "boom")

    with pytest.raises(ApiError):
        _run(scheduler.run("pipelines", boom))

    assert scheduler.steps[0].status == "failed"
    assert "500" in scheduler.steps[0].error_message


# ---------------------------------------------------------------------------
# Retired pipelines
# ---------------------------------------------------------------------------

def test_retired_pipeline_deals_counted_but_pipeline_not_published(tmp_path):
    pipelines = PIPELINES + (
        PipelineDefinition("p9", "Maestria NO USAR", (StageDefinition("z", "Cerrado", True, 1.0),)),
    )
    records = {
        "contacts": [],
        "deals": [{"id": "d9", "properties": {
            "createdate": "2026-03-05T10:00:00Z", "dealstage": "z", "pipeline": "p9", "amount": "0",
        }}],
    }

    outcome = _run(_orchestrator(tmp_path, FakeFetcher(records), FakeReference(pipelines=pipelines)).run("full"))

    deals = outcome.snapshot.deals
    assert deals["pipeline_distribution"] == {"Maestria NO USAR": 1}
    assert deals["stage_distribution"] == {"Maestria NO USAR": {"Cerrado": 1}}
    assert deals["won_deals"] == 1
    assert [p.name for p in outcome.snapshot.pipelines] == ["Pregrado"]
