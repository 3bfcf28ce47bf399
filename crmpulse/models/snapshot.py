"""
Snapshot value types

A Snapshot is the whole persisted state of one client's CRM analytics. It is
never mutated: merges and rebuilds produce a new value. JSON output uses
sorted keys so equal snapshots serialize to byte-identical files.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from crmpulse.models.records import PipelineDefinition

MODE_FULL = "full"
MODE_INCREMENTAL = "incremental"

CONTACTS = "contacts"
DEALS = "deals"
ENTITIES = (CONTACTS, DEALS)

# daily_creation: {day: n}
# daily_by_source / daily_by_lifecycle: {day: {value: n}}
# daily_conversions: {day: {"contacts_with_events": n, "events": n}}
CONTACT_DAILY_KEYS = (
    "daily_creation",
    "daily_by_source",
    "daily_by_lifecycle",
    "daily_conversions",
)

# daily_deals: {day: n}
# daily_by_pipeline: {day: {pipeline: n}}
# daily_by_pipeline_stage: {day: {pipeline: {stage: n}}}
# daily_source_by_pipeline: {day: {pipeline: {source: n}}}
# daily_revenue: {day: {pipeline: amount}}
DEAL_DAILY_KEYS = (
    "daily_deals",
    "daily_by_pipeline",
    "daily_by_pipeline_stage",
    "daily_source_by_pipeline",
    "daily_revenue",
)

DAILY_KEYS = {
    CONTACTS: CONTACT_DAILY_KEYS,
    DEALS: DEAL_DAILY_KEYS,
}

REQUIRED_KEYS = ("timestamp", CONTACTS, DEALS, "pipelines")


@dataclass(frozen=True)
class SnapshotMetadata:
    mode: str
    last_full_run: Optional[str] = None
    lookback_days: Optional[int] = None
    client: Optional[str] = None
    coverage_gaps: Tuple[str, ...] = ()
    undated_records: Mapping[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "mode": self.mode,
            "lookback_days": self.lookback_days,
            "client": self.client,
            "coverage_gaps": list(self.coverage_gaps),
            "undated_records": dict(self.undated_records),
        }
        # Omitted rather than null, older readers test for presence
        if self.last_full_run is not None:
            data["last_full_run"] = self.last_full_run
        return data

    @classmethod
    def from_dict(cls, payload: Optional[Mapping[str, Any]]) -> "SnapshotMetadata":
        payload = payload or {}
        return cls(
            mode=payload.get("mode") or MODE_FULL,
            last_full_run=payload.get("last_full_run"),
            lookback_days=payload.get("lookback_days"),
            client=payload.get("client"),
            coverage_gaps=tuple(payload.get("coverage_gaps") or ()),
            undated_records=dict(payload.get("undated_records") or {}),
        )


@dataclass(frozen=True)
class FreshFetch:
    """
    Everything one run fetched, already bucketed.

    `daily` holds {entity: {daily_key: {day: value}}} for the days this run
    is authoritative for; `undated` counts records left out for lack of a
    creation date. `pipelines` is the full set used for labelling; pipelines
    named with an excluded marker are left out of the published snapshot.
    """
    timestamp: str
    daily: Mapping[str, Mapping[str, Mapping[str, Any]]]
    pipelines: Tuple[PipelineDefinition, ...] = ()
    campaigns: Mapping[str, Any] = field(default_factory=dict)
    campaign_performance: Sequence[Mapping[str, Any]] = ()
    lookback_days: Optional[int] = None
    client: Optional[str] = None
    coverage_gaps: Tuple[str, ...] = ()
    undated: Mapping[str, int] = field(default_factory=dict)
    excluded_pipeline_markers: Tuple[str, ...] = ("NO USAR",)


@dataclass(frozen=True)
class Snapshot:
    timestamp: str
    contacts: Mapping[str, Any]
    deals: Mapping[str, Any]
    pipelines: Tuple[PipelineDefinition, ...]
    metadata: SnapshotMetadata
    campaigns: Mapping[str, Any] = field(default_factory=dict)
    campaign_performance: Sequence[Mapping[str, Any]] = ()

    def entity(self, name: str) -> Mapping[str, Any]:
        return self.contacts if name == CONTACTS else self.deals

    def daily(self, name: str) -> Dict[str, Mapping[str, Any]]:
        """Only the daily buckets of one entity"""
        section = self.entity(name)
        return {key: section.get(key, {}) for key in DAILY_KEYS[name]}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            CONTACTS: dict(self.contacts),
            DEALS: dict(self.deals),
            "campaigns": dict(self.campaigns),
            "campaign_performance": [dict(c) for c in self.campaign_performance],
            "pipelines": [p.to_dict() for p in self.pipelines],
            "metadata": self.metadata.to_dict(),
        }

    def to_json(self) -> str:
        return to_json(self.to_dict())

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Snapshot":
        return cls(
            timestamp=payload["timestamp"],
            contacts=dict(payload.get(CONTACTS) or {}),
            deals=dict(payload.get(DEALS) or {}),
            pipelines=tuple(PipelineDefinition.from_dict(p) for p in payload.get("pipelines") or []),
            metadata=SnapshotMetadata.from_dict(payload.get("metadata")),
            campaigns=dict(payload.get("campaigns") or {}),
            campaign_performance=tuple(payload.get("campaign_performance") or ()),
        )


def to_json(payload: Any) -> str:
    """Stable serialization: sorted keys, fixed indent, trailing newline"""
    return json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=False) + "\n"


def missing_keys(payload: Any) -> List[str]:
    """Keys a persisted snapshot lacks; empty when it can feed a merge"""
    if not isinstance(payload, Mapping):
        return list(REQUIRED_KEYS)

    missing = [key for key in REQUIRED_KEYS if key not in payload]
    for entity in ENTITIES:
        if entity not in payload:
            continue
        section = payload[entity]
        if not isinstance(section, Mapping):
            missing.append(entity)
            continue
        missing.extend(
            f"{entity}.{key}" for key in DAILY_KEYS[entity]
            if not isinstance(section.get(key), Mapping)
        )
    return missing


def is_valid_snapshot(payload: Any) -> bool:
    return not missing_keys(payload)
