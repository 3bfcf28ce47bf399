"""
Typed CRM records

Raw API objects carry string property bags; everything downstream works on
the typed records below, each field with an explicit default.
"""
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import unquote

from crmpulse.utils.helpers import day_key, to_float, to_int

UNKNOWN = "unknown"
UNNAMED_CAMPAIGN = "Sin nombre"


@dataclass(frozen=True)
class RawRecord:
    """One CRM object as returned by search/batch endpoints."""

    id: str
    creation_date: Optional[str]
    properties: Mapping[str, Optional[str]] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_api(cls, payload: Dict[str, Any], creation_field: str = "createdate") -> "RawRecord":
        properties = dict(payload.get("properties") or {})
        creation = properties.get(creation_field) or payload.get("createdAt")
        return cls(
            id=str(payload.get("id")),
            creation_date=str(creation) if creation else None,
            properties=MappingProxyType(properties),
        )

    @property
    def day(self) -> Optional[str]:
        return day_key(self.creation_date)

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        value = self.properties.get(name)
        return default if value is None or value == "" else value


@dataclass(frozen=True)
class ContactRecord:
    id: str
    day: Optional[str]
    lifecycle_stage: str = UNKNOWN
    source: str = UNKNOWN
    num_conversion_events: int = 0

    PROPERTIES = (
        "firstname", "lastname", "email", "lifecyclestage",
        "hs_analytics_source", "hs_analytics_source_data_1",
        "hs_analytics_source_data_2", "hs_lead_status",
        "num_conversion_events", "first_conversion_event_name",
        "recent_conversion_event_name", "hs_analytics_num_page_views",
        "hs_analytics_num_visits", "createdate",
    )

    @classmethod
    def from_raw(cls, raw: RawRecord) -> "ContactRecord":
        return cls(
            id=raw.id,
            day=raw.day,
            lifecycle_stage=raw.get("lifecyclestage", UNKNOWN),
            source=raw.get("hs_analytics_source", UNKNOWN),
            num_conversion_events=to_int(raw.get("num_conversion_events")),
        )


@dataclass(frozen=True)
class DealRecord:
    id: str
    day: Optional[str]
    pipeline_id: str = "default"
    stage_id: str = UNKNOWN
    amount: float = 0.0

    PROPERTIES = (
        "dealname", "amount", "dealstage", "pipeline",
        "closedate", "createdate", "hs_lastmodifieddate",
    )

    @classmethod
    def from_raw(cls, raw: RawRecord) -> "DealRecord":
        return cls(
            id=raw.id,
            day=raw.day,
            pipeline_id=raw.get("pipeline", "default"),
            stage_id=raw.get("dealstage", UNKNOWN),
            amount=to_float(raw.get("amount")),
        )


@dataclass(frozen=True)
class CampaignRecord:
    id: str
    name: str = UNNAMED_CAMPAIGN
    status: str = UNKNOWN
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    budget: float = 0.0
    spend: float = 0.0
    utm: Optional[str] = None

    PROPERTIES = (
        "hs_name", "hs_goal", "hs_start_date", "hs_end_date",
        "hs_campaign_status", "hs_budget_items_sum_amount",
        "hs_spend_items_sum_amount", "hs_utm",
    )

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "CampaignRecord":
        props = payload.get("properties") or {}
        utm = props.get("hs_utm")
        return cls(
            id=str(payload.get("id")),
            name=props.get("hs_name") or UNNAMED_CAMPAIGN,
            status=props.get("hs_campaign_status") or UNKNOWN,
            start_date=props.get("hs_start_date") or None,
            end_date=props.get("hs_end_date") or None,
            budget=to_float(props.get("hs_budget_items_sum_amount")),
            spend=to_float(props.get("hs_spend_items_sum_amount")),
            utm=unquote(utm) if utm else None,
        )

    @property
    def is_named(self) -> bool:
        return self.name != UNNAMED_CAMPAIGN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "budget": self.budget,
            "spend": self.spend,
            "utm": self.utm,
        }


@dataclass(frozen=True)
class StageDefinition:
    id: str
    name: str
    is_closed: bool = False
    probability: float = 0.0

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "StageDefinition":
        """Accepts both the API shape (label/metadata) and the persisted shape."""
        metadata = payload.get("metadata") or {}
        if "is_closed" in payload:
            is_closed = bool(payload["is_closed"])
        else:
            is_closed = str(metadata.get("isClosed", "false")).lower() == "true"
        probability = payload["probability"] if "probability" in payload else metadata.get("probability")
        return cls(
            id=str(payload.get("id")),
            name=payload.get("name") or payload.get("label") or str(payload.get("id")),
            is_closed=is_closed,
            probability=to_float(probability),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "probability": self.probability,
            "is_closed": self.is_closed,
        }


@dataclass(frozen=True)
class PipelineDefinition:
    id: str
    name: str
    stages: Tuple[StageDefinition, ...] = ()

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PipelineDefinition":
        return cls(
            id=str(payload.get("id")),
            name=payload.get("name") or payload.get("label") or str(payload.get("id")),
            stages=tuple(StageDefinition.from_dict(s) for s in payload.get("stages") or []),
        )

    def stage_by_name(self, name: str) -> Optional[StageDefinition]:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "stages": [s.to_dict() for s in self.stages],
        }


def parse_pipelines(payloads: Sequence[Dict[str, Any]]) -> Tuple[PipelineDefinition, ...]:
    """Parse every pipeline definition, retired ones included"""
    return tuple(PipelineDefinition.from_dict(payload) for payload in payloads)


def visible_pipelines(
    pipelines: Sequence[PipelineDefinition],
    excluded_markers: Sequence[str] = ("NO USAR",),
) -> Tuple[PipelineDefinition, ...]:
    """
    Pipelines to publish in the snapshot.

    Pipelines flagged as retired by name are hidden here only; their deals are
    still labelled and classified against the full set.
    """
    return tuple(p for p in pipelines if not any(marker in p.name for marker in excluded_markers))


class PipelineIndex:
    """Id -> display name lookups over a set of pipeline definitions"""

    def __init__(self, pipelines: Sequence[PipelineDefinition]):
        self.pipelines = tuple(pipelines)
        self._pipeline_names = {p.id: p.name for p in self.pipelines}
        self._stage_names = {s.id: s.name for p in self.pipelines for s in p.stages}
        self._pipeline_stage_names = {
            (p.id, s.id): s.name for p in self.pipelines for s in p.stages
        }
        self._by_name = {p.name: p for p in self.pipelines}
        # last wins, matching _stage_names
        self._stages_by_name = {s.name: s for p in self.pipelines for s in p.stages}

    def pipeline_name(self, pipeline_id: str) -> str:
        return self._pipeline_names.get(pipeline_id, pipeline_id)

    def stage_name(self, stage_id: str, pipeline_id: Optional[str] = None) -> str:
        """Stage label, preferring the deal's own pipeline when ids are reused"""
        name = self._pipeline_stage_names.get((pipeline_id, stage_id))
        if name is not None:
            return name
        return self._stage_names.get(stage_id, stage_id)

    def stage_definition(self, pipeline_name: str, stage_name: str) -> Optional[StageDefinition]:
        """Stage in the named pipeline, else the stage a cross-pipeline label came from"""
        pipeline = self._by_name.get(pipeline_name)
        stage = pipeline.stage_by_name(stage_name) if pipeline else None
        if stage is None:
            stage = self._stages_by_name.get(stage_name)
        return stage
