"""
Association resolver

Resolves an attribute of a related object for many parents at once, e.g.
deal -> associated contact -> hs_analytics_source. Two hops per batch:
association batch read, then batch read of the related objects.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from crmpulse.config import Settings, get_settings
from crmpulse.connectors.crm_client import CrmClient
from crmpulse.connectors.errors import (
    ApiError,
    AssociationBatchFailure,
    AuthFailure,
    TransportError,
)
from crmpulse.models.records import UNKNOWN
from crmpulse.utils.helpers import chunk_list
from crmpulse.utils.logger import log


def _object_id(value: Any) -> Optional[str]:
    """Association endpoints return ids as plain strings, {"id": ...} or lists of either"""
    if isinstance(value, list):
        return _object_id(value[0]) if value else None
    if isinstance(value, dict):
        value = value.get("id") or value.get("toObjectId")
    return str(value) if value not in (None, "") else None


class AssociationResolver:
    """
    Batched foreign-key resolution.

    A failed batch is logged and skipped: its parent ids are simply missing
    from the returned mapping and callers apply their own default.
    """

    def __init__(
        self,
        client: CrmClient,
        *,
        associations_path: str = "/crm/v3/associations/{from_type}/{to_type}/batch/read",
        batch_read_path: str = "/crm/v3/objects/{entity}/batch/read",
        batch_size: int = 100,
        batch_delay_seconds: float = 0.2,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.associations_path = associations_path
        self.batch_read_path = batch_read_path
        self.batch_size = batch_size
        self.batch_delay_seconds = batch_delay_seconds
        self.sleep = sleep
        self.failed_batches: List[AssociationBatchFailure] = []

    @classmethod
    def from_settings(cls, client: CrmClient, settings: Optional[Settings] = None) -> "AssociationResolver":
        settings = settings or get_settings()
        return cls(
            client,
            associations_path=settings.crm_associations_path,
            batch_read_path=settings.crm_batch_read_path,
            batch_size=settings.association_batch_size,
            batch_delay_seconds=settings.association_batch_delay_seconds,
        )

    async def resolve_attribute(
        self,
        parent_ids: Sequence[str],
        relation: Tuple[str, str],
        target_attribute: str,
    ) -> Dict[str, str]:
        """
        Map each parent id to `target_attribute` of its first associated object.

        Args:
            parent_ids: Ids of the parent objects (e.g. deal ids)
            relation: (from_type, to_type), e.g. ("deals", "contacts")
            target_attribute: Property to read on the related object

        Returns:
            {parent_id: value}; parents without an association, or in a failed
            batch, are absent. A related object lacking the property maps to
            "unknown".
        """
        from_type, to_type = relation
        unique_ids = list(dict.fromkeys(str(i) for i in parent_ids))
        batches = chunk_list(unique_ids, self.batch_size)
        self.failed_batches = []
        resolved: Dict[str, str] = {}

        log.info(f"Resolving {to_type}.{target_attribute} for {len(unique_ids)} {from_type}")

        for index, batch in enumerate(batches):
            try:
                resolved.update(
                    await self._resolve_batch(batch, from_type, to_type, target_attribute)
                )
            except AuthFailure:
                raise
            except (ApiError, TransportError) as e:
                failure = AssociationBatchFailure(index, batch, e)
                self.failed_batches.append(failure)
                log.warning(f"Batch {index * self.batch_size}-{index * self.batch_size + len(batch)}: {e}")

            if index + 1 < len(batches):
                await self.sleep(self.batch_delay_seconds)

        log.info(f"Resolved {len(resolved)} of {len(unique_ids)} {from_type}")
        return resolved

    async def _resolve_batch(
        self,
        batch: List[str],
        from_type: str,
        to_type: str,
        target_attribute: str,
    ) -> Dict[str, str]:
        assoc_endpoint = self.associations_path.format(from_type=from_type, to_type=to_type)
        assoc_data = await self.client.request(assoc_endpoint, "POST", body={"ids": batch})

        parent_to_related: Dict[str, str] = {}
        for row in assoc_data.get("results") or []:
            parent_id = _object_id(row.get("from"))
            related_id = _object_id(row.get("to"))
            if parent_id and related_id and parent_id not in parent_to_related:
                parent_to_related[parent_id] = related_id

        if not parent_to_related:
            return {}

        related_ids = list(dict.fromkeys(parent_to_related.values()))
        read_endpoint = self.batch_read_path.format(entity=to_type)
        related_data = await self.client.request(
            read_endpoint,
            "POST",
            body={"ids": related_ids, "properties": [target_attribute]},
        )

        attribute_by_related: Dict[str, str] = {}
        for obj in related_data.get("results") or []:
            value = (obj.get("properties") or {}).get(target_attribute)
            attribute_by_related[str(obj.get("id"))] = value or UNKNOWN

        return {
            parent_id: attribute_by_related.get(related_id, UNKNOWN)
            for parent_id, related_id in parent_to_related.items()
        }
