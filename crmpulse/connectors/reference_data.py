"""
Reference data fetchers: deal pipelines, marketing campaigns and per-campaign
attribution. These collections are not date-bucketed and are always fetched
in full.
"""
from typing import Any, Dict, List, Optional, Sequence, Tuple

from crmpulse.config import Settings, get_settings
from crmpulse.connectors.crm_client import CrmClient
from crmpulse.connectors.errors import ApiError, AuthFailure, TransportError
from crmpulse.models.records import CampaignRecord, PipelineDefinition, parse_pipelines
from crmpulse.utils.helpers import to_float, to_int
from crmpulse.utils.logger import log


class ReferenceDataFetcher:
    """Fetches CRM reference collections"""

    def __init__(
        self,
        client: CrmClient,
        *,
        pipelines_path: str = "/crm/v3/pipelines/deals",
        campaigns_path: str = "/marketing/v3/campaigns",
    ):
        self.client = client
        self.pipelines_path = pipelines_path
        self.campaigns_path = campaigns_path

    @classmethod
    def from_settings(cls, client: CrmClient, settings: Optional[Settings] = None) -> "ReferenceDataFetcher":
        settings = settings or get_settings()
        return cls(
            client,
            pipelines_path=settings.crm_pipelines_path,
            campaigns_path=settings.crm_campaigns_path,
        )

    async def fetch_pipelines(self) -> Tuple[PipelineDefinition, ...]:
        """Fetch every deal pipeline with its ordered stages, retired ones included"""
        log.info("Fetching pipelines...")
        data = await self.client.request(self.pipelines_path)
        pipelines = parse_pipelines(data.get("results") or [])
        log.info(f"Pipelines: {len(pipelines)}")
        return pipelines

    async def fetch_campaigns(self) -> List[CampaignRecord]:
        """Fetch every marketing campaign (paginated)"""
        log.info("Fetching marketing campaigns...")
        payloads = await self.client.fetch_all_pages(
            self.campaigns_path,
            "GET",
            params={"properties": ",".join(CampaignRecord.PROPERTIES)},
        )
        campaigns = [CampaignRecord.from_api(p) for p in payloads]
        log.info(f"Campaigns: {len(campaigns)}")
        return campaigns

    async def fetch_campaign_performance(self, campaigns: Sequence[CampaignRecord]) -> List[Dict[str, Any]]:
        """
        Revenue attribution and ad-campaign assets for each named campaign.

        The revenue report needs an extra scope; a 403 there is expected on
        many portals and skipped silently. Any other per-campaign failure is
        logged and that campaign keeps zeroed attribution.
        """
        log.info("Fetching campaign revenue and ads...")
        results = []

        for campaign in campaigns:
            if not campaign.is_named:
                continue

            entry = {
                "id": campaign.id,
                "name": campaign.name,
                "status": campaign.status,
                "start_date": campaign.start_date,
                "end_date": campaign.end_date,
                "spend": campaign.spend,
                "budget": campaign.budget,
                "contacts_attributed": 0,
                "deals_attributed": 0,
                "revenue_attributed": 0.0,
                "ad_campaigns": [],
            }

            try:
                revenue = await self.client.request(
                    f"{self.campaigns_path}/{campaign.id}/reports/revenue",
                    params={"attributionModel": "LINEAR"},
                )
                entry["contacts_attributed"] = to_int(revenue.get("contactsNumber"))
                entry["deals_attributed"] = to_int(revenue.get("dealsNumber"))
                entry["revenue_attributed"] = to_float(revenue.get("revenueAmount"))
            except AuthFailure as e:
                if e.status != 403:
                    raise
            except (ApiError, TransportError) as e:
                log.warning(f"Revenue error for {campaign.name}: {str(e)[:80]}")

            try:
                ads = await self.client.request(
                    f"{self.campaigns_path}/{campaign.id}/assets/AD_CAMPAIGN",
                    params={"limit": 50},
                )
                entry["ad_campaigns"] = [
                    {"id": str(a.get("id")), "name": a.get("name") or str(a.get("id"))}
                    for a in ads.get("results") or []
                ]
            except AuthFailure as e:
                if e.status != 403:
                    raise
            except (ApiError, TransportError) as e:
                log.debug(f"No ad assets for {campaign.name}: {e}")

            results.append(entry)

        results.sort(key=lambda r: (-r["revenue_attributed"], -r["contacts_attributed"]))

        with_revenue = sum(1 for r in results if r["revenue_attributed"] > 0 or r["contacts_attributed"] > 0)
        with_ads = sum(1 for r in results if r["ad_campaigns"])
        log.info(f"Campaigns with revenue data: {with_revenue}, with ads: {with_ads}")
        return results
