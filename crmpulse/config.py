"""
Configuration management for the CRM snapshot sync
"""
import json
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings

from crmpulse.connectors.errors import ConfigurationError


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "crmpulse"
    environment: str = "development"
    log_level: str = "INFO"
    log_dir: str = "logs"
    log_to_file: bool = True

    # CRM API
    crm_access_token: str = ""
    crm_base_url: str = "https://api.hubapi.com"
    crm_timeout_seconds: float = 30.0
    crm_page_size: int = 100
    crm_search_path: str = "/crm/v3/objects/{entity}/search"
    crm_batch_read_path: str = "/crm/v3/objects/{entity}/batch/read"
    crm_associations_path: str = "/crm/v3/associations/{from_type}/{to_type}/batch/read"
    crm_pipelines_path: str = "/crm/v3/pipelines/deals"
    crm_campaigns_path: str = "/marketing/v3/campaigns"

    # Retry on 429 (1s, 2s, 4s, 8s, 16s)
    crm_max_retries: int = 5
    crm_backoff_base_seconds: float = 1.0

    # Windowed fetch - the search endpoint caps total matches per query (~10k)
    window_size_days: int = 30

    # Association resolution
    association_batch_size: int = 100
    association_batch_delay_seconds: float = 0.2

    # Sync modes
    full_lookback_days: int = 365
    incremental_lookback_days: int = 7
    include_campaign_performance: bool = True

    # Persistence
    snapshot_dir: str = "./data/crm"
    public_snapshot_dir: Optional[str] = "./public/data/crm"
    client_config_dir: str = "./config"

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


class CrmClientSettings(BaseModel):
    """Per-client CRM options (the "crm" or legacy "hubspot" block)"""

    lookback_days: Optional[int] = None
    portal_id: Optional[str] = None
    window_size_days: Optional[int] = None
    excluded_pipeline_markers: List[str] = Field(default_factory=lambda: ["NO USAR"])


class ClientConfig(BaseModel):
    """Per-client configuration, selected with --client=<id>"""

    client: str
    client_full_name: str = Field(
        default="",
        validation_alias=AliasChoices("client_full_name", "clientFullName"),
    )
    region: Optional[str] = None
    crm: CrmClientSettings = Field(
        default_factory=CrmClientSettings,
        validation_alias=AliasChoices("crm", "hubspot"),
    )

    @property
    def display_name(self) -> str:
        if self.client_full_name:
            return f"{self.client} - {self.client_full_name}"
        return self.client

    def lookback_days(self, settings: Settings) -> int:
        return self.crm.lookback_days or settings.full_lookback_days

    def window_size_days(self, settings: Settings) -> int:
        return self.crm.window_size_days or settings.window_size_days


def load_client_config(client_id: str, config_dir: Optional[str] = None) -> ClientConfig:
    """
    Load <config_dir>/<client_id>.json

    Raises:
        ConfigurationError: if the file is missing or malformed
    """
    directory = Path(config_dir or get_settings().client_config_dir)
    path = directory / f"{client_id}.json"

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigurationError(f"Client config not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Client config {path} is not valid JSON: {e}") from e

    payload.setdefault("client", client_id)
    try:
        return ClientConfig.model_validate(payload)
    except ValidationError as e:
        raise ConfigurationError(f"Client config {path} is invalid: {e}") from e
