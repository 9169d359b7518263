"""CRM mirror configuration via pydantic-settings."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class MirrorSettings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///crm_mirror.db"
    echo_sql: bool = False
    app_title: str = "CRM Mirror"

    # Remote CRM (HubSpot)
    hubspot_base_url: str = "https://api.hubapi.com"
    # Private-app token used when a sync request carries no token of its own.
    hubspot_access_token: str = ""
    hubspot_timeout_seconds: float = 30.0

    # Sync engine
    sync_page_size: int = 100
    sync_max_retries: int = 3
    sync_delta_page_delay: float = 0.1
    sync_fast_page_delay: float = 0.05
    sync_slow_page_delay: float = 0.25
    # Remaining-quota level above which full sync uses the fast delay.
    sync_rate_limit_threshold: int = 50
    sync_deal_page_delay: float = 0.1
    sync_max_pages: int = 10000

    model_config = {"env_prefix": "MIRROR_", "env_file": ".env", "extra": "ignore"}


settings = MirrorSettings()
