from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    halo_base_url: str = ""
    halo_client_id: Optional[str] = None
    halo_client_secret: Optional[str] = None
    halo_tenant: Optional[str] = None
    halo_timeout_seconds: float = 30.0

    # Report validation and matching
    report_row_cap: int = 100
    report_match_page_size: int = 500
    report_match_min_overlap: int = 2
    report_category: str = "Dashboard"
    max_fix_attempts: int = 3

    # Dashboard grid (12 columns wide, 3 widgets per row)
    dashboard_grid_columns: int = 12
    widget_cell_width: int = 4
    widget_cell_height: int = 3

    api_port: int = 8000
    frontend_url: str = "http://localhost:3000"
    log_level: str = "INFO"

    @property
    def halo_configured(self) -> bool:
        return bool(self.halo_base_url and self.halo_client_id and self.halo_client_secret)

    @property
    def halo_api_url(self) -> str:
        return self.halo_base_url.rstrip("/") + "/api"

    @property
    def halo_auth_url(self) -> str:
        base = self.halo_base_url.rstrip("/") + "/auth/token"
        if self.halo_tenant:
            return f"{base}?tenant={self.halo_tenant}"
        return base


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
