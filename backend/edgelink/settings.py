from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_asset_dir() -> str:
    # Graph and link table assets live in backend/out by default, next to the logs.
    return str(Path(__file__).resolve().parents[1] / "out" / "assets")


class Settings(BaseSettings):
    """Validated settings (env-driven), keeping config out of code for easy extension."""

    model_config = SettingsConfigDict(
        # Support both "repo root/.env" and "backend/.env" (local dev)
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    out_dir: str = Field(default="out", alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    asset_dir: str = Field(default_factory=_default_asset_dir, alias="ASSET_DIR")
    street_graph_asset_path: str = Field(default="", alias="STREET_GRAPH_ASSET_PATH")
    link_table_path: str = Field(default="", alias="LINK_TABLE_PATH")
    load_assets_on_startup: bool = Field(default=True, alias="LOAD_ASSETS_ON_STARTUP")

    # Multi-waypoint search
    max_visited_nodes: int = Field(default=1_000_000, ge=1, alias="MAX_VISITED_NODES")
    force_curbside: bool = Field(default=True, alias="FORCE_CURBSIDE")
    heading_penalty_s: float = Field(default=300.0, ge=0.0, le=3_600.0, alias="HEADING_PENALTY_S")
    snap_max_distance_m: float = Field(default=1_000.0, ge=1.0, alias="SNAP_MAX_DISTANCE_M")
    search_timeout_s: float = Field(default=0.0, ge=0.0, le=600.0, alias="SEARCH_TIMEOUT_S")

    # Offline transit link build
    link_mapper_profile: str = Field(default="car", alias="LINK_MAPPER_PROFILE")
    link_mapper_max_visited_nodes: int = Field(default=10_000, ge=1, alias="LINK_MAPPER_MAX_VISITED_NODES")
    link_mapper_workers: int = Field(default=1, ge=1, le=64, alias="LINK_MAPPER_WORKERS")

    route_cache_ttl_s: int = Field(default=600, alias="ROUTE_CACHE_TTL_S")
    route_cache_max_entries: int = Field(default=1024, alias="ROUTE_CACHE_MAX_ENTRIES")

    @model_validator(mode="after")
    def _clamp_runtime_values(self) -> "Settings":
        self.route_cache_ttl_s = max(1, int(self.route_cache_ttl_s))
        self.route_cache_max_entries = max(1, int(self.route_cache_max_entries))
        self.link_mapper_profile = (self.link_mapper_profile or "car").strip().lower() or "car"
        return self

    def resolved_street_graph_path(self) -> Path:
        explicit = (self.street_graph_asset_path or "").strip()
        if explicit:
            return Path(explicit)
        return Path(self.asset_dir) / "street_graph.json"

    def resolved_link_table_path(self) -> Path:
        explicit = (self.link_table_path or "").strip()
        if explicit:
            return Path(explicit)
        return Path(self.asset_dir) / "gtfs_link_mappings.json"


settings = Settings()
