from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Runtime environment; "development" runs without MongoDB or edge cache
    environment: Literal["production", "development"] = "production"

    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "link_preview"
    mongo_max_pool_size: int = 10

    # HTTP fetcher
    http_timeout: float = 10.0
    http_max_retries: int = 0
    http_verify_ssl: bool = True  # set False behind corporate SSL-inspection proxies
    http_user_agent: str = "LinkPreviewBot/1.0"

    # Extraction
    html_parser: Literal["stdlib", "lxml"] = "lxml"
    max_html_bytes: int = 1024 * 1024
    max_image_bytes: int = 10 * 1024 * 1024

    # Durable cache
    cache_namespace: str = "open-graph"
    metadata_cache_ttl: int = 60 * 60 * 24 * 7
    image_cache_ttl: int = 60 * 60 * 24 * 7

    # Response headers
    browser_max_age: int = 600
    stale_while_revalidate: int = 600

    # Edge cache (full responses, production only)
    edge_cache_enabled: bool = True
    edge_cache_ttl: int = 60 * 60
    edge_cache_max_entries: int = 512
    edge_cache_max_body_bytes: int = 1024 * 1024

    # Image transform
    image_transform_enabled: bool = True
    image_height: int = 256
    image_format: str = "WEBP"
    image_quality: int = 80

    # Prefix for rewritten ogImage proxy links; empty means relative links
    public_base_url: str = ""

    disconnect_poll_interval: float = 0.5

    # Logging
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def cache_control(self) -> str:
        return (
            f"public, max-age={self.browser_max_age}, "
            f"stale-while-revalidate={self.stale_while_revalidate}"
        )


settings = Settings()
