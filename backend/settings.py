from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "BU Shuttle API"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 3000
    # CORS: "*" for dev; in production set to comma-separated origins, e.g. "https://map.example.com"
    cors_origins: str = "*"
    rate_limit: str = "100/minute"

    # TransLoc JSONP relay for the agency. The public map key is shared by every TransLoc web map.
    transloc_base_url: str = "https://bu.transloc.com/Services/JSONPRelay.svc"
    transloc_api_key: str = "8882812681"
    transloc_timeout_seconds: float = 10.0
    transloc_retry_attempts: int = 2

    # Feed cache
    refresh_interval_seconds: float = 10.0
    stale_after_seconds: float = 60.0  # /health reports "stale" once the last good snapshot is older than this


def get_settings() -> Settings:
    return Settings()
