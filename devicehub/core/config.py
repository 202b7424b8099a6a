from functools import lru_cache
from pathlib import Path
from secrets import token_hex
from typing import List

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PACKAGE_DIR = Path(__file__).resolve().parents[1]
REPO_ROOT = PACKAGE_DIR.parent

logger = structlog.get_logger(__name__)


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    project_name: str = "ESP32 Device Hub"
    app_env: str = Field(default="dev", description="dev, test or production")
    api_prefix: str = "/api"
    cors_origins_raw: str = Field(
        default="http://localhost:5173,http://localhost:4173,http://localhost:3000",
        alias="CORS_ALLOWED_ORIGINS",
    )

    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False, description="Render log lines as JSON")

    jwt_secret: str = Field(default="", description="HS256 signing secret, 32+ chars")
    jwt_issuer: str = "esp32-demo-backend"
    jwt_audience: str = "esp32-climate-suite"
    access_token_expire_minutes: int = Field(default=240, ge=1)
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    database_url: str | None = Field(
        default=None,
        description="Async SQLAlchemy URL for the user store; in-memory when unset",
    )

    auth_rate_limit_window_seconds: int = Field(default=15 * 60, ge=1)
    auth_rate_limit_max_requests: int = Field(default=10, ge=1)
    global_rate_limit_window_seconds: int = Field(default=15 * 60, ge=1)
    global_rate_limit_max_requests: int = Field(default=500, ge=1, alias="GLOBAL_RATE_LIMIT")

    credential_throttle_window_seconds: int = Field(default=10 * 60, ge=1)
    credential_throttle_max_failures: int = Field(default=5, ge=1)

    flash_cli_executable: str = Field(default="arduino-cli")
    flash_timeout_ms: int = Field(default=2 * 60 * 1000, gt=0, alias="ARDUINO_CLI_TIMEOUT_MS")
    flash_kill_grace_ms: int = Field(default=3000, ge=0)
    flash_max_output_bytes: int = Field(default=4000, gt=0)
    flash_probe_timeout_ms: int = Field(default=10_000, gt=0)
    flash_cancel_on_disconnect: bool = Field(
        default=False,
        description="Kill an in-flight compile/upload when the client disconnects",
    )
    project_root: Path = Field(default=REPO_ROOT)
    sketch_extensions_raw: str = Field(default=".ino,.bin", alias="SKETCH_EXTENSIONS")

    weather_endpoint: str = "https://api.open-meteo.com/v1/forecast"
    geocode_endpoint: str = "https://geocoding-api.open-meteo.com/v1/search"
    weather_timeout_seconds: float = Field(default=5.0, gt=0)

    enable_prometheus_metrics: bool = Field(
        default=True, description="Expose Prometheus metrics endpoint when true"
    )
    prometheus_metrics_path: str = Field(
        default="/metrics/prometheus",
        description="Path where scraped Prometheus metrics are served",
    )

    @model_validator(mode="after")
    def _resolve_jwt_secret(self) -> "Settings":
        if len(self.jwt_secret) >= 32:
            return self
        if self.is_production:
            raise ValueError("JWT_SECRET must be defined and at least 32 characters in production")
        logger.warning(
            "config.jwt_secret.ephemeral",
            detail="JWT_SECRET missing or too short; using an ephemeral secret for this process",
        )
        self.jwt_secret = token_hex(48)
        return self

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins_raw.split(",") if origin.strip()]

    @property
    def sketch_extensions(self) -> frozenset[str]:
        return frozenset(
            ext.strip().lower() for ext in self.sketch_extensions_raw.split(",") if ext.strip()
        )


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()
