from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveFloat, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SCANCHAIN_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "scanchain"
    environment: str = "production"
    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/state"))
    database_url: str | None = None
    sqlite_busy_timeout_ms: PositiveInt = 5000

    job_lease_ttl_seconds: PositiveInt = 900

    checkpoint_ttl_seconds: PositiveInt = 24 * 60 * 60
    checkpoint_file_interval: PositiveInt = 5000
    checkpoint_time_interval_seconds: PositiveFloat = 30.0

    chain_max_execution_seconds: PositiveFloat = 480.0
    chain_max_files_per_execution: PositiveInt = 50000
    chain_max_length: PositiveInt = 20
    chain_timeout_buffer_seconds: float = Field(default=60.0, ge=0.0)
    chain_retention_days: PositiveInt = 7

    scan_page_size: PositiveInt = 1000
    scan_sub_batch_size: PositiveInt = 100
    scan_page_delay_seconds: float = Field(default=0.1, ge=0.0)

    full_scan_staleness_days: PositiveInt = 7
    min_index_completeness: int = Field(default=100, ge=0)

    maintenance_batch_size: PositiveInt = 100

    name_similarity_threshold: float = Field(default=0.8, gt=0.0, le=1.0)
    # Heuristic weights, pending empirical calibration.
    version_weight_member_confidence: float = Field(default=0.4, ge=0.0, le=1.0)
    version_weight_pattern: float = Field(default=0.3, ge=0.0, le=1.0)
    version_weight_size_consistency: float = Field(default=0.2, ge=0.0, le=1.0)
    version_weight_time_spread: float = Field(default=0.1, ge=0.0, le=1.0)
    version_min_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    version_max_size_variance: float = Field(default=0.5, ge=0.0)
    results_max_groups: PositiveInt = 50

    default_page_size: PositiveInt = 50
    max_page_size: PositiveInt = 200

    @field_validator("state_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path) -> Path:
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root = self.state_root.resolve(strict=False)
        if self.database_url is None:
            self.state_root.mkdir(parents=True, exist_ok=True)

        normalized_level = self.log_level.upper().strip()
        if normalized_level not in SUPPORTED_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(SUPPORTED_LOG_LEVELS)}")
        self.log_level = normalized_level

        if self.max_page_size < self.default_page_size:
            raise ValueError("max_page_size must be greater than or equal to default_page_size")

        if self.scan_sub_batch_size > self.scan_page_size:
            raise ValueError("scan_sub_batch_size must be less than or equal to scan_page_size")

        if self.chain_timeout_buffer_seconds >= self.chain_max_execution_seconds:
            raise ValueError("chain_timeout_buffer_seconds must be smaller than chain_max_execution_seconds")

        weight_total = (
            self.version_weight_member_confidence
            + self.version_weight_pattern
            + self.version_weight_size_consistency
            + self.version_weight_time_spread
        )
        if weight_total > 1.0 + 1e-9:
            raise ValueError("version confidence weights must not sum above 1.0")

        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "scanchain.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
