"""Configuration management for hookmem."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
import os

from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

DEFAULT_DATA_DIR = Path("~/.hookmem")
CONFIG_ENV_VAR = "HOOKMEM_CONFIG"


def config_file_path() -> Path:
    """Return the YAML config file location (may not exist)."""

    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return (DEFAULT_DATA_DIR / "config.yaml").expanduser()


class HookmemSettings(BaseSettings):
    """Runtime configuration sourced from environment, .env and an optional YAML file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    data_dir: Path = Field(default=DEFAULT_DATA_DIR, validation_alias="HOOKMEM_DATA_DIR")
    database_path: Path | None = Field(default=None, validation_alias="HOOKMEM_DB_PATH")
    log_level: str = Field(default="INFO", validation_alias="HOOKMEM_LOG_LEVEL")
    log_dir: Path | None = Field(default=None, validation_alias="HOOKMEM_LOG_DIR")

    poll_interval: float = Field(default=5.0, validation_alias="HOOKMEM_POLL_INTERVAL")
    stale_claim_timeout: float = Field(default=60.0, validation_alias="HOOKMEM_STALE_CLAIM_TIMEOUT")
    max_sessions_per_cycle: int = Field(default=10, validation_alias="HOOKMEM_MAX_SESSIONS_PER_CYCLE")

    agent_path: str | None = Field(default=None, validation_alias="CLAUDE_PATH")
    agent_timeout: float = Field(default=120.0, validation_alias="HOOKMEM_AGENT_TIMEOUT")

    retention_sessions: int = Field(default=50, validation_alias="HOOKMEM_RETENTION_SESSIONS")
    lock_timeout: float = Field(default=5.0, validation_alias="HOOKMEM_LOCK_TIMEOUT")
    pid_validation_timeout: float = Field(default=0.5, validation_alias="HOOKMEM_PID_VALIDATION_TIMEOUT")
    counter_wait: float = Field(default=5.0, validation_alias="HOOKMEM_COUNTER_WAIT")

    vault_path: Path = Field(default=Path("~/ObsidianVault"), validation_alias="HOOKMEM_VAULT_PATH")
    vault_folder: str = Field(default="_claude-mem", validation_alias="HOOKMEM_VAULT_FOLDER")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=config_file_path()),
            file_secret_settings,
        )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "HOOKMEM_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator(
        "poll_interval",
        "stale_claim_timeout",
        "agent_timeout",
        "lock_timeout",
        "pid_validation_timeout",
        "counter_wait",
    )
    @classmethod
    def _validate_positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Intervals and timeouts must be > 0 seconds")
        return value

    @field_validator("max_sessions_per_cycle", "retention_sessions")
    @classmethod
    def _validate_positive_count(cls, value: int) -> int:
        if value < 1:
            raise ValueError("Session counts must be >= 1")
        return value

    @property
    def sessions_dir(self) -> Path:
        return self.data_dir / "sessions"

    @property
    def locks_dir(self) -> Path:
        return self.data_dir / "locks"

    @property
    def fallback_dir(self) -> Path:
        return self.data_dir / "fallback"

    @property
    def database_file(self) -> Path:
        return self.database_path or self.data_dir / "hookmem.db"

    @property
    def log_directory(self) -> Path:
        return self.log_dir or self.data_dir / "logs"


@lru_cache(maxsize=1)
def get_settings() -> HookmemSettings:
    """Return cached settings instance."""

    settings = HookmemSettings()
    settings.data_dir = settings.data_dir.expanduser().resolve()
    settings.vault_path = settings.vault_path.expanduser().resolve()
    if settings.database_path is not None:
        settings.database_path = settings.database_path.expanduser().resolve()
    if settings.log_dir is not None:
        settings.log_dir = settings.log_dir.expanduser().resolve()
    return settings


__all__ = ["HookmemSettings", "config_file_path", "get_settings"]
