"""dynpkg settings: pydantic BaseSettings fed by dynpkg.toml, .env and the environment.

Non-secret settings live in dynpkg.toml. The registry token lives in .env.
Environment variables override both using ``__`` as the nested delimiter
(e.g. ``SOURCE__REGISTRY_URL``). Secrets use SecretStr for masking in logs.

Priority (highest wins): init args > env vars > .env > dynpkg.toml

Usage::

    from dynpkg.config import get_settings

    s = get_settings()
    print(s.cache.root)
    print(s.source.timeout_seconds)
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, SecretStr, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

_DEFAULT_BASE_DIR = Path.home() / ".cache" / "dynpkg"

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in dynpkg.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Sections reject unknown keys, so a misspelt option is an error."""

    model_config = {"extra": "forbid"}


class CacheConfig(_StrictModel):
    root: Path = _DEFAULT_BASE_DIR / "packages"

    @field_validator("root")
    @classmethod
    def expand_root(cls, v: Path) -> Path:
        return v.expanduser()


class JobsConfig(_StrictModel):
    root: Path = _DEFAULT_BASE_DIR / "jobs"
    link_mode: Literal["symlink", "copy"] = "symlink"

    @field_validator("root")
    @classmethod
    def expand_root(cls, v: Path) -> Path:
        return v.expanduser()


class SourceConfig(_StrictModel):
    registry_url: str = "https://registry.npmjs.org"
    timeout_seconds: float = 120.0  # per fetch attempt
    max_retries: int = 2
    base_retry_seconds: float = 1.0
    verify_integrity: bool = True
    max_entry_size: int = 20_000_000  # bytes, per archive member
    auth_token: SecretStr | None = None

    @field_validator("registry_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout_seconds must be positive")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retries cannot be negative")
        return v


class InstallConfig(_StrictModel):
    max_concurrent: int = 4  # per batch
    hook_timeout_seconds: float = 30.0

    @field_validator("max_concurrent")
    @classmethod
    def clamp_max_concurrent(cls, v: int) -> int:
        return max(1, v)


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="dynpkg.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    cache: CacheConfig = CacheConfig()
    jobs: JobsConfig = JobsConfig()
    source: SourceConfig = SourceConfig()
    install: InstallConfig = InstallConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > dynpkg.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Settings for this process, loaded on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Forget loaded settings; the next get_settings() reloads them."""
    global _settings
    _settings = None
