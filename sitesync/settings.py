"""Layered settings for sitesync.

Values are resolved in this order (first wins): explicit keyword arguments,
``SITESYNC_*`` environment variables (nested with ``__``, e.g.
``SITESYNC_CDB__PATH``), the YAML config file, then the defaults below.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from sitesync.errors import ConfigError

DEFAULT_CONFIG_FILE = Path("~/.sitesync.yaml")
CONFIG_FILE_ENV = "SITESYNC_CONFIG"


def _expand(value: object) -> object:
    if isinstance(value, (str, Path)) and str(value).strip():
        return Path(str(value)).expanduser()
    return value


class AuthorSettings(BaseModel):
    name: str = "sitesync"
    email: str = "sitesync@example.com"


class CdbSettings(BaseModel):
    path: Optional[Path] = None
    branch: str = "master"
    remote: str = "origin"
    author: AuthorSettings = Field(default_factory=AuthorSettings)

    @field_validator("path", mode="before")
    @classmethod
    def _expand_path(cls, value: object) -> object:
        if value == "":
            return None
        return _expand(value)

    def require_path(self) -> Path:
        if self.path is None:
            raise ConfigError("cdb: cdb.path missing in config")
        return self.path


class LedgerSettings(BaseModel):
    # Human readable source name used in commit messages; falls back to database.
    name: str = ""
    dsn: Optional[str] = None
    driver: str = "mssql+pymssql"
    host: str = ""
    instance: str = ""
    username: str = ""
    password: SecretStr = SecretStr("")
    database: str = ""

    def source_name(self) -> str:
        return self.name or self.database


class SenderSettings(BaseModel):
    name: str = "sitesync"
    email: str = "sitesync@example.com"


class EmailSettings(BaseModel):
    host: str = "localhost"
    port: int = Field(25, ge=1, le=65535)
    username: str = ""
    password: SecretStr = SecretStr("")
    starttls: bool = False
    timeout_s: float = Field(30.0, gt=0)
    resources_path: Path = Field(Path("~/sitesync/res"), validate_default=True)
    inline_images: List[str] = Field(
        default_factory=lambda: ["sysheader.jpg", "sysfooter.jpg"]
    )
    sender: SenderSettings = Field(default_factory=SenderSettings)
    queue_size: int = Field(5, ge=1)
    idle_timeout_s: float = Field(10.0, gt=0)

    @field_validator("resources_path", mode="before")
    @classmethod
    def _expand_resources(cls, value: object) -> object:
        return _expand(value)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SITESYNC_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return init_settings, env_settings, YamlConfigSettingsSource(settings_cls)

    log_level: str = "INFO"
    cdb: CdbSettings = Field(default_factory=CdbSettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    email: EmailSettings = Field(default_factory=EmailSettings)


def resolve_config_file(config_file: Optional[str | Path] = None) -> Optional[Path]:
    """Pick the YAML config file: explicit path, then $SITESYNC_CONFIG, then ~/.sitesync.yaml.

    An explicitly requested file must exist; the home default is optional.
    """
    explicit = config_file or os.getenv(CONFIG_FILE_ENV)
    if explicit:
        path = Path(explicit).expanduser()
        if not path.is_file():
            raise ConfigError(f"config: file {path} not found")
        return path
    default = DEFAULT_CONFIG_FILE.expanduser()
    return default if default.is_file() else None


def load_settings(config_file: Optional[str | Path] = None, **overrides: Any) -> Settings:
    path = resolve_config_file(config_file)

    class _FileSettings(Settings):
        model_config = SettingsConfigDict(yaml_file=path)

    try:
        return _FileSettings(**overrides)
    except (ValidationError, yaml.YAMLError) as exc:
        raise ConfigError(f"config: {exc}") from exc


__all__ = [
    "AuthorSettings",
    "CdbSettings",
    "EmailSettings",
    "LedgerSettings",
    "SenderSettings",
    "Settings",
    "load_settings",
    "resolve_config_file",
]
