"""Portal settings loaded from YAML."""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field


def _default_settings_path() -> Path | None:
    """Return the default portal configuration path if present."""

    for parent in Path(__file__).resolve().parents:
        candidate = parent / "config" / "portal.yaml"
        if candidate.exists():
            return candidate
    return None


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Level for the expense_portal logger")
    structured: bool = Field(default=True, description="Emit one JSON object per line")

    model_config = ConfigDict(extra="forbid")


class Settings(BaseModel):
    """Runtime configuration for the portal service."""

    app_name: str = Field(default="Expense Portal")
    policy_config_path: Path | None = Field(
        default=None,
        description="Site policy defaults; config/policy.yaml is used when unset",
    )
    expense_number_prefix: str = Field(default="EXP-")
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def from_yaml(cls, content: str) -> Settings:
        data = yaml.safe_load(content) or {}
        if not isinstance(data, dict):
            raise ValueError("Portal configuration must be a mapping")
        return cls.model_validate(data)

    @classmethod
    def from_file(cls, path: str | Path | None = None) -> Settings:
        target_path = Path(path) if path is not None else _default_settings_path()
        if target_path is None:
            raise FileNotFoundError("No portal.yaml configuration file found")
        return cls.from_yaml(target_path.read_text(encoding="utf-8"))

    @classmethod
    def from_environment(cls, env_var: str = "EXPENSE_PORTAL_CONFIG") -> Settings:
        """Load settings from YAML held in an environment variable."""

        content = os.getenv(env_var)
        if not content:
            raise ValueError(f"Environment variable '{env_var}' is not set or empty")
        return cls.from_yaml(content)


def load_settings(env_var: str = "EXPENSE_PORTAL_CONFIG") -> Settings:
    """Environment first, then config/portal.yaml, then built-in defaults."""

    if os.getenv(env_var):
        return Settings.from_environment(env_var)
    if _default_settings_path() is not None:
        return Settings.from_file()
    return Settings()
