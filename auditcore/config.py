"""Global configuration: constants, engine settings and logging setup."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# Environment variables recognised by load_settings()
ENV_PREFIX = "AUDITCORE_"

# Default size of the record worker pool
DEFAULT_MAX_WORKERS = 4

# Default deadline for one custom predicate evaluation, in seconds
DEFAULT_CUSTOM_TIMEOUT = 2.0

DEFAULT_LOG_LEVEL = "INFO"

# Accepted rule-set file types
RULE_FILE_SUFFIXES = (".json", ".yaml", ".yml")


class EngineSettings(BaseModel):
    """Runtime settings for :class:`~auditcore.compliance.engine.ComplianceEngine`."""

    max_workers: int = Field(default=DEFAULT_MAX_WORKERS, ge=1)
    """Records evaluated concurrently.  ``1`` evaluates inline."""

    custom_timeout: float | None = Field(default=DEFAULT_CUSTOM_TIMEOUT, ge=0)
    """Per-evaluation deadline for custom predicates; ``None`` or ``0`` disables it."""

    log_level: str = DEFAULT_LOG_LEVEL

    @field_validator("custom_timeout", mode="before")
    @classmethod
    def _blank_timeout(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().lower() in ("", "none", "off"):
            return None
        return value

    @field_validator("log_level")
    @classmethod
    def _check_level(cls, value: str) -> str:
        level = value.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level: {value}")
        return level


def load_settings(config_path: str | Path | None = None) -> EngineSettings:
    """Load merged settings: defaults -> config JSON file -> env vars.

    Environment variables are ``AUDITCORE_MAX_WORKERS``,
    ``AUDITCORE_CUSTOM_TIMEOUT`` and ``AUDITCORE_LOG_LEVEL``.
    """
    values: dict[str, Any] = {}

    if config_path is not None:
        path = Path(config_path)
        if path.is_file():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                if isinstance(data, dict):
                    values.update({k: v for k, v in data.items() if k in EngineSettings.model_fields})
            except (json.JSONDecodeError, OSError):
                logger.debug("Could not read settings file %s", path, exc_info=True)

    for field_name in EngineSettings.model_fields:
        env_val = os.environ.get(ENV_PREFIX + field_name.upper())
        if env_val is not None:
            values[field_name] = env_val

    return EngineSettings.model_validate(values)


def configure_logging(settings: EngineSettings) -> None:
    """Apply the configured level to the ``auditcore`` logger namespace."""
    logging.getLogger("auditcore").setLevel(settings.log_level)
