"""Engine configuration using Pydantic Settings."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings


class EngineSettings(BaseSettings):
    """Engine defaults loaded from ``FHIR_ENGINE_*`` environment variables."""

    unknown_fields: Literal["lenient", "strict"] = "lenient"
    default_format: Literal["json", "xml"] = "json"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "WARNING"

    # Extra schema document merged over the bundled FHIR R4 core subset.
    schema_path: Path | None = None
    check_patterns: bool = True

    model_config = {"env_prefix": "FHIR_ENGINE_", "case_sensitive": False}


__all__ = ["EngineSettings"]
