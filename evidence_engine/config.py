"""
Configuration loading: ``sources.yaml`` plus environment overrides.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ValidationError

from .infra.scheduler import DEFAULT_CRON
from .models import ConnectorConfig

logger = logging.getLogger(__name__)


class Settings(BaseModel):
    database_path: str = "db/evidence.db"
    log_level: str = "INFO"
    scheduler_timezone: str = "UTC"
    default_schedule: str = DEFAULT_CRON
    max_concurrent: int = 3
    stagger_s: float = 5.0
    fetch_timeout_s: float = 15.0
    fetch_max_attempts: int = 3
    fetch_backoff_s: float = 1.0
    respect_robots: bool = True
    render_js_enabled: bool = False
    llm_api_key: Optional[str] = None
    llm_base_url: Optional[str] = None
    llm_model: str = "gpt-4o-mini"


# env var -> Settings field
ENV_OVERRIDES = {
    "DATABASE_PATH": "database_path",
    "LOG_LEVEL": "log_level",
    "SCHEDULER_TIMEZONE": "scheduler_timezone",
    "INGESTION_CRON_SCHEDULE": "default_schedule",
    "MAX_CONCURRENT_CONNECTORS": "max_concurrent",
    "RENDER_JS_ENABLED": "render_js_enabled",
    "LLM_API_KEY": "llm_api_key",
    "LLM_BASE_URL": "llm_base_url",
    "LLM_MODEL": "llm_model",
}


def load_yaml(path: str) -> Dict[str, Any]:
    """Load a YAML mapping; a missing file yields an empty mapping."""
    p = Path(path)
    if not p.exists():
        logger.warning(f"Config file not found: {path}")
        return {}
    with p.open() as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def load_settings(data: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Settings:
    environ = os.environ if environ is None else environ
    merged = dict(data.get("settings") or {})
    for env_name, field in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value not in (None, ""):
            merged[field] = value
    return Settings.model_validate(merged)


def load_sources(data: Dict[str, Any], builtin: Optional[Dict[str, ConnectorConfig]] = None) -> List[ConnectorConfig]:
    """Merge ``sources`` entries from *data* over the built-in source profiles.

    Entries naming a built-in ``source_id`` override its fields; other
    entries must be complete. Both list and ``{source_id: {...}}`` forms
    are accepted. Invalid entries are logged and skipped.
    """
    configs: Dict[str, ConnectorConfig] = dict(builtin or {})
    entries = data.get("sources") or []
    if isinstance(entries, dict):
        entries = [{"source_id": key, **(value or {})} for key, value in entries.items()]

    for entry in entries:
        source_id = entry.get("source_id")
        try:
            if source_id in configs:
                base = configs[source_id].model_dump()
                configs[source_id] = ConnectorConfig.model_validate({**base, **entry})
            else:
                configs[source_id] = ConnectorConfig.model_validate(entry)
        except ValidationError as e:
            logger.error(f"Invalid source entry {source_id!r}: {e}")

    return list(configs.values())
