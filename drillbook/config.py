from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import DEFAULT_ACTOR, DEFAULT_AGENT_MODEL, DEFAULT_ORG_ID


class RetryConfig(BaseModel):
    """Retry policy for transient action failures."""

    max_retries: int = 0
    backoff_base: float = 1.5
    jitter: float = 0.5


class EngineConfig(BaseModel):
    """Run engine settings."""

    profile: Literal["playbook", "suite"] = "playbook"
    stop_on_failure: Optional[bool] = None
    narrative_enabled: Optional[bool] = None
    risk_map_enabled: Optional[bool] = None
    retry: RetryConfig = RetryConfig()


class ExecutorConfig(BaseModel):
    """Action executor settings."""

    backend: Literal["static", "agent"] = "static"
    model: str = DEFAULT_AGENT_MODEL


class NarrativeConfig(BaseModel):
    """Text-generation collaborator settings."""

    enabled: bool = False
    model: str = DEFAULT_AGENT_MODEL


class DrillbookConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    org_id: str = DEFAULT_ORG_ID
    actor: str = DEFAULT_ACTOR
    engine: EngineConfig = EngineConfig()
    executor: ExecutorConfig = ExecutorConfig()
    narrative: NarrativeConfig = NarrativeConfig()


def load_config(path: Optional[str] = None) -> DrillbookConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to DRILLBOOK_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("DRILLBOOK_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = DrillbookConfig(**data)
    else:
        config = DrillbookConfig()

    env_db_url = os.getenv("DRILLBOOK_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_org = os.getenv("DRILLBOOK_ORG_ID")
    if env_org:
        config.org_id = env_org
    return config
