"""Configuration loading for AgentOS.

Reads agentos.yaml (path from ``--config`` or ``AGENTOS_CONFIG``) and
applies environment-variable overrides for deployment.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator

from agentos.models import Framework

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "AGENTOS_CONFIG"
DEFAULT_CONFIG_FILE = "agentos.yaml"


# ── Config Models ────────────────────────────────────────────────────────────


class ServiceConfig(BaseModel):
    name: str = "agentos"
    # all = both planes in one process; control = authority plane only;
    # runtime = execution plane only
    role: Literal["all", "control", "runtime"] = "all"


class StoreConfig(BaseModel):
    path: str = ".agentos-data/agentos.db"


class BusConfig(BaseModel):
    backend: Literal["local", "redis"] = "local"
    redis_url: str = "redis://localhost:6379"
    commands_channel: str = "agent:commands"
    status_channel: str = "agent:status"
    max_inflight: int = Field(default=64, gt=0)


class RuntimeConfig(BaseModel):
    default_runner: Literal["http", "echo"] = "http"
    # framework name → runner kind, overrides default_runner per framework
    runners: dict[str, Literal["http", "echo"]] = Field(default_factory=dict)
    request_timeout_ms: int = Field(default=30_000, gt=0)

    @field_validator("runners")
    @classmethod
    def _known_frameworks(cls, v: dict[str, str]) -> dict[str, str]:
        known = {f.value for f in Framework}
        unknown = sorted(set(v) - known)
        if unknown:
            raise ValueError(
                f"Unknown framework(s) in runtime.runners: {', '.join(unknown)}. "
                f"Known: {', '.join(sorted(known))}"
            )
        return v

    def runner_for(self, framework: str) -> str:
        return self.runners.get(framework, self.default_runner)


class HitlConfig(BaseModel):
    sweep_interval_seconds: float = Field(default=30, gt=0)
    poll_interval_seconds: float = Field(default=1.0, gt=0)


class WebhooksConfig(BaseModel):
    max_concurrent_deliveries: int = Field(default=32, gt=0)
    user_agent: str = "AgentOS-Webhook/1.0"
    max_backoff_seconds: float = Field(default=60, ge=0)
    response_body_limit: int = Field(default=4096, gt=0)


class AgentOSConfig(BaseModel):
    """Top-level AgentOS configuration (matches agentos.yaml)."""

    service: ServiceConfig = Field(default_factory=ServiceConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    bus: BusConfig = Field(default_factory=BusConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    hitl: HitlConfig = Field(default_factory=HitlConfig)
    webhooks: WebhooksConfig = Field(default_factory=WebhooksConfig)

    @property
    def runs_control_plane(self) -> bool:
        return self.service.role in ("all", "control")

    @property
    def runs_runtime_plane(self) -> bool:
        return self.service.role in ("all", "runtime")


DEFAULT_CONFIG_YAML = """\
# AgentOS configuration
service:
  name: agentos
  role: all               # all | control | runtime

store:
  path: .agentos-data/agentos.db

bus:
  backend: local          # local (single process) | redis
  redis_url: redis://localhost:6379
  commands_channel: "agent:commands"
  status_channel: "agent:status"
  max_inflight: 64

runtime:
  default_runner: http    # http | echo
  runners: {}             # per-framework override, e.g. {custom: echo}
  request_timeout_ms: 30000

hitl:
  sweep_interval_seconds: 30
  poll_interval_seconds: 1.0

webhooks:
  max_concurrent_deliveries: 32
  user_agent: "AgentOS-Webhook/1.0"
  max_backoff_seconds: 60
  response_body_limit: 4096
"""


def resolve_config_path(config_path: str | Path | None = None) -> Path:
    if config_path is not None:
        return Path(config_path)
    return Path(os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_FILE))


def load_config(config_path: str | Path | None = None) -> AgentOSConfig:
    """Load AgentOS configuration.

    Args:
        config_path: Path to agentos.yaml.  Falls back to ``AGENTOS_CONFIG``
            and then ``./agentos.yaml``.  A missing file yields defaults.

    Returns:
        Validated AgentOSConfig.

    Raises:
        ValueError: If config validation fails.
    """
    path = resolve_config_path(config_path)
    raw: dict = {}
    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"AgentOS config must be a mapping: {path}")
    else:
        logger.info("No config file at %s, using defaults", path)

    config = AgentOSConfig(**raw)

    # Environment variable overrides for deployment
    db_path = os.environ.get("AGENTOS_DB_PATH")
    if db_path:
        config.store.path = db_path

    redis_url = os.environ.get("REDIS_URL")
    if redis_url:
        config.bus.backend = "redis"
        config.bus.redis_url = redis_url

    role = os.environ.get("AGENTOS_ROLE")
    if role:
        if role not in ("all", "control", "runtime"):
            raise ValueError(f"AGENTOS_ROLE must be all, control or runtime, got {role!r}")
        config.service.role = role

    logger.info(
        "Loaded AgentOS config: role=%s bus=%s store=%s",
        config.service.role,
        config.bus.backend,
        config.store.path,
    )
    return config
