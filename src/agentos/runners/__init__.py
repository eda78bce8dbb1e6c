"""Pluggable workload backends."""

from agentos.runners.base import (
    HealthCheckResult,
    RunInput,
    RunResult,
    TokenUsage,
    WorkloadRunner,
)
from agentos.runners.echo import EchoRunner
from agentos.runners.http import HttpRunner
from agentos.runners.registry import RunnerRegistry, build_runner_registry

__all__ = [
    "EchoRunner",
    "HealthCheckResult",
    "HttpRunner",
    "RunInput",
    "RunResult",
    "RunnerRegistry",
    "TokenUsage",
    "WorkloadRunner",
    "build_runner_registry",
]
