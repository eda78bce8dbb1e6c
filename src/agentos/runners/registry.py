"""Framework name → runner factory mapping.

Constructed once at startup and handed to the LifecycleManager.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

import httpx

from agentos.errors import ValidationError
from agentos.models import Framework
from agentos.runners.base import WorkloadRunner
from agentos.runners.echo import EchoRunner
from agentos.runners.http import HttpRunner

if TYPE_CHECKING:
    from agentos.config import RuntimeConfig

logger = logging.getLogger(__name__)

RunnerFactory = Callable[[], WorkloadRunner]


class RunnerRegistry:
    def __init__(self) -> None:
        self._factories: dict[str, RunnerFactory] = {}

    def register(self, framework: str, factory: RunnerFactory) -> None:
        if framework in self._factories:
            logger.info("Replacing runner factory for framework %s", framework)
        self._factories[framework] = factory

    def create(self, framework: str) -> WorkloadRunner:
        """Build a fresh runner for ``framework``.

        Raises:
            ValidationError: If no factory is registered for the framework.
        """
        factory = self._factories.get(framework)
        if factory is None:
            available = ", ".join(self.frameworks()) or "none"
            raise ValidationError(f"Unknown framework: {framework}. Available: {available}")
        return factory()

    def frameworks(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, framework: object) -> bool:
        return framework in self._factories


def build_runner_registry(
    config: RuntimeConfig,
    http_client: httpx.AsyncClient | None = None,
    force_echo: bool = False,
) -> RunnerRegistry:
    """Register the configured runner kind for every known framework.

    ``http_client`` is shared by every HttpRunner when given; otherwise
    each runner owns its own client.  ``force_echo`` replaces every
    backend with EchoRunner (local development).
    """
    registry = RunnerRegistry()
    for framework in Framework:
        kind = "echo" if force_echo else config.runner_for(framework.value)
        if kind == "echo":
            registry.register(framework.value, lambda f=framework.value: EchoRunner(f))
        else:
            registry.register(
                framework.value,
                lambda f=framework.value: HttpRunner(
                    f, client=http_client, default_timeout_ms=config.request_timeout_ms
                ),
            )
    logger.info("Runner registry built: %s", ", ".join(registry.frameworks()))
    return registry
