"""Error taxonomy shared by every AgentOS component.

Caller-facing operations (lifecycle start/stop, approval resolution, agent
transitions) raise these synchronously.  Background paths (bus message
handling, webhook delivery, the expiry sweep) catch and log them instead.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError as PydanticValidationError


class AgentOSError(Exception):
    """Base class for all AgentOS errors."""


class ValidationError(AgentOSError):
    """Malformed command, policy or request shape, rejected before processing."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.errors = errors or []

    @classmethod
    def from_pydantic(cls, what: str, exc: PydanticValidationError) -> ValidationError:
        """Wrap a pydantic error, keeping the field-level details."""
        issues = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in exc.errors()
        )
        return cls(f"Invalid {what}: {issues}", errors=exc.errors(include_url=False))


class NotFoundError(AgentOSError):
    """Unknown agent, session, policy, webhook or approval request."""

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class StateConflictError(AgentOSError):
    """Illegal status transition, or resolving an approval that is no longer pending.

    Carries the current state, the requested state and the states that
    would have been legal from the current one.
    """

    def __init__(
        self,
        message: str,
        *,
        current: str,
        requested: str,
        allowed: Iterable[str] = (),
    ):
        super().__init__(message)
        self.current = current
        self.requested = requested
        self.allowed = list(allowed)


class BackendError(AgentOSError):
    """Workload runner init/stop/run failure."""


class DeliveryError(AgentOSError):
    """Webhook network failure, timeout or non-2xx response."""


class BusDecodeError(AgentOSError):
    """A bus message that could not be parsed or validated."""
