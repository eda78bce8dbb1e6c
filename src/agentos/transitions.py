"""Status graphs for agents and sessions.

The authority plane validates every durable status change against these
tables before it writes to the store or publishes a command.
"""

from __future__ import annotations

from agentos.errors import StateConflictError
from agentos.models import AgentStatus, SessionStatus

AGENT_TRANSITIONS: dict[AgentStatus, frozenset[AgentStatus]] = {
    AgentStatus.DRAFT: frozenset({AgentStatus.RUNNING, AgentStatus.ARCHIVED}),
    AgentStatus.RUNNING: frozenset({AgentStatus.PAUSED, AgentStatus.STOPPED, AgentStatus.ERROR}),
    AgentStatus.PAUSED: frozenset({AgentStatus.RUNNING, AgentStatus.STOPPED, AgentStatus.ARCHIVED}),
    AgentStatus.STOPPED: frozenset({AgentStatus.RUNNING, AgentStatus.ARCHIVED}),
    AgentStatus.ERROR: frozenset({AgentStatus.RUNNING, AgentStatus.STOPPED, AgentStatus.ARCHIVED}),
    AgentStatus.ARCHIVED: frozenset(),
}

SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.ACTIVE: frozenset(
        {SessionStatus.IDLE, SessionStatus.COMPLETED, SessionStatus.ERROR}
    ),
    SessionStatus.IDLE: frozenset(
        {SessionStatus.ACTIVE, SessionStatus.COMPLETED, SessionStatus.EXPIRED}
    ),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.EXPIRED: frozenset(),
    SessionStatus.ERROR: frozenset(),
}

TERMINAL_SESSION_STATUSES = frozenset(
    status for status, targets in SESSION_TRANSITIONS.items() if not targets
)


def _sorted_values(statuses) -> list[str]:
    return sorted(s.value for s in statuses)


def _check(table: dict, kind: str, current, target) -> None:
    allowed = table.get(current, frozenset())
    if target in allowed:
        return
    names = _sorted_values(allowed)
    raise StateConflictError(
        f"Invalid {kind} status transition: {current.value} -> {target.value}. "
        f"Allowed: {', '.join(names) or 'none'}",
        current=current.value,
        requested=target.value,
        allowed=names,
    )


def can_transition_agent(current: AgentStatus, target: AgentStatus) -> bool:
    return target in AGENT_TRANSITIONS.get(current, frozenset())


def check_agent_transition(current: AgentStatus, target: AgentStatus) -> None:
    """Raise StateConflictError unless ``current -> target`` is an edge of the agent graph."""
    _check(AGENT_TRANSITIONS, "agent", AgentStatus(current), AgentStatus(target))


def check_session_transition(current: SessionStatus, target: SessionStatus) -> None:
    """Raise StateConflictError unless ``current -> target`` is an edge of the session graph."""
    _check(SESSION_TRANSITIONS, "session", SessionStatus(current), SessionStatus(target))
