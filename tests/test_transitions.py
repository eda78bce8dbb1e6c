"""Tests for the agent and session status graphs."""

import itertools

import pytest

from agentos.errors import StateConflictError
from agentos.models import AgentStatus, SessionStatus
from agentos.transitions import (
    AGENT_TRANSITIONS,
    SESSION_TRANSITIONS,
    TERMINAL_SESSION_STATUSES,
    can_transition_agent,
    check_agent_transition,
    check_session_transition,
)

AGENT_PAIRS = list(itertools.product(AgentStatus, AgentStatus))
SESSION_PAIRS = list(itertools.product(SessionStatus, SessionStatus))


class TestAgentGraph:
    @pytest.mark.parametrize("current,target", AGENT_PAIRS)
    def test_every_pair_follows_table(self, current, target):
        if target in AGENT_TRANSITIONS[current]:
            check_agent_transition(current, target)
            assert can_transition_agent(current, target)
        else:
            with pytest.raises(StateConflictError) as exc_info:
                check_agent_transition(current, target)
            assert not can_transition_agent(current, target)
            err = exc_info.value
            assert err.current == current.value
            assert err.requested == target.value
            assert err.allowed == sorted(s.value for s in AGENT_TRANSITIONS[current])

    def test_draft_edges(self):
        assert AGENT_TRANSITIONS[AgentStatus.DRAFT] == {AgentStatus.RUNNING, AgentStatus.ARCHIVED}

    def test_running_cannot_be_archived_directly(self):
        with pytest.raises(StateConflictError):
            check_agent_transition(AgentStatus.RUNNING, AgentStatus.ARCHIVED)

    def test_archived_is_terminal(self):
        with pytest.raises(StateConflictError) as exc_info:
            check_agent_transition(AgentStatus.ARCHIVED, AgentStatus.RUNNING)
        assert "Allowed: none" in str(exc_info.value)
        assert exc_info.value.allowed == []

    def test_message_lists_allowed_targets(self):
        with pytest.raises(StateConflictError) as exc_info:
            check_agent_transition(AgentStatus.DRAFT, AgentStatus.PAUSED)
        assert str(exc_info.value) == (
            "Invalid agent status transition: draft -> paused. Allowed: archived, running"
        )

    def test_accepts_plain_strings(self):
        check_agent_transition("paused", "running")


class TestSessionGraph:
    @pytest.mark.parametrize("current,target", SESSION_PAIRS)
    def test_every_pair_follows_table(self, current, target):
        if target in SESSION_TRANSITIONS[current]:
            check_session_transition(current, target)
        else:
            with pytest.raises(StateConflictError):
                check_session_transition(current, target)

    def test_terminal_statuses(self):
        assert TERMINAL_SESSION_STATUSES == {
            SessionStatus.COMPLETED,
            SessionStatus.EXPIRED,
            SessionStatus.ERROR,
        }

    def test_idle_can_expire_but_active_cannot(self):
        check_session_transition(SessionStatus.IDLE, SessionStatus.EXPIRED)
        with pytest.raises(StateConflictError):
            check_session_transition(SessionStatus.ACTIVE, SessionStatus.EXPIRED)
