"""
Unit tests for the conversation phase state machine.

Run with: python -m pytest tests/test_phases.py -v
"""

import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.conversation.phases import PhaseMachine
from src.models import ConversationPhase as P


class TestTransitions:

    def setup_method(self):
        self.changes = []
        self.machine = PhaseMachine(on_change=lambda old, new, reason: self.changes.append((old, new, reason)))

    def test_starts_idle(self):
        assert self.machine.phase == P.IDLE

    def test_simplified_happy_path(self):
        assert self.machine.transition(P.ACTIVE, "start")
        assert self.machine.transition(P.GENERATING, "flush")
        assert self.machine.transition(P.COMPLETE, "story ready")

        assert [(old, new) for old, new, _ in self.changes] == [
            (P.IDLE, P.ACTIVE),
            (P.ACTIVE, P.GENERATING),
            (P.GENERATING, P.COMPLETE),
        ]

    def test_staged_path(self):
        for target in (P.ACTIVE, P.ENDED, P.PROCESSING, P.GENERATING):
            assert self.machine.transition(target)
        assert self.machine.phase == P.GENERATING

    def test_exhausted_generation_returns_to_idle(self):
        self.machine.transition(P.ACTIVE)
        self.machine.transition(P.GENERATING)

        assert self.machine.transition(P.IDLE, "generation failed")
        assert self.changes[-1] == (P.GENERATING, P.IDLE, "generation failed")

    def test_retry_and_load_from_idle(self):
        assert self.machine.can_transition(P.GENERATING)
        assert self.machine.can_transition(P.COMPLETE)

    def test_illegal_transition_is_ignored(self, caplog):
        machine = PhaseMachine()
        machine.transition(P.ACTIVE)

        assert not machine.transition(P.COMPLETE)
        assert machine.phase == P.ACTIVE
        assert "illegal phase transition" in caplog.text

    def test_staged_steps_cannot_be_skipped(self):
        self.machine.transition(P.ACTIVE)
        self.machine.transition(P.ENDED)

        assert not self.machine.transition(P.GENERATING)
        assert self.machine.phase == P.ENDED

    def test_complete_only_leaves_by_reset(self):
        self.machine.transition(P.ACTIVE)
        self.machine.transition(P.GENERATING)
        self.machine.transition(P.COMPLETE)

        for target in P:
            assert not self.machine.can_transition(target)

        self.machine.reset()
        assert self.machine.phase == P.IDLE


class TestResetAndGuard:

    def setup_method(self):
        self.changes = []
        self.machine = PhaseMachine(on_change=lambda old, new, reason: self.changes.append((old, new, reason)))

    def test_reset_from_every_phase(self):
        for phase in P:
            machine = PhaseMachine()
            machine._phase = phase
            machine.reset()
            assert machine.phase == P.IDLE

    def test_reset_from_idle_does_not_notify(self):
        self.machine.reset()
        assert self.changes == []

    def test_reset_reason_is_reported(self):
        self.machine.transition(P.ACTIVE)
        self.machine.reset("user pressed reset")
        assert self.changes[-1] == (P.ACTIVE, P.IDLE, "user pressed reset")

    def test_guard(self, caplog):
        assert self.machine.guard([P.IDLE], "start")
        assert not self.machine.guard([P.ACTIVE], "Agent message")
        assert "Agent message ignored in phase IDLE" in caplog.text
