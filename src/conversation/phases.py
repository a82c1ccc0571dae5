"""
Conversation phase state machine

Owns the single current ConversationPhase and rejects illegal moves with a
logged warning instead of raising, so a stray event from a conversation
that just ended cannot corrupt the next one.

    IDLE --start--> ACTIVE
    ACTIVE --flush--> GENERATING                      (simplified design)
    ACTIVE --flush--> ENDED --> PROCESSING --> GENERATING  (staged design)
    GENERATING --success--> COMPLETE
    GENERATING --exhausted--> IDLE
    IDLE --retry--> GENERATING
    IDLE --load--> COMPLETE
    any --reset--> IDLE
"""

import logging
from typing import Callable, Dict, FrozenSet, Iterable, Optional

from src.models import ConversationPhase

logger = logging.getLogger(__name__)

P = ConversationPhase

TRANSITIONS: Dict[ConversationPhase, FrozenSet[ConversationPhase]] = {
    P.IDLE: frozenset({P.ACTIVE, P.GENERATING, P.COMPLETE}),
    # ACTIVE -> IDLE: session failed to start or dropped without a usable conversation
    P.ACTIVE: frozenset({P.GENERATING, P.ENDED, P.IDLE}),
    P.ENDED: frozenset({P.PROCESSING}),
    P.PROCESSING: frozenset({P.GENERATING, P.IDLE}),
    P.GENERATING: frozenset({P.COMPLETE, P.IDLE}),
    P.COMPLETE: frozenset(),
}

PhaseListener = Callable[[ConversationPhase, ConversationPhase, str], None]


class PhaseMachine:
    """Current phase plus the transition table that guards it."""

    def __init__(self, on_change: Optional[PhaseListener] = None):
        self._phase = P.IDLE
        self._on_change = on_change

    @property
    def phase(self) -> ConversationPhase:
        return self._phase

    def is_in(self, *phases: ConversationPhase) -> bool:
        return self._phase in phases

    def can_transition(self, target: ConversationPhase) -> bool:
        return target in TRANSITIONS[self._phase]

    def transition(self, target: ConversationPhase, reason: str = "") -> bool:
        """
        Move to ``target`` if the table allows it.

        Returns:
            True when the phase changed, False (with a warning) otherwise
        """
        if not self.can_transition(target):
            logger.warning(
                f"⚠️ Ignoring illegal phase transition {self._phase.value} → {target.value}"
                + (f" ({reason})" if reason else "")
            )
            return False
        self._set(target, reason)
        return True

    def reset(self, reason: str = "reset"):
        """The one transition allowed from every phase."""
        if self._phase != P.IDLE:
            self._set(P.IDLE, reason)

    def guard(self, allowed: Iterable[ConversationPhase], action: str) -> bool:
        """Check an action against the current phase, warning when it does not apply."""
        allowed = tuple(allowed)
        if self._phase in allowed:
            return True
        logger.warning(
            f"⚠️ {action} ignored in phase {self._phase.value} "
            f"(expected {', '.join(p.value for p in allowed)})"
        )
        return False

    def _set(self, target: ConversationPhase, reason: str):
        previous = self._phase
        self._phase = target
        if self._on_change:
            self._on_change(previous, target, reason)
