"""Conversation capture, phases and pacing for StoryWriter"""

from .phases import PhaseMachine, TRANSITIONS
from .capture import (
    DialogueCapture,
    REASON_SILENCE,
    REASON_END_SIGNAL,
    REASON_DISCONNECT,
    REASON_MANUAL,
)
from .pacing import MinimumDisplayGate
from .coordinator import ConversationCoordinator

__all__ = [
    "PhaseMachine",
    "TRANSITIONS",
    "DialogueCapture",
    "REASON_SILENCE",
    "REASON_END_SIGNAL",
    "REASON_DISCONNECT",
    "REASON_MANUAL",
    "MinimumDisplayGate",
    "ConversationCoordinator",
]
