"""
Dialogue capture buffer with a debounced flush

Turns arrive one at a time from the agent session. The buffer is
considered final either after a quiet period (the silence timer) or when
the agent explicitly signals the end of the conversation. Either way the
flush happens at most once per conversation.

Every timer carries the epoch it was armed in. begin(), a successful
finalize() and cancel() all bump the epoch, so a timer callback that is
already queued on the loop when the end-signal arrives finds a stale epoch
and does nothing.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from src.models import DialogueTurn
from src.services.transcript import Transcript, count_user_turns, generate_transcript

logger = logging.getLogger(__name__)

# Reasons passed to finalize()
REASON_SILENCE = "silence"
REASON_END_SIGNAL = "end_signal"
REASON_DISCONNECT = "disconnect"
REASON_MANUAL = "manual"

FlushCallback = Callable[[Transcript, str], None]
RejectCallback = Callable[[str, int], None]


class DialogueCapture:
    """
    Ordered turn buffer plus its single-shot flush.

    Args:
        on_flush: Called with the normalized transcript and the reason once
            the buffer is accepted
        silence_timeout: Quiet period in seconds before the buffer is final
        min_user_turns: Flushes with fewer user turns are rejected
        on_reject: Called with (reason, user_turn_count) for rejected flushes
    """

    def __init__(
        self,
        on_flush: FlushCallback,
        silence_timeout: float = 2.0,
        min_user_turns: int = 2,
        on_reject: Optional[RejectCallback] = None,
    ):
        self._on_flush = on_flush
        self._on_reject = on_reject
        self.silence_timeout = silence_timeout
        self.min_user_turns = min_user_turns

        self._turns: List[DialogueTurn] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._epoch = 0
        self._pending = False

    @property
    def turns(self) -> List[DialogueTurn]:
        return list(self._turns)

    @property
    def user_turn_count(self) -> int:
        return count_user_turns(self._turns)

    @property
    def pending(self) -> bool:
        """True while the current conversation has not been flushed yet."""
        return self._pending

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    def begin(self):
        """Start a new conversation: empty buffer, no timer, flush pending."""
        self._cancel_timer()
        self._epoch += 1
        self._turns = []
        self._pending = True

    def clear(self):
        """Drop everything; nothing is pending until the next begin()."""
        self._cancel_timer()
        self._epoch += 1
        self._turns = []
        self._pending = False

    def append(self, turn: DialogueTurn) -> bool:
        """
        Add a turn and restart the silence timer (debounce, not throttle).

        Returns:
            False when no conversation is being captured
        """
        if not self._pending:
            logger.warning(f"⚠️ Dropping {turn.role.value} turn: no conversation is being captured")
            return False

        self._turns.append(turn)
        self._arm_timer()
        return True

    def end_signal(self) -> Optional[Transcript]:
        """Explicit end from the agent: skip the quiet period."""
        self._cancel_timer()
        if not self._pending:
            logger.debug("End signal after flush, ignoring")
            return None
        return self.finalize(REASON_END_SIGNAL)

    def finalize(self, reason: str) -> Optional[Transcript]:
        """
        Flush the buffer if it has enough user content.

        Returns:
            The transcript handed to on_flush, or None when nothing was flushed
        """
        if not self._pending:
            logger.debug(f"Finalize ({reason}) with nothing pending, ignoring")
            return None

        user_turns = self.user_turn_count
        if user_turns < self.min_user_turns:
            logger.warning(
                f"⚠️ Flush rejected ({reason}): {user_turns}/{self.min_user_turns} user turns "
                f"in {len(self._turns)} captured"
            )
            if self._on_reject:
                self._on_reject(reason, user_turns)
            return None

        self._cancel_timer()
        self._epoch += 1
        self._pending = False

        transcript = generate_transcript(self._turns)
        logger.info(
            f"📝 Conversation finalized ({reason}): {transcript.turn_count} turns, "
            f"{len(transcript.text)} chars"
        )
        self._on_flush(transcript, reason)
        return transcript

    def cancel(self):
        """Cancel the silence timer, keeping the buffer."""
        self._cancel_timer()
        self._epoch += 1

    def _arm_timer(self):
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.silence_timeout, self._on_silence, self._epoch)

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_silence(self, epoch: int):
        if epoch != self._epoch:
            logger.debug(f"Stale silence timer (epoch {epoch}, current {self._epoch})")
            return
        self._timer = None
        if self._pending and self._turns:
            self.finalize(REASON_SILENCE)
