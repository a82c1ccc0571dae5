"""
Event System for Conversation and Story Progress

Manages event emissions and per-conversation queues for WebSocket streaming.
"""

from typing import Dict, Callable, Any, List
from asyncio import Queue
import asyncio
import logging
from datetime import datetime

logger = logging.getLogger(__name__)


# ==================== Event Type Constants ====================
EVENT_PHASE_CHANGED = "phase_changed"
EVENT_TURN_CAPTURED = "turn_captured"
EVENT_TRANSCRIPT_READY = "transcript_ready"
EVENT_FLUSH_REJECTED = "flush_rejected"
EVENT_GENERATION_PROGRESS = "generation_progress"
EVENT_STORY_READY = "story_ready"
EVENT_ERROR_ADDED = "error_added"
EVENT_ERROR_REMOVED = "error_removed"


class ConversationEvent:
    """Represents a conversation event"""
    def __init__(self, event_type: str, conversation_id: str, data: Dict[str, Any]):
        self.event_type = event_type
        self.conversation_id = conversation_id
        self.data = data
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.event_type,
            "conversation_id": self.conversation_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat()
        }


class EventEmitter:
    """
    Event emitter for conversation progress events.

    Emits events as the conversation moves through its lifecycle:
    - phase_changed: state machine moved to a new phase
    - turn_captured: a dialogue turn entered the capture buffer
    - transcript_ready: buffer finalized into a transcript
    - generation_progress: human-readable generation status
    - story_ready: story handed to the presentation layer
    - error_added / error_removed: error registry changed
    """

    def __init__(self):
        self._listeners: Dict[str, List[Callable]] = {}
        self._conversation_queues: Dict[str, Queue] = {}  # conversation_id -> event queue

    def on(self, event_type: str, callback: Callable):
        """Register event listener"""
        if event_type not in self._listeners:
            self._listeners[event_type] = []
        self._listeners[event_type].append(callback)

    def off(self, event_type: str, callback: Callable):
        """Remove event listener"""
        if event_type in self._listeners:
            self._listeners[event_type].remove(callback)

    async def emit(self, event_type: str, conversation_id: str, data: Dict[str, Any]):
        """Emit event to all registered listeners"""
        event = ConversationEvent(event_type, conversation_id, data)

        for callback in self._listeners.get(event_type, []):
            try:
                if asyncio.iscoroutinefunction(callback):
                    await callback(event)
                else:
                    callback(event)
            except Exception as e:
                logger.error(f"Error in event listener for {event_type}: {e}")

        if conversation_id in self._conversation_queues:
            await self._conversation_queues[conversation_id].put(event)

    def emit_nowait(self, event_type: str, conversation_id: str, data: Dict[str, Any]):
        """
        Emit from synchronous code (phase transitions, timer callbacks).

        Plain listeners run inline; coroutine listeners are scheduled on the
        running loop and are skipped when there is none.
        """
        event = ConversationEvent(event_type, conversation_id, data)

        for callback in self._listeners.get(event_type, []):
            try:
                if asyncio.iscoroutinefunction(callback):
                    try:
                        loop = asyncio.get_running_loop()
                    except RuntimeError:
                        logger.debug(f"No running loop for async listener of {event_type}")
                        continue
                    loop.create_task(callback(event))
                else:
                    callback(event)
            except Exception as e:
                logger.error(f"Error in event listener for {event_type}: {e}")

        if conversation_id in self._conversation_queues:
            self._conversation_queues[conversation_id].put_nowait(event)

    def create_conversation_queue(self, conversation_id: str) -> Queue:
        """Create event queue for a specific conversation (for WebSocket connection)"""
        queue = Queue()
        self._conversation_queues[conversation_id] = queue
        return queue

    def remove_conversation_queue(self, conversation_id: str):
        """Remove conversation queue when WebSocket disconnects"""
        if conversation_id in self._conversation_queues:
            del self._conversation_queues[conversation_id]


# Global event emitter instance
conversation_events = EventEmitter()
