"""
WebSocket Routes for Real-Time Conversation Streaming

Streams conversation events (phase changes, captured turns, generation
progress, story ready, errors) and accepts relayed agent events.
"""

from fastapi import WebSocket, WebSocketDisconnect, APIRouter
from typing import Dict, Optional
import asyncio
import logging

from pydantic import ValidationError

from src.api.routes import current_relay_session
from src.models import AgentMessage
from src.services.events import conversation_events, ConversationEvent

logger = logging.getLogger(__name__)

# Will be set by main app
_coordinator = None


def set_coordinator(coordinator):
    """Set the global coordinator instance"""
    global _coordinator
    _coordinator = coordinator


router = APIRouter(tags=["websocket"])


class ConnectionManager:
    """Manages WebSocket connections per conversation"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket, conversation_id: str):
        """Accept WebSocket connection and register it"""
        await websocket.accept()
        self.active_connections[conversation_id] = websocket
        logger.info(f"✅ WebSocket connected for conversation: {conversation_id[:8]}")

    def disconnect(self, conversation_id: str):
        """Remove WebSocket connection"""
        if conversation_id in self.active_connections:
            del self.active_connections[conversation_id]
            logger.info(f"❌ WebSocket disconnected for conversation: {conversation_id[:8]}")


manager = ConnectionManager()


@router.websocket("/ws/conversation")
async def websocket_conversation_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for real-time conversation updates.

    Receives: ping, agent_message, disconnect, end, reset
    Sends: conversation events plus replies to the messages above
    """
    if _coordinator is None:
        await websocket.close(code=1011)
        return

    conversation_id = _coordinator.conversation_id
    await manager.connect(websocket, conversation_id)

    # Create event queue for this conversation
    event_queue = conversation_events.create_conversation_queue(conversation_id)

    try:
        # Send initial connection confirmation with the current read model
        await websocket.send_json({
            "type": "connection_established",
            "conversation_id": conversation_id,
            "conversation": _coordinator.snapshot().model_dump(mode="json")
        })

        # Start two tasks: receive messages and send events
        receive_task = asyncio.create_task(receive_messages(websocket))
        send_task = asyncio.create_task(send_events(websocket, event_queue))

        # Wait for either task to complete (disconnect or error)
        done, pending = await asyncio.wait(
            [receive_task, send_task],
            return_when=asyncio.FIRST_COMPLETED
        )

        # Cancel remaining task and wait for cancellation to complete
        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: {conversation_id[:8]}")
    finally:
        manager.disconnect(conversation_id)
        conversation_events.remove_conversation_queue(conversation_id)


async def receive_messages(websocket: WebSocket):
    """Receive messages from client"""
    try:
        while True:
            data = await websocket.receive_json()
            reply = handle_client_message(data)
            if reply is not None:
                await websocket.send_json(reply)

    except WebSocketDisconnect:
        logger.info("WebSocket client went away")


def handle_client_message(data: Dict) -> Optional[Dict]:
    """Apply one client message to the coordinator and build the reply"""
    message_type = data.get("type")

    if message_type == "ping":
        return {"type": "pong"}

    if message_type == "agent_message":
        if current_relay_session(_coordinator) is None:
            return {"type": "error", "message": "No active agent session"}
        try:
            message = AgentMessage.model_validate(data.get("message") or {})
        except ValidationError as e:
            logger.warning(f"⚠️ Invalid agent message over WebSocket: {e}")
            return {"type": "error", "message": "Invalid agent message"}
        accepted = _coordinator.handle_agent_message(message)
        return {"type": "agent_message_ack", "accepted": accepted}

    if message_type == "disconnect":
        session = current_relay_session(_coordinator)
        if session is not None:
            session.relay_disconnect()
        return {"type": "disconnect_ack"}

    if message_type == "end":
        ended = _coordinator.end_conversation_manually()
        return {"type": "end_ack", "ended": ended}

    if message_type == "reset":
        _coordinator.reset_conversation()
        return {"type": "reset_ack"}

    logger.warning(f"⚠️ Unknown WebSocket message type: {message_type}")
    return {"type": "error", "message": f"Unknown message type: {message_type}"}


async def send_events(websocket: WebSocket, event_queue: asyncio.Queue):
    """Send events to client as they occur"""
    try:
        while True:
            event: ConversationEvent = await event_queue.get()
            await websocket.send_json(event.to_dict())

    except WebSocketDisconnect:
        pass
