"""
API routes for StoryWriter

REST endpoints exposing the conversation read model and its actions.
"""

import base64
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from src.agents.session import RelayAgentSession, RelayAgentSessionFactory
from src.config.limits import TITLE_MAX_LENGTH, TRANSCRIPT_MAX_LENGTH
from src.conversation.coordinator import ConversationCoordinator
from src.models import AgentMessage, ErrorType
from src.services.errors import AppError

# Logger for API routes
logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["conversation"])

# Global coordinator (will be set by main app)
_coordinator: Optional[ConversationCoordinator] = None


def set_coordinator(coordinator: Optional[ConversationCoordinator]):
    """Set the global coordinator instance"""
    global _coordinator
    _coordinator = coordinator


def get_coordinator() -> Optional[ConversationCoordinator]:
    """Get the global coordinator instance"""
    return _coordinator


def _require_coordinator() -> ConversationCoordinator:
    if _coordinator is None:
        raise HTTPException(status_code=500, detail="Coordinator not initialized")
    return _coordinator


def _http_error(error: AppError, not_found: bool = False) -> HTTPException:
    if not_found:
        status = 404
    elif error.type == ErrorType.VALIDATION:
        status = 400
    else:
        status = 500
    return HTTPException(status_code=status, detail=error.to_dict())


def _conversation(coordinator: ConversationCoordinator) -> Dict[str, Any]:
    return coordinator.snapshot().model_dump(mode="json")


def current_relay_session(coordinator: ConversationCoordinator) -> Optional[RelayAgentSession]:
    """The relay session the client is feeding, if one is open"""
    factory = coordinator.session_factory
    if isinstance(factory, RelayAgentSessionFactory):
        session = factory.current
        if session is not None and session.active:
            return session
    return None


# =============================================================================
# Request models
# =============================================================================

class EndConversationRequest(BaseModel):
    """Final transcript held by the client, or nothing for a manual end"""
    transcript: Optional[str] = Field(default=None, max_length=TRANSCRIPT_MAX_LENGTH)


class SaveStoryRequest(BaseModel):
    title: Optional[str] = Field(default=None, max_length=TITLE_MAX_LENGTH)


class AudioRequest(BaseModel):
    text: Optional[str] = None


# =============================================================================
# Conversation
# =============================================================================

@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "StoryWriter",
        "coordinator_initialized": _coordinator is not None
    }


@router.get("/conversation")
async def get_conversation():
    """Current phase, transcript, story, progress and errors"""
    return _conversation(_require_coordinator())


@router.post("/conversation/start")
async def start_conversation():
    """
    Open a conversation with the agent.

    Ignored (started=false) while a conversation or generation is in progress.
    """
    coordinator = _require_coordinator()
    started = await coordinator.start_conversation()
    return {"started": started, "conversation": _conversation(coordinator)}


@router.post("/conversation/messages")
async def relay_agent_message(message: AgentMessage):
    """Relay one agent event (utterance or tool call) from the client"""
    coordinator = _require_coordinator()
    session = current_relay_session(coordinator)
    if session is None:
        raise HTTPException(status_code=409, detail="No active agent session")

    accepted = coordinator.handle_agent_message(message)
    return {"accepted": accepted, "conversation": _conversation(coordinator)}


@router.post("/conversation/disconnect")
async def relay_disconnect():
    """The client's agent connection closed"""
    coordinator = _require_coordinator()
    session = current_relay_session(coordinator)
    if session is None:
        raise HTTPException(status_code=409, detail="No active agent session")

    session.relay_disconnect()
    return {"conversation": _conversation(coordinator)}


@router.post("/conversation/end")
async def end_conversation(request: EndConversationRequest):
    """
    End the conversation.

    With a transcript, that transcript goes straight to generation. Without
    one, the captured turns are flushed (at least two user turns required).
    """
    coordinator = _require_coordinator()
    if request.transcript is not None:
        ended = coordinator.end_conversation(request.transcript)
    else:
        ended = coordinator.end_conversation_manually()
    return {"ended": ended, "conversation": _conversation(coordinator)}


@router.post("/conversation/retry")
async def retry_story_generation():
    coordinator = _require_coordinator()
    retrying = coordinator.retry_story_generation()
    return {"retrying": retrying, "conversation": _conversation(coordinator)}


@router.post("/conversation/reset")
async def reset_conversation():
    coordinator = _require_coordinator()
    coordinator.reset_conversation()
    return {"conversation": _conversation(coordinator)}


@router.post("/conversation/audio")
async def generate_story_audio(request: AudioRequest):
    """Narrate the current story (or the given text); audio is base64 MP3"""
    coordinator = _require_coordinator()
    audio = await coordinator.generate_story_audio(request.text)
    return {
        "audio": base64.b64encode(audio).decode("ascii") if audio else None,
        "conversation": _conversation(coordinator)
    }


# =============================================================================
# Saved stories
# =============================================================================

@router.get("/stories")
async def list_saved_stories():
    coordinator = _require_coordinator()
    try:
        stories = await coordinator.load_saved_stories()
    except AppError as e:
        raise _http_error(e)
    return {"stories": [story.model_dump(mode="json") for story in stories]}


@router.post("/stories")
async def save_story(request: SaveStoryRequest):
    coordinator = _require_coordinator()
    try:
        saved = await coordinator.save_story(request.title)
    except AppError as e:
        raise _http_error(e)
    return {"story": saved.model_dump(mode="json")}


@router.post("/stories/{story_id}/load")
async def load_story(story_id: str):
    coordinator = _require_coordinator()
    try:
        story = coordinator.load_story(story_id)
    except AppError as e:
        raise _http_error(e, not_found=e.type == ErrorType.VALIDATION)
    if story is None:
        raise HTTPException(status_code=409, detail=f"Cannot load a story in phase {coordinator.phase.value}")
    return {"conversation": _conversation(coordinator)}


@router.get("/stories/models")
async def list_story_models():
    """Models the story backend offers"""
    coordinator = _require_coordinator()
    backend = coordinator.story_service.backend
    if not hasattr(backend, "get_available_models"):
        return {"models": []}
    return {"models": await backend.get_available_models()}
