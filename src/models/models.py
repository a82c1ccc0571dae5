"""
Pydantic data models for StoryWriter

Dialogue turns captured from the agent session, the generated story and its
pages, and the read model handed to the presentation layer.

| Model                 | Immutable | Notes                                      |
|-----------------------|-----------|--------------------------------------------|
| DialogueTurn          | yes       | Arrival order is authoritative             |
| StoryPage             | no        | page_number is 1-based                     |
| Story                 | no        | pages must be contiguous 1..n              |
| StoryGenerationResult | no        | story is always present                    |
| GenerationOptions     | yes       | One backend budget (primary or fallback)   |
| AgentMessage          | no        | Raw agent event, text or tool invocation   |
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator, field_serializer, model_validator
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import random
import string
import time

from src.config.limits import END_SIGNAL_TOOL_NAMES


def generate_story_id() -> str:
    """Placeholder story id: story_<epoch ms>_<9 random chars>"""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"story_{int(time.time() * 1000)}_{suffix}"


# ============================================================================
# Enums
# ============================================================================

class DialogueRole(str, Enum):
    USER = "user"
    AGENT = "agent"


class ConversationPhase(str, Enum):
    """Lifecycle of a single conversation attempt."""
    IDLE = "IDLE"              # No active conversation
    ACTIVE = "ACTIVE"          # Agent conversation in progress
    ENDED = "ENDED"            # Staged design: capture finished
    PROCESSING = "PROCESSING"  # Staged design: transcript being prepared
    GENERATING = "GENERATING"  # Story being generated from the final transcript
    COMPLETE = "COMPLETE"      # Story ready


class ErrorType(str, Enum):
    VALIDATION = "validation"
    CONVERSATION = "conversation"
    STORY_GENERATION = "story_generation"
    AUDIO = "audio"
    STORAGE = "storage"
    SYSTEM = "system"


class ErrorSeverity(str, Enum):
    LOW = "low"            # Non-blocking, app continues to work
    MEDIUM = "medium"      # Feature-blocking, retry is offered
    CRITICAL = "critical"  # Not recoverable from the presentation layer


# ============================================================================
# Dialogue Models
# ============================================================================

class DialogueTurn(BaseModel):
    """One attributed utterance captured from the agent session."""
    model_config = ConfigDict(frozen=True)

    role: DialogueRole
    content: str = Field(..., min_length=1)
    timestamp: int = Field(..., ge=0, description="Monotonic milliseconds at arrival")

    @field_validator('content')
    @classmethod
    def content_not_blank(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("content must not be blank")
        return v


class ClientToolCall(BaseModel):
    """Tool invocation issued by the remote agent."""
    tool_name: str
    tool_call_id: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


class AgentMessage(BaseModel):
    """
    Raw event from the agent session.

    Either an utterance (``source`` + ``message``) or a tool invocation
    (``type == "client_tool_call"``). The agent side labels itself "ai".
    """
    type: Optional[str] = None
    source: Optional[str] = None
    message: Optional[str] = None
    client_tool_call: Optional[ClientToolCall] = None

    @property
    def role(self) -> Optional[DialogueRole]:
        if not self.source:
            return None
        return DialogueRole.USER if self.source == "user" else DialogueRole.AGENT

    @property
    def has_content(self) -> bool:
        return bool(self.source and self.message and self.message.strip())

    @property
    def is_end_signal(self) -> bool:
        return (
            self.type == "client_tool_call"
            and self.client_tool_call is not None
            and self.client_tool_call.tool_name in END_SIGNAL_TOOL_NAMES
        )


# ============================================================================
# Story Models
# ============================================================================

class GenerationOptions(BaseModel):
    """Budget for one backend call."""
    model_config = ConfigDict(frozen=True)

    max_tokens: int = Field(default=1000, ge=1)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_retries: int = Field(default=3, ge=1)


class StoryPage(BaseModel):
    """A single page of the illustrated story"""
    page_number: int = Field(..., ge=1)
    content: str = Field(..., min_length=1)
    illustration_prompt: Optional[str] = None
    image_url: Optional[str] = None


class Story(BaseModel):
    """
    Generated story.

    A story with zero pages is the placeholder shape used for failed
    generations; it is never shown as a finished story.
    """
    id: str = Field(default_factory=generate_story_id)
    title: str
    pages: List[StoryPage] = Field(default_factory=list)
    transcript: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode='after')
    def pages_are_contiguous(self):
        for index, page in enumerate(self.pages, start=1):
            if page.page_number != index:
                raise ValueError(
                    f"page_number {page.page_number} at position {index} - pages must be numbered 1..n"
                )
        return self

    @field_serializer('created_at')
    def serialize_created_at(self, v: datetime, _info):
        return v.isoformat()

    @property
    def has_content(self) -> bool:
        """At least one page with non-blank content."""
        return any(page.content and page.content.strip() for page in self.pages)

    @property
    def full_text(self) -> str:
        return "\n\n".join(page.content for page in self.pages)

    @classmethod
    def placeholder(cls, title: str, transcript: Optional[str] = None) -> "Story":
        """Empty story returned alongside a failure so callers never null-check."""
        return cls(title=title, pages=[], transcript=transcript)


class StoryGenerationResult(BaseModel):
    story: Story
    success: bool
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None


class SavedStory(BaseModel):
    """Entry in the persisted story list"""
    id: str
    title: str = Field(..., min_length=1)
    pages: List[StoryPage] = Field(default_factory=list)
    elements: Dict[str, str] = Field(default_factory=dict)
    created_at: int = Field(..., description="Epoch milliseconds")

    def to_story(self) -> Story:
        return Story(
            id=self.id,
            title=self.title,
            pages=self.pages,
            created_at=datetime.fromtimestamp(self.created_at / 1000, tz=timezone.utc),
        )


# ============================================================================
# Presentation Read Model
# ============================================================================

class ConversationSnapshot(BaseModel):
    """Everything the presentation layer reads, in one object"""
    conversation_id: str
    phase: ConversationPhase
    transcript: Optional[str] = None
    story: Optional[Story] = None
    progress: Optional[str] = None
    is_generating: bool = False
    errors: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
