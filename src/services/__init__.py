"""Services package for StoryWriter"""

from .errors import (
    AppError,
    ErrorHandler,
    ErrorRegistry,
    ChildFriendlyErrors,
    STAGE_STORY_GENERATION,
    STAGE_CONVERSATION,
    STAGE_AUDIO_GENERATION,
    STAGE_STORAGE_SAVE,
    STAGE_STORAGE_LOAD,
    STAGE_STORY_LOAD,
)
from .events import EventEmitter, ConversationEvent, conversation_events
from .logger import StoryWriterLogger, get_logger, init_logger, reset_logger
from .transcript import (
    Transcript,
    normalize_text,
    generate_transcript,
    extract_user_content,
    extract_agent_content,
    count_user_turns,
)
from .story_generation import (
    StoryBackend,
    StoryBackendError,
    HttpStoryBackend,
    StoryGenerationService,
    validate_story_response,
)
from .story_library import (
    KeyValueStore,
    InMemoryKeyValueStore,
    FileKeyValueStore,
    StoryLibrary,
)
from .voice import SpeechSynthesizer, VoiceService, VoiceServiceError

__all__ = [
    # Errors
    "AppError",
    "ErrorHandler",
    "ErrorRegistry",
    "ChildFriendlyErrors",
    "STAGE_STORY_GENERATION",
    "STAGE_CONVERSATION",
    "STAGE_AUDIO_GENERATION",
    "STAGE_STORAGE_SAVE",
    "STAGE_STORAGE_LOAD",
    "STAGE_STORY_LOAD",
    # Events
    "EventEmitter",
    "ConversationEvent",
    "conversation_events",
    # Logging
    "StoryWriterLogger",
    "get_logger",
    "init_logger",
    "reset_logger",
    # Transcript
    "Transcript",
    "normalize_text",
    "generate_transcript",
    "extract_user_content",
    "extract_agent_content",
    "count_user_turns",
    # Story generation
    "StoryBackend",
    "StoryBackendError",
    "HttpStoryBackend",
    "StoryGenerationService",
    "validate_story_response",
    # Saved stories
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "FileKeyValueStore",
    "StoryLibrary",
    # Narration
    "SpeechSynthesizer",
    "VoiceService",
    "VoiceServiceError",
]
