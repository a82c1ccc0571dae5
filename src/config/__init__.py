"""Configuration package for StoryWriter"""

from .settings import Settings, get_settings
from .limits import (
    END_SIGNAL_TOOL_NAMES,
    TRANSCRIPT_PREVIEW_LENGTH,
    GENERATION_PREVIEW_LENGTH,
    TRANSCRIPT_MAX_LENGTH,
    MESSAGE_MAX_LENGTH,
    TITLE_MAX_LENGTH,
    DEFAULT_STORY_MODELS,
    NARRATION_MAX_CHARS,
)

__all__ = [
    "Settings",
    "get_settings",
    "END_SIGNAL_TOOL_NAMES",
    "TRANSCRIPT_PREVIEW_LENGTH",
    "GENERATION_PREVIEW_LENGTH",
    "TRANSCRIPT_MAX_LENGTH",
    "MESSAGE_MAX_LENGTH",
    "TITLE_MAX_LENGTH",
    "DEFAULT_STORY_MODELS",
    "NARRATION_MAX_CHARS",
]
