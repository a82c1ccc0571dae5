"""
Centralized Validation Limits

Fixed limits and names shared by the capture pipeline, models and API.
"""

# =============================================================================
# CONVERSATION LIMITS
# =============================================================================

# Tool names the agent invokes to signal that the conversation is complete
END_SIGNAL_TOOL_NAMES = frozenset({"end_conversation", "end_call"})

# Preview lengths used in log lines
TRANSCRIPT_PREVIEW_LENGTH = 100
GENERATION_PREVIEW_LENGTH = 200

# =============================================================================
# CONTENT LIMITS
# =============================================================================

# Transcript text accepted by the API
TRANSCRIPT_MAX_LENGTH = 20000

# Agent message content accepted by the API
MESSAGE_MAX_LENGTH = 5000

# Title fields
TITLE_MAX_LENGTH = 100

# Backend models offered when the backend cannot list its own
DEFAULT_STORY_MODELS = ["openai/gpt-oss-20b"]

# ElevenLabs rejects longer single requests
NARRATION_MAX_CHARS = 5000
