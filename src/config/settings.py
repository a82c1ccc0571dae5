"""
Configuration management for StoryWriter

Loads environment variables and provides application settings.
"""

from pydantic_settings import BaseSettings
from typing import Optional
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    app_name: str = "StoryWriter"
    port: int = 3000
    log_level: str = "INFO"

    # CORS Configuration
    # Comma-separated list, "*" allows all origins
    cors_allowed_origins: str = "*"

    # =========================================================================
    # Conversation Agent (remote voice agent session)
    # =========================================================================
    agent_id: Optional[str] = None
    agent_api_key: Optional[str] = None

    # =========================================================================
    # Conversation Capture
    # =========================================================================
    silence_timeout_ms: int = 2000  # Quiet period before the buffer is considered final
    min_user_turns: int = 2         # Fewer user turns than this never produce a story

    # Staged design: ACTIVE -> ENDED -> PROCESSING -> GENERATING
    # Simplified design (default): ACTIVE -> GENERATING
    staged_phases: bool = False

    # =========================================================================
    # Story Generation Backend
    # =========================================================================
    story_api_base_url: str = "http://localhost"
    story_api_timeout_seconds: float = 60.0
    expected_page_count: int = 5  # 0 disables the exact page count check

    # Primary attempt
    primary_max_retries: int = 3
    primary_temperature: float = 0.7
    primary_max_tokens: int = 1000

    # Fallback attempt (reduced budget, single call)
    fallback_max_retries: int = 2
    fallback_temperature: float = 0.5
    fallback_max_tokens: int = 800

    # Backoff after failed try k is retry_base_delay_seconds * 2**(k-1): 1s, 2s, 4s
    retry_base_delay_seconds: float = 1.0

    # =========================================================================
    # Pacing
    # =========================================================================
    min_display_time_ms: int = 3000       # Floor on how long GENERATING is shown
    generation_start_delay_ms: int = 500  # Let the progress view mount before the first call

    # =========================================================================
    # Narration (ElevenLabs TTS)
    # =========================================================================
    elevenlabs_api_key: Optional[str] = None
    elevenlabs_voice_id: str = "EXAVITQu4vr4xnSDxMaL"  # Bella, good for storytelling
    elevenlabs_model: str = "eleven_multilingual_v2"
    elevenlabs_output_format: str = "mp3_44100_128"

    # =========================================================================
    # Saved Story Storage
    # =========================================================================
    saved_stories_key: str = "savedStories"
    storage_dir: str = "data/storage"

    # Debug Configuration
    debug_mode: bool = False
    debug_generation_calls: bool = False  # JSONL log of every backend call
    debug_log_dir: str = "logs/debug"

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def silence_timeout_seconds(self) -> float:
        return self.silence_timeout_ms / 1000.0

    @property
    def min_display_time_seconds(self) -> float:
        return self.min_display_time_ms / 1000.0

    @property
    def generation_start_delay_seconds(self) -> float:
        return self.generation_start_delay_ms / 1000.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Using lru_cache ensures we only load settings once.
    """
    return Settings()
