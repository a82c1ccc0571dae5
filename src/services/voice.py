"""
Voice Processing Service

Narration audio for finished stories. ElevenLabs is the only provider;
the SDK is synchronous, so calls run in a thread pool.

Unlike most services this one raises on failure: the coordinator records
audio problems as low-severity errors and the story stays readable.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Protocol

from elevenlabs import ElevenLabs, VoiceSettings

from src.config.limits import NARRATION_MAX_CHARS

logger = logging.getLogger(__name__)


class VoiceServiceError(Exception):
    """Narration could not be produced"""


class SpeechSynthesizer(Protocol):
    async def text_to_speech(self, text: str) -> bytes:
        ...


class VoiceService:
    """
    ElevenLabs narration.

    Voice settings lean toward stable, consistent delivery for storytelling.
    """

    VOICE_SETTINGS = VoiceSettings(
        stability=0.7,
        similarity_boost=0.8,
        style=0.2,
        use_speaker_boost=True,
    )

    def __init__(self, settings=None, client: Optional[ElevenLabs] = None):
        if settings is None:
            from src.config import get_settings
            settings = get_settings()

        self.voice_id = settings.elevenlabs_voice_id
        self.model = settings.elevenlabs_model
        self.output_format = settings.elevenlabs_output_format
        self.executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="tts")

        self.client = client
        if self.client is None and settings.elevenlabs_api_key:
            self.client = ElevenLabs(api_key=settings.elevenlabs_api_key)
            logger.info(f"✅ ElevenLabs TTS initialized (model {self.model})")

    @property
    def available(self) -> bool:
        return self.client is not None

    async def text_to_speech(self, text: str) -> bytes:
        """
        Convert story text to MP3 audio.

        Raises:
            VoiceServiceError: empty or oversized text, no client, or provider failure
        """
        if not text or not text.strip():
            raise VoiceServiceError("Text cannot be empty")
        if len(text) > NARRATION_MAX_CHARS:
            raise VoiceServiceError(
                f"Text is too long. Maximum length is {NARRATION_MAX_CHARS} characters."
            )
        if not self.available:
            raise VoiceServiceError("ElevenLabs API key not configured")

        preview = text[:50] + "..." if len(text) > 50 else text
        logger.info(f"🎵 TTS [narration]: '{preview}'")

        loop = asyncio.get_running_loop()
        try:
            audio = await loop.run_in_executor(self.executor, self._do_text_to_speech, text)
        except Exception as e:
            raise VoiceServiceError(f"ElevenLabs request failed: {e}") from e

        if not audio:
            raise VoiceServiceError("ElevenLabs returned no audio")
        logger.info(f"✅ TTS Success: Generated {len(audio)} bytes of audio")
        return audio

    def _do_text_to_speech(self, text: str) -> bytes:
        """Synchronous ElevenLabs call (runs in thread pool)."""
        audio_generator = self.client.text_to_speech.convert(
            voice_id=self.voice_id,
            text=text,
            model_id=self.model,
            output_format=self.output_format,
            voice_settings=self.VOICE_SETTINGS,
        )
        return b"".join(audio_generator)

    def shutdown(self):
        if self.executor:
            self.executor.shutdown(wait=True)
            self.executor = None
