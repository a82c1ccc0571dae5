"""
Story Generation Service

Turns a conversation transcript into a StoryGenerationResult while hiding
backend instability from the caller.

Pipeline:
1. Validation - empty/whitespace transcript fails immediately, no network call
2. Primary attempt - up to primary_max_retries tries (temperature 0.7, 1000 tokens),
   exponential backoff after each failed try (1s, 2s, 4s)
3. Fallback attempt - one more call with a reduced budget (temperature 0.5, 800 tokens)
4. Post-validation - a 200-shaped response with no pages or only blank pages
   counts as a failure for retry purposes

Usage:
    from src.services.story_generation import HttpStoryBackend, StoryGenerationService

    service = StoryGenerationService(HttpStoryBackend("http://localhost"))
    result = await service.generate_story_automatically(
        transcript,
        on_progress=lambda message: print(message)
    )
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import aiohttp

from src.config import DEFAULT_STORY_MODELS, GENERATION_PREVIEW_LENGTH, get_settings
from src.models import (
    ErrorType,
    GenerationOptions,
    Story,
    StoryGenerationResult,
    StoryPage,
)
from src.services.logger import get_logger

logger = logging.getLogger(__name__)


PROGRESS_CREATING = "Creating your story..."
PROGRESS_RETRYING = "Trying with different settings..."
PROGRESS_SUCCESS = "Story created successfully!"

EMPTY_TRANSCRIPT_ERROR = "Transcript is required and cannot be empty"


class StoryBackendError(Exception):
    """Raised when the story backend call fails or returns an unusable response"""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class StoryBackend(Protocol):
    """One network round trip per call."""

    async def generate(self, transcript: str, options: GenerationOptions) -> StoryGenerationResult:
        ...


# =========================================================================
# RESPONSE VALIDATION
# =========================================================================

def validate_story_response(data: Any, expected_page_count: int = 0) -> Optional[str]:
    """
    Check the backend's JSON body.

    Returns:
        None when valid, otherwise a description of the first problem found
    """
    if not isinstance(data, dict):
        return "data is not an object"

    story = data.get("story")
    if not isinstance(story, dict):
        return "missing story object"

    if not story.get("title") or not isinstance(story["title"], str):
        return "missing or invalid title"

    pages = story.get("pages")
    if not isinstance(pages, list):
        return "pages is not an array"

    if not pages:
        return "story has no pages"

    if expected_page_count and len(pages) != expected_page_count:
        return f"expected {expected_page_count} pages, got {len(pages)}"

    for index, page in enumerate(pages):
        if not isinstance(page, dict):
            return f"invalid page structure at index {index}"
        number = page.get("page_number")
        if not isinstance(number, int) or isinstance(number, bool) or number != index + 1:
            return f"invalid page_number at index {index}"
        if not isinstance(page.get("content"), str) or not page["content"].strip():
            return f"missing or invalid content at page {index + 1}"
        if not isinstance(page.get("illustration_prompt"), str) or not page["illustration_prompt"]:
            return f"missing or invalid illustration_prompt at page {index + 1}"

    return None


def story_from_response(backend_story: Dict[str, Any], transcript: str) -> Story:
    """Map the backend's snake_case story onto the Story model."""
    created_raw = backend_story.get("created_at")
    try:
        created_at = datetime.fromisoformat(created_raw) if created_raw else datetime.now(timezone.utc)
    except (TypeError, ValueError):
        created_at = datetime.now(timezone.utc)

    pages = [
        StoryPage(
            page_number=page["page_number"],
            content=page["content"],
            illustration_prompt=page.get("illustration_prompt"),
            image_url=page.get("image_url"),
        )
        for page in backend_story["pages"]
    ]

    story_id = backend_story.get("id")
    fields = {
        "title": backend_story["title"],
        "pages": pages,
        "transcript": transcript,
        "created_at": created_at,
    }
    if story_id is not None:
        fields["id"] = f"story_{story_id}"
    return Story(**fields)


def user_facing_error(message: str) -> str:
    """Specialise the most common backend failures for display."""
    lowered = message.lower()
    if "timeout" in lowered or "timed out" in lowered or "aborted" in lowered:
        return "Story generation timed out. Please try again with a shorter conversation."
    if "network" in lowered or "connect" in lowered:
        return "Network error. Please check your connection and try again."
    if "invalid story response" in lowered:
        return "Generated story format is invalid. Please try again."
    return message


# =========================================================================
# HTTP BACKEND
# =========================================================================

class HttpStoryBackend:
    """
    Client for the story generation REST API.

    The backend owns prompting and model calls; this client sends the
    transcript with a budget and validates what comes back.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 60.0,
        expected_page_count: int = 5,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.expected_page_count = expected_page_count
        self._session = session

    async def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        url = f"{self.base_url}{endpoint}"
        headers = {"Content-Type": "application/json", "Accept": "application/json"}

        owns_session = self._session is None
        session = self._session or aiohttp.ClientSession(timeout=self.timeout)
        try:
            async with session.request(method, url, headers=headers, timeout=self.timeout, **kwargs) as response:
                if response.status >= 400:
                    raise StoryBackendError(
                        f"HTTP {response.status}: {response.reason}", status=response.status
                    )
                return await response.json()
        except asyncio.TimeoutError as e:
            raise StoryBackendError(f"Request to {endpoint} timed out") from e
        except aiohttp.ClientError as e:
            raise StoryBackendError(f"Network request failed: {e}") from e
        finally:
            if owns_session:
                await session.close()

    async def generate(self, transcript: str, options: GenerationOptions) -> StoryGenerationResult:
        payload = {
            "transcript": transcript,
            "options": {
                "max_tokens": options.max_tokens,
                "temperature": options.temperature,
                "max_retries": options.max_retries,
            },
        }
        data = await self._request("POST", "/api/stories/generate", json=payload)

        problem = validate_story_response(data, self.expected_page_count)
        if problem:
            logger.error(f"❌ Invalid story response: {problem}")
            raise StoryBackendError(f"Invalid story response structure from backend: {problem}")

        story = story_from_response(data["story"], transcript)
        return StoryGenerationResult(story=story, success=True)

    async def test_connection(self) -> bool:
        try:
            await self._request("GET", "/api/health")
            return True
        except StoryBackendError as e:
            logger.warning(f"⚠️ Story backend health check failed: {e}")
            return False

    async def get_available_models(self) -> List[str]:
        try:
            data = await self._request("GET", "/api/stories/models")
        except StoryBackendError as e:
            logger.warning(f"⚠️ Could not list story models, using defaults: {e}")
            return list(DEFAULT_STORY_MODELS)
        models = data.get("models") if isinstance(data, dict) else None
        return list(models) if models else list(DEFAULT_STORY_MODELS)

    async def close(self):
        if self._session is not None:
            await self._session.close()


# =========================================================================
# ORCHESTRATOR
# =========================================================================

class StoryGenerationService:
    """
    Primary attempt with bounded retries, then a single reduced-budget fallback.

    Every failure inside an attempt (raised error, success=False, degenerate
    story) is retried; only the final outcome reaches the caller.
    """

    def __init__(
        self,
        backend: StoryBackend,
        settings=None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        app_logger=None,
    ):
        settings = settings or get_settings()
        self.backend = backend
        self.app_logger = app_logger or get_logger()
        self._sleep = sleep

        self.primary_attempts = settings.primary_max_retries
        self.primary_options = GenerationOptions(
            max_tokens=settings.primary_max_tokens,
            temperature=settings.primary_temperature,
            max_retries=settings.primary_max_retries,
        )
        self.fallback_options = GenerationOptions(
            max_tokens=settings.fallback_max_tokens,
            temperature=settings.fallback_temperature,
            max_retries=settings.fallback_max_retries,
        )
        self.base_delay = settings.retry_base_delay_seconds

    def backoff_delay(self, failed_try: int) -> float:
        """Delay after failed try k: base * 2**(k-1)"""
        return self.base_delay * (2 ** (failed_try - 1))

    @staticmethod
    def _failure(transcript: str, error: str, error_type: ErrorType) -> StoryGenerationResult:
        title = "Empty Story" if error_type == ErrorType.VALIDATION else "Generation Failed"
        return StoryGenerationResult(
            story=Story.placeholder(title, transcript or None),
            success=False,
            error=error,
            error_type=error_type,
        )

    @staticmethod
    def _problem_with(result: Optional[StoryGenerationResult]) -> Optional[str]:
        if result is None:
            return "Story generation service returned nothing"
        if not result.success:
            return result.error or "Story generation service failed"
        if not result.story.pages:
            return "Generated story has no pages"
        if not result.story.has_content:
            return "Generated story pages contain no valid content"
        return None

    async def _run_attempt(
        self,
        transcript: str,
        options: GenerationOptions,
        attempts: int,
        stage: str,
        backoff: bool,
    ) -> StoryGenerationResult:
        last_error = "Story generation failed. Please try again."

        for attempt in range(1, attempts + 1):
            started = time.monotonic()
            try:
                result = await self.backend.generate(transcript, options)
                problem = self._problem_with(result)
            except Exception as e:
                problem = str(e) or e.__class__.__name__

            latency = time.monotonic() - started
            if problem is None:
                self.app_logger.generation_call(stage, attempt, options.model_dump(), latency)
                if result.story.transcript is None:
                    result.story.transcript = transcript
                return result

            last_error = problem
            self.app_logger.generation_call(
                stage, attempt, options.model_dump(), latency, status="failed", error=problem
            )
            logger.warning(f"⚠️ Story generation {stage} try {attempt}/{attempts} failed: {problem}")

            if backoff:
                delay = self.backoff_delay(attempt)
                logger.info(f"⏳ Backing off for {delay:.1f}s")
                await self._sleep(delay)

        return self._failure(transcript, user_facing_error(last_error), ErrorType.STORY_GENERATION)

    async def generate_story_from_transcript(
        self,
        transcript: str,
        options: Optional[GenerationOptions] = None,
        attempts: Optional[int] = None,
    ) -> StoryGenerationResult:
        """Single budget, bounded retries, no fallback."""
        if not transcript or not transcript.strip():
            return self._failure(transcript, EMPTY_TRANSCRIPT_ERROR, ErrorType.VALIDATION)
        return await self._run_attempt(
            transcript.strip(),
            options or self.primary_options,
            attempts or self.primary_attempts,
            stage="primary",
            backoff=True,
        )

    async def generate_story_automatically(
        self,
        transcript: str,
        on_progress: Optional[Callable[[str], Any]] = None,
    ) -> StoryGenerationResult:
        """
        Full pipeline: validation, primary attempt, fallback attempt.

        Args:
            transcript: Normalized conversation transcript
            on_progress: Optional callback receiving human-readable status strings

        Returns:
            StoryGenerationResult; ``story`` is a placeholder when ``success`` is False
        """
        if not transcript or not transcript.strip():
            logger.warning("Story generation requested with an empty transcript")
            return self._failure(transcript, EMPTY_TRANSCRIPT_ERROR, ErrorType.VALIDATION)

        transcript = transcript.strip()
        logger.info(
            f"✨ Generating story from transcript ({len(transcript)} chars): "
            f"{transcript[:GENERATION_PREVIEW_LENGTH]}"
        )

        self._report(on_progress, PROGRESS_CREATING)
        result = await self._run_attempt(
            transcript, self.primary_options, self.primary_attempts, stage="primary", backoff=True
        )
        if result.success:
            self._report(on_progress, PROGRESS_SUCCESS)
            return result

        self._report(on_progress, PROGRESS_RETRYING)
        result = await self._run_attempt(
            transcript, self.fallback_options, 1, stage="fallback", backoff=False
        )
        if result.success:
            self._report(on_progress, PROGRESS_SUCCESS)
        else:
            logger.error(f"❌ Story generation exhausted all attempts: {result.error}")
        return result

    @staticmethod
    def _report(on_progress: Optional[Callable[[str], Any]], message: str):
        if on_progress is not None:
            on_progress(message)
