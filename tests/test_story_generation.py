"""
Tests for the story generation orchestrator and the HTTP backend client.

The backend is scripted and the backoff sleep is recorded, so no test
waits on real delays or touches the network.

Run with: python -m pytest tests/test_story_generation.py -v
"""

import asyncio
import sys
from pathlib import Path

import aiohttp
import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import ScriptedBackend, SleepRecorder, fast_settings, success_result
from src.config import DEFAULT_STORY_MODELS
from src.models import ErrorType, GenerationOptions, Story, StoryGenerationResult, StoryPage
from src.services.logger import StoryWriterLogger
from src.services.story_generation import (
    EMPTY_TRANSCRIPT_ERROR,
    HttpStoryBackend,
    PROGRESS_CREATING,
    PROGRESS_RETRYING,
    PROGRESS_SUCCESS,
    StoryBackendError,
    StoryGenerationService,
    story_from_response,
    user_facing_error,
    validate_story_response,
)

TRANSCRIPT = "User: A dragon\n\nAgent: What is its name?\n\nUser: Sparky"


def build_service(backend, **overrides):
    settings = fast_settings(retry_base_delay_seconds=1.0, **overrides)
    sleep = SleepRecorder()
    service = StoryGenerationService(
        backend,
        settings=settings,
        sleep=sleep,
        app_logger=StoryWriterLogger(settings=settings),
    )
    return service, sleep


def failed_result(error: str = "model overloaded") -> StoryGenerationResult:
    return StoryGenerationResult(story=Story.placeholder("x"), success=False, error=error)


def blank_pages_result() -> StoryGenerationResult:
    story = Story(
        title="Blank",
        pages=[StoryPage(page_number=1, content="   "), StoryPage(page_number=2, content="\n")],
    )
    return StoryGenerationResult(story=story, success=True)


def backend_story(page_count: int = 5, **story_fields) -> dict:
    story = {
        "id": 42,
        "title": "Sparky Saves the Day",
        "pages": [
            {
                "page_number": n,
                "content": f"Sparky does thing {n}.",
                "illustration_prompt": f"A green dragon, scene {n}",
            }
            for n in range(1, page_count + 1)
        ],
        "created_at": "2024-05-01T10:00:00+00:00",
    }
    story.update(story_fields)
    return {"story": story}


class TestRetryLadder:
    """Primary tries with backoff, then one fallback call"""

    @pytest.mark.asyncio
    async def test_first_try_success(self):
        backend = ScriptedBackend([success_result()])
        service, sleep = build_service(backend)
        progress = []

        result = await service.generate_story_automatically(TRANSCRIPT, on_progress=progress.append)

        assert result.success
        assert len(backend.calls) == 1
        assert sleep.delays == []
        assert progress == [PROGRESS_CREATING, PROGRESS_SUCCESS]

    @pytest.mark.asyncio
    async def test_backoff_doubles_between_primary_tries(self):
        backend = ScriptedBackend([
            StoryBackendError("HTTP 503: Service Unavailable", status=503),
            StoryBackendError("HTTP 503: Service Unavailable", status=503),
            success_result(),
        ])
        service, sleep = build_service(backend)

        result = await service.generate_story_automatically(TRANSCRIPT)

        assert result.success
        assert len(backend.calls) == 3
        assert sleep.delays == [1.0, 2.0]
        assert all(options == service.primary_options for _, options in backend.calls)

    @pytest.mark.asyncio
    async def test_always_failing_backend_makes_four_calls(self):
        backend = ScriptedBackend([ConnectionError("connection refused")])
        service, sleep = build_service(backend)
        progress = []

        result = await service.generate_story_automatically(TRANSCRIPT, on_progress=progress.append)

        assert not result.success
        assert result.error_type == ErrorType.STORY_GENERATION
        assert result.story.pages == []
        assert len(backend.calls) == 4
        assert sleep.delays == [1.0, 2.0, 4.0]
        assert progress == [PROGRESS_CREATING, PROGRESS_RETRYING]

    @pytest.mark.asyncio
    async def test_fallback_uses_reduced_budget(self):
        backend = ScriptedBackend([failed_result(), failed_result(), failed_result(), success_result()])
        service, _ = build_service(backend)
        progress = []

        result = await service.generate_story_automatically(TRANSCRIPT, on_progress=progress.append)

        assert result.success
        primary = backend.calls[0][1]
        fallback = backend.calls[3][1]
        assert (primary.temperature, primary.max_tokens) == (0.7, 1000)
        assert fallback == GenerationOptions(temperature=0.5, max_tokens=800, max_retries=2)
        assert progress == [PROGRESS_CREATING, PROGRESS_RETRYING, PROGRESS_SUCCESS]

    @pytest.mark.asyncio
    async def test_zero_pages_is_retried(self):
        empty = StoryGenerationResult(story=Story(title="Nothing", pages=[]), success=True)
        backend = ScriptedBackend([empty, success_result()])
        service, sleep = build_service(backend)

        result = await service.generate_story_automatically(TRANSCRIPT)

        assert result.success
        assert len(backend.calls) == 2
        assert sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_blank_pages_are_retried(self):
        backend = ScriptedBackend([blank_pages_result()])
        service, _ = build_service(backend)

        result = await service.generate_story_automatically(TRANSCRIPT)

        assert not result.success
        assert result.error == "Generated story pages contain no valid content"
        assert len(backend.calls) == 4

    @pytest.mark.asyncio
    async def test_timeout_error_wording(self):
        backend = ScriptedBackend([StoryBackendError("Request to /api/stories/generate timed out")])
        service, _ = build_service(backend)

        result = await service.generate_story_automatically(TRANSCRIPT)

        assert result.error.startswith("Story generation timed out")

    @pytest.mark.asyncio
    async def test_transcript_attached_to_story(self):
        backend = ScriptedBackend([success_result()])
        service, _ = build_service(backend)

        result = await service.generate_story_automatically(f"  {TRANSCRIPT}  ")

        assert backend.calls[0][0] == TRANSCRIPT
        assert result.story.transcript == TRANSCRIPT


class TestEmptyTranscript:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("transcript", ["", "   ", "\n\t"])
    async def test_fails_without_calling_backend(self, transcript):
        backend = ScriptedBackend([success_result()])
        service, sleep = build_service(backend)
        progress = []

        result = await service.generate_story_automatically(transcript, on_progress=progress.append)

        assert not result.success
        assert result.error == EMPTY_TRANSCRIPT_ERROR
        assert result.error_type == ErrorType.VALIDATION
        assert result.story.title == "Empty Story"
        assert backend.calls == []
        assert progress == []

    @pytest.mark.asyncio
    async def test_single_budget_variant_validates_too(self):
        backend = ScriptedBackend([success_result()])
        service, _ = build_service(backend)

        result = await service.generate_story_from_transcript(" ")

        assert result.error_type == ErrorType.VALIDATION
        assert backend.calls == []


class TestSingleBudget:

    @pytest.mark.asyncio
    async def test_no_fallback(self):
        backend = ScriptedBackend([ConnectionError("network down")])
        service, sleep = build_service(backend)

        result = await service.generate_story_from_transcript(TRANSCRIPT)

        assert not result.success
        assert len(backend.calls) == 3
        assert result.error.startswith("Network error")

    @pytest.mark.asyncio
    async def test_custom_options(self):
        backend = ScriptedBackend([success_result()])
        service, _ = build_service(backend)
        options = GenerationOptions(temperature=0.2, max_tokens=300, max_retries=1)

        await service.generate_story_from_transcript(TRANSCRIPT, options=options, attempts=1)

        assert backend.calls[0][1] == options


class TestBackoffDelay:

    def test_schedule(self):
        service, _ = build_service(ScriptedBackend([success_result()]))
        assert [service.backoff_delay(k) for k in (1, 2, 3)] == [1.0, 2.0, 4.0]


class TestValidateStoryResponse:

    def test_valid(self):
        assert validate_story_response(backend_story(), expected_page_count=5) is None

    def test_page_count_check_can_be_disabled(self):
        assert validate_story_response(backend_story(3), expected_page_count=0) is None

    def test_wrong_page_count(self):
        assert validate_story_response(backend_story(4), 5) == "expected 5 pages, got 4"

    def test_not_an_object(self):
        assert validate_story_response([1, 2]) == "data is not an object"

    def test_missing_story(self):
        assert validate_story_response({"title": "x"}) == "missing story object"

    def test_missing_title(self):
        assert validate_story_response(backend_story(title="")) == "missing or invalid title"

    def test_no_pages(self):
        assert validate_story_response(backend_story(0)) == "story has no pages"

    def test_pages_not_a_list(self):
        assert validate_story_response(backend_story(pages="five")) == "pages is not an array"

    def test_non_contiguous_numbers(self):
        data = backend_story(2)
        data["story"]["pages"][1]["page_number"] = 3
        assert validate_story_response(data) == "invalid page_number at index 1"

    def test_blank_content(self):
        data = backend_story(2)
        data["story"]["pages"][0]["content"] = "  "
        assert validate_story_response(data) == "missing or invalid content at page 1"

    def test_missing_illustration_prompt(self):
        data = backend_story(2)
        del data["story"]["pages"][1]["illustration_prompt"]
        assert validate_story_response(data) == "missing or invalid illustration_prompt at page 2"


class TestStoryFromResponse:

    def test_maps_fields(self):
        story = story_from_response(backend_story()["story"], TRANSCRIPT)

        assert story.id == "story_42"
        assert story.title == "Sparky Saves the Day"
        assert len(story.pages) == 5
        assert story.pages[0].illustration_prompt == "A green dragon, scene 1"
        assert story.transcript == TRANSCRIPT
        assert story.created_at.year == 2024

    def test_generates_id_and_date_when_missing(self):
        raw = backend_story(id=None, created_at="not a date")["story"]

        story = story_from_response(raw, TRANSCRIPT)

        assert story.id.startswith("story_")
        assert story.created_at is not None


class TestUserFacingError:

    @pytest.mark.parametrize("message,prefix", [
        ("Request aborted", "Story generation timed out"),
        ("Network request failed: reset", "Network error"),
        ("Cannot connect to host", "Network error"),
        ("Invalid story response structure from backend: x", "Generated story format is invalid"),
        ("HTTP 500: Internal Server Error", "HTTP 500"),
    ])
    def test_wording(self, message, prefix):
        assert user_facing_error(message).startswith(prefix)


# =============================================================================
# HTTP backend against a fake aiohttp session
# =============================================================================

class FakeResponse:
    def __init__(self, status=200, body=None, reason="OK"):
        self.status = status
        self.reason = reason
        self._body = body

    async def json(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeClientSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []
        self.closed = False

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        outcome = self.responses.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def close(self):
        self.closed = True


class TestHttpStoryBackend:

    @pytest.mark.asyncio
    async def test_generate_posts_transcript_and_options(self):
        session = FakeClientSession([FakeResponse(body=backend_story())])
        backend = HttpStoryBackend("http://stories.local/", session=session)
        options = GenerationOptions(max_tokens=800, temperature=0.5, max_retries=2)

        result = await backend.generate(TRANSCRIPT, options)

        method, url, kwargs = session.requests[0]
        assert method == "POST"
        assert url == "http://stories.local/api/stories/generate"
        assert kwargs["json"] == {
            "transcript": TRANSCRIPT,
            "options": {"max_tokens": 800, "temperature": 0.5, "max_retries": 2},
        }
        assert result.success
        assert result.story.id == "story_42"

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        session = FakeClientSession([FakeResponse(status=502, reason="Bad Gateway")])
        backend = HttpStoryBackend("http://stories.local", session=session)

        with pytest.raises(StoryBackendError) as exc:
            await backend.generate(TRANSCRIPT, GenerationOptions())

        assert exc.value.status == 502
        assert "HTTP 502" in str(exc.value)

    @pytest.mark.asyncio
    async def test_invalid_structure(self):
        session = FakeClientSession([FakeResponse(body=backend_story(3))])
        backend = HttpStoryBackend("http://stories.local", expected_page_count=5, session=session)

        with pytest.raises(StoryBackendError, match="Invalid story response structure"):
            await backend.generate(TRANSCRIPT, GenerationOptions())

    @pytest.mark.asyncio
    async def test_timeout(self):
        session = FakeClientSession([asyncio.TimeoutError()])
        backend = HttpStoryBackend("http://stories.local", session=session)

        with pytest.raises(StoryBackendError, match="timed out"):
            await backend.generate(TRANSCRIPT, GenerationOptions())

    @pytest.mark.asyncio
    async def test_client_error(self):
        session = FakeClientSession([aiohttp.ClientConnectionError("refused")])
        backend = HttpStoryBackend("http://stories.local", session=session)

        with pytest.raises(StoryBackendError, match="Network request failed"):
            await backend.generate(TRANSCRIPT, GenerationOptions())

    @pytest.mark.asyncio
    async def test_connection_check(self):
        session = FakeClientSession([FakeResponse(body={"status": "ok"}), FakeResponse(status=500)])
        backend = HttpStoryBackend("http://stories.local", session=session)

        assert await backend.test_connection() is True
        assert await backend.test_connection() is False
        assert session.requests[0][1] == "http://stories.local/api/health"

    @pytest.mark.asyncio
    async def test_models(self):
        session = FakeClientSession([
            FakeResponse(body={"models": ["story-large"]}),
            FakeResponse(status=404),
        ])
        backend = HttpStoryBackend("http://stories.local", session=session)

        assert await backend.get_available_models() == ["story-large"]
        assert await backend.get_available_models() == list(DEFAULT_STORY_MODELS)

    @pytest.mark.asyncio
    async def test_close_closes_injected_session(self):
        session = FakeClientSession([])
        backend = HttpStoryBackend("http://stories.local", session=session)

        await backend.close()

        assert session.closed

    @pytest.mark.asyncio
    async def test_orchestrator_over_http_backend(self):
        session = FakeClientSession([
            FakeResponse(status=503, reason="Service Unavailable"),
            FakeResponse(body=backend_story()),
        ])
        service, sleep = build_service(HttpStoryBackend("http://stories.local", session=session))

        result = await service.generate_story_automatically(TRANSCRIPT)

        assert result.success
        assert result.story.title == "Sparky Saves the Day"
        assert sleep.delays == [1.0]
