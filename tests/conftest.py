"""
Pytest configuration and fixtures for StoryWriter tests.

This module provides:
- Network blocking fixture so no test reaches the story backend or ElevenLabs
- Scripted fakes for the story backend, agent sessions and speech synthesis
- Settings with scaled-down timings
"""

import asyncio
import socket
import sys
from pathlib import Path
from typing import List
from unittest.mock import patch

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.agents.session import AgentCallbacks, AgentSessionConfig
from src.config.settings import Settings
from src.models import Story, StoryGenerationResult, StoryPage
from src.services.events import EventEmitter
from src.services.logger import StoryWriterLogger


class NetworkBlockedError(Exception):
    """Raised when a test attempts to make a network connection."""
    pass


def _block_socket_connect(*args, **kwargs):
    raise NetworkBlockedError(
        "Network access is blocked in unit tests. Use the scripted fakes instead."
    )


@pytest.fixture(autouse=True)
def block_network():
    """Block outgoing connections for every test."""
    with patch.object(socket.socket, 'connect', _block_socket_connect):
        with patch.object(socket, 'create_connection', _block_socket_connect):
            yield


# =============================================================================
# Builders
# =============================================================================

def make_story(page_count: int = 5, title: str = "The Brave Little Dragon") -> Story:
    return Story(
        title=title,
        pages=[
            StoryPage(
                page_number=number,
                content=f"Page {number} of the story.",
                illustration_prompt=f"Illustration for page {number}",
            )
            for number in range(1, page_count + 1)
        ],
    )


def success_result(page_count: int = 5) -> StoryGenerationResult:
    return StoryGenerationResult(story=make_story(page_count), success=True)


def fast_settings(**overrides) -> Settings:
    """Settings that ignore .env and run timers fast"""
    values = dict(
        silence_timeout_ms=50,
        min_display_time_ms=0,
        generation_start_delay_ms=0,
        retry_base_delay_seconds=0.0,
        debug_mode=False,
        debug_generation_calls=False,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


# =============================================================================
# Fakes
# =============================================================================

class ScriptedBackend:
    """
    Story backend that plays back a list of outcomes.

    Each outcome is an exception to raise or a result to return; the last
    outcome repeats once the script runs out.
    """

    def __init__(self, outcomes, delay: float = 0.0):
        self.outcomes = list(outcomes)
        self.delay = delay
        self.calls = []

    async def generate(self, transcript, options):
        self.calls.append((transcript, options))
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class SleepRecorder:
    """Stand-in for asyncio.sleep that records the requested delays"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


class FakeSession:
    def __init__(self, fail_on_end: bool = False):
        self.fail_on_end = fail_on_end
        self.ended = False
        self.session_id = "fake-session"

    async def end(self):
        self.ended = True
        if self.fail_on_end:
            raise ConnectionError("socket already closed")


class FakeSessionFactory:
    """Records callbacks so tests can play the agent's side"""

    def __init__(self, fail_on_start: bool = False, fail_on_end: bool = False):
        self.fail_on_start = fail_on_start
        self.fail_on_end = fail_on_end
        self.callbacks: AgentCallbacks = None
        self.config: AgentSessionConfig = None
        self.sessions: List[FakeSession] = []

    async def start(self, config, callbacks):
        if self.fail_on_start:
            raise ConnectionError("agent unreachable")
        self.config = config
        self.callbacks = callbacks
        session = FakeSession(fail_on_end=self.fail_on_end)
        self.sessions.append(session)
        callbacks.on_connect()
        return session


class FakeSpeech:
    def __init__(self, audio: bytes = b"ID3audio", error: Exception = None):
        self.audio = audio
        self.error = error
        self.texts: List[str] = []

    async def text_to_speech(self, text):
        self.texts.append(text)
        if self.error:
            raise self.error
        return self.audio


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings():
    return fast_settings()


@pytest.fixture
def app_logger(settings):
    return StoryWriterLogger(debug_mode=False, settings=settings)


@pytest.fixture
def events():
    return EventEmitter()
