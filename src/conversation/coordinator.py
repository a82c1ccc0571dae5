"""
Conversation Coordinator - one object per conversation surface

Wires the capture buffer, phase machine, story generation pipeline, pacing
gate and error registry together and exposes the read model and actions
the presentation layer uses.

Flow:
    agent events → DialogueCapture → (silence or end signal) → transcript
    → GENERATING → StoryGenerationService → MinimumDisplayGate → COMPLETE

Asynchronous work (agent session shutdown, story generation) runs as jobs
on a single-consumer queue. Each queue belongs to one generation token;
reset_conversation() bumps the token and retires the queue, so an
in-flight generation may finish but its result is discarded.
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, List, Optional, Set

from src.agents.session import (
    AgentCallbacks,
    AgentSession,
    AgentSessionConfig,
    AgentSessionFactory,
    RelayAgentSessionFactory,
)
from src.config import get_settings
from src.conversation.capture import REASON_DISCONNECT, REASON_MANUAL, DialogueCapture
from src.conversation.pacing import MinimumDisplayGate
from src.conversation.phases import PhaseMachine
from src.models import (
    AgentMessage,
    ConversationPhase,
    ConversationSnapshot,
    DialogueTurn,
    ErrorSeverity,
    ErrorType,
    SavedStory,
    Story,
    StoryGenerationResult,
)
from src.services.errors import (
    AppError,
    ErrorHandler,
    ErrorRegistry,
    STAGE_AUDIO_GENERATION,
    STAGE_CONVERSATION,
    STAGE_STORY_GENERATION,
)
from src.services.events import (
    EVENT_ERROR_ADDED,
    EVENT_ERROR_REMOVED,
    EVENT_FLUSH_REJECTED,
    EVENT_GENERATION_PROGRESS,
    EVENT_PHASE_CHANGED,
    EVENT_STORY_READY,
    EVENT_TRANSCRIPT_READY,
    EVENT_TURN_CAPTURED,
    EventEmitter,
    conversation_events,
)
from src.services.logger import get_logger
from src.services.story_generation import StoryGenerationService
from src.services.story_library import StoryLibrary
from src.services.transcript import Transcript
from src.services.voice import SpeechSynthesizer

logger = logging.getLogger(__name__)

P = ConversationPhase

Job = Callable[[], Awaitable[Any]]


class ConversationCoordinator:
    """
    Explicit orchestrator for one conversation surface.

    Read model: phase, transcript, story, progress, is_generating, errors
    (see snapshot()). Actions: start_conversation, handle_agent_message,
    end_conversation, process_transcript, end_conversation_manually,
    generate_story_automatically, retry_story_generation,
    reset_conversation, save_story, load_story, generate_story_audio.
    """

    def __init__(
        self,
        story_service: StoryGenerationService,
        settings=None,
        session_factory: Optional[AgentSessionFactory] = None,
        library: Optional[StoryLibrary] = None,
        speech: Optional[SpeechSynthesizer] = None,
        events: EventEmitter = conversation_events,
        app_logger=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self.conversation_id = str(uuid.uuid4())
        self.story_service = story_service
        self.session_factory = session_factory or RelayAgentSessionFactory()
        self.speech = speech
        self.events = events
        self.app_logger = app_logger or get_logger()
        self._clock = clock

        self.staged = self.settings.staged_phases
        self.start_delay = self.settings.generation_start_delay_seconds

        self.registry = ErrorRegistry(on_change=self._on_error_change)
        self.phases = PhaseMachine(on_change=self._on_phase_change)
        self.capture = DialogueCapture(
            on_flush=self._on_flush,
            silence_timeout=self.settings.silence_timeout_seconds,
            min_user_turns=self.settings.min_user_turns,
            on_reject=self._on_flush_rejected,
        )
        self.display_gate = MinimumDisplayGate(self.settings.min_display_time_seconds, clock=clock)

        self.library = library
        if self.library is not None and self.library.registry is None:
            self.library.registry = self.registry

        # Read model
        self.transcript: Optional[str] = None
        self.story: Optional[Story] = None
        self.progress: Optional[str] = None
        self.is_generating = False
        self.is_generating_audio = False

        self._session: Optional[AgentSession] = None
        self._session_serial = 0
        self._generation_token = 0
        self._generation_started_at: Optional[float] = None

        self._jobs: Optional[asyncio.Queue] = None
        self._jobs_token: Optional[int] = None
        self._workers: Set[asyncio.Task] = set()

    # =========================================================================
    # READ MODEL
    # =========================================================================

    @property
    def phase(self) -> ConversationPhase:
        return self.phases.phase

    @property
    def generation_token(self) -> int:
        return self._generation_token

    @property
    def errors(self):
        return self.registry.errors

    def snapshot(self) -> ConversationSnapshot:
        return ConversationSnapshot(
            conversation_id=self.conversation_id,
            phase=self.phase,
            transcript=self.transcript,
            story=self.story,
            progress=self.progress,
            is_generating=self.is_generating,
            errors=self.registry.to_dict(),
        )

    # =========================================================================
    # JOB QUEUE
    # =========================================================================

    def _enqueue(self, name: str, stage: str, job: Job, skip_if_stale: bool = True):
        token = self._generation_token
        if self._jobs is None or self._jobs_token != token:
            self._jobs = asyncio.Queue()
            self._jobs_token = token
            worker = asyncio.get_running_loop().create_task(self._run_jobs(self._jobs, token))
            self._workers.add(worker)
            worker.add_done_callback(self._workers.discard)
        self._jobs.put_nowait((name, stage, job, skip_if_stale))

    async def _run_jobs(self, jobs: asyncio.Queue, token: int):
        while True:
            item = await jobs.get()
            try:
                if item is None:
                    return
                name, stage, job, skip_if_stale = item
                if skip_if_stale and token != self._generation_token:
                    logger.debug(f"Skipping stale job {name} (token {token}, current {self._generation_token})")
                    continue
                await job()
            except Exception as e:
                logger.error(f"❌ Job {item[0]} failed: {e}", exc_info=True)
                self.registry.add_error(item[1], ErrorHandler.from_unknown(
                    e, ErrorType.SYSTEM, ErrorSeverity.MEDIUM, {"action": item[0]}
                ))
            finally:
                jobs.task_done()

    def _retire_jobs(self):
        # The old worker finishes its current job, then exits on the sentinel
        if self._jobs is not None:
            self._jobs.put_nowait(None)
        self._jobs = None
        self._jobs_token = None

    async def wait_idle(self):
        """Wait until every queued job has run."""
        if self._jobs is not None:
            await self._jobs.join()

    async def close(self):
        """Cancel timers, end the agent session and stop every worker."""
        self.capture.clear()
        self.display_gate.cancel()
        session, self._session = self._session, None
        if session is not None:
            await self._end_session(session)

        workers = [worker for worker in self._workers if not worker.done()]
        self._retire_jobs()
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

    # =========================================================================
    # EVENTS
    # =========================================================================

    def _emit(self, event_type: str, data: dict):
        self.events.emit_nowait(event_type, self.conversation_id, data)

    def _on_phase_change(self, old: ConversationPhase, new: ConversationPhase, reason: str):
        self.app_logger.phase_changed(self.conversation_id, old.value, new.value, reason)
        self._emit(EVENT_PHASE_CHANGED, {"from": old.value, "to": new.value, "reason": reason})

    def _on_error_change(self, key: str, error: Optional[AppError]):
        if error is None:
            self._emit(EVENT_ERROR_REMOVED, {"key": key})
        else:
            self._emit(EVENT_ERROR_ADDED, {"key": key, "error": error.to_dict()})

    # =========================================================================
    # AGENT SESSION
    # =========================================================================

    async def start_conversation(self) -> bool:
        """
        Open a new conversation with the agent.

        From COMPLETE the previous story is cleared first. From any phase
        other than IDLE the call is ignored.
        """
        if self.phases.is_in(P.COMPLETE):
            self.reset_conversation("new conversation")
        if not self.phases.guard([P.IDLE], "start_conversation"):
            return False

        self.transcript = None
        self.story = None
        self.progress = None
        self.registry.clear_errors()
        self.display_gate.cancel()
        self.capture.begin()

        self._session_serial += 1
        serial = self._session_serial
        self.phases.transition(P.ACTIVE, "start")
        self.app_logger.conversation_started(self.conversation_id)

        config = AgentSessionConfig(
            agent_id=self.settings.agent_id,
            api_key=self.settings.agent_api_key,
            conversation_id=self.conversation_id,
        )
        try:
            session = await self.session_factory.start(config, self._callbacks(serial))
        except Exception as e:
            if serial == self._session_serial:
                self.registry.add_error(STAGE_CONVERSATION, ErrorHandler.from_unknown(
                    e, ErrorType.CONVERSATION, ErrorSeverity.MEDIUM, {"action": "conversation_connection"}
                ))
                self.capture.clear()
                self.phases.transition(P.IDLE, "agent session failed to start")
            return False

        if serial != self._session_serial:
            # Reset or flush while the session was opening
            await self._end_session(session)
            return False

        self._session = session
        return True

    def _callbacks(self, serial: int) -> AgentCallbacks:
        def current() -> bool:
            return serial == self._session_serial

        def on_connect():
            logger.info("🔌 Agent connected")

        def on_disconnect():
            if current():
                self.handle_disconnect()

        def on_message(message: AgentMessage):
            if current():
                self.handle_agent_message(message)

        def on_error(error: Any):
            if current():
                self.handle_agent_error(error)

        return AgentCallbacks(
            on_connect=on_connect,
            on_disconnect=on_disconnect,
            on_message=on_message,
            on_error=on_error,
        )

    async def _end_session(self, session: AgentSession):
        try:
            await session.end()
        except Exception as e:
            self.registry.add_error(STAGE_CONVERSATION, ErrorHandler.from_unknown(
                e, ErrorType.CONVERSATION, ErrorSeverity.LOW, {"action": "end_conversation"}
            ))

    def _release_session(self):
        """Detach the current session and end it in the background."""
        self._session_serial += 1
        session, self._session = self._session, None
        if session is not None:
            # Runs even after a reset so the remote session is always closed
            self._enqueue("end_session", STAGE_CONVERSATION, lambda: self._end_session(session),
                          skip_if_stale=False)

    def handle_agent_message(self, message: AgentMessage) -> bool:
        """
        Feed one agent event into the capture buffer.

        Returns:
            True if the message was captured or flushed the conversation
        """
        if not self.phases.guard([P.ACTIVE], "Agent message"):
            return False

        if message.is_end_signal:
            logger.info(f"🏁 Agent signalled end of conversation ({message.client_tool_call.tool_name})")
            return self.capture.end_signal() is not None

        if not message.has_content:
            logger.debug(f"Ignoring agent event without content (type={message.type})")
            return False

        turn = DialogueTurn(
            role=message.role,
            content=message.message,
            timestamp=int(self._clock() * 1000),
        )
        if not self.capture.append(turn):
            return False

        turn_count = len(self.capture.turns)
        self.app_logger.turn_captured(self.conversation_id, turn.role.value, turn.content, turn_count)
        self._emit(EVENT_TURN_CAPTURED, {
            "role": turn.role.value,
            "content": turn.content,
            "turn_count": turn_count,
        })
        return True

    def handle_disconnect(self):
        """Agent dropped without an end signal: flush what we have if it is enough."""
        self._session = None
        if not self.phases.is_in(P.ACTIVE):
            return

        logger.info(f"🔌 Agent disconnected with {len(self.capture.turns)} turns captured")
        if self.capture.turns and self.capture.finalize(REASON_DISCONNECT) is not None:
            return

        self.capture.clear()
        self.phases.transition(P.IDLE, "agent disconnected")

    def handle_agent_error(self, error: Any):
        self.registry.add_error(STAGE_CONVERSATION, ErrorHandler.from_unknown(
            error, ErrorType.CONVERSATION, ErrorSeverity.MEDIUM, {"action": "conversation_connection"}
        ))
        self._session = None
        if self.phases.is_in(P.ACTIVE):
            self.capture.clear()
            self.phases.transition(P.IDLE, "agent session error")

    # =========================================================================
    # CAPTURE → GENERATION
    # =========================================================================

    def _on_flush(self, transcript: Transcript, reason: str):
        self.app_logger.flush_accepted(
            self.conversation_id, reason, transcript.turn_count,
            transcript.user_turn_count, len(transcript.text)
        )
        self._emit(EVENT_TRANSCRIPT_READY, {
            "reason": reason,
            "turn_count": transcript.turn_count,
            "user_turns": transcript.user_turn_count,
            "transcript": transcript.text,
        })
        self.end_conversation(transcript.text)

    def _on_flush_rejected(self, reason: str, user_turns: int):
        self.app_logger.flush_rejected(
            self.conversation_id, reason, user_turns, self.capture.min_user_turns
        )
        self._emit(EVENT_FLUSH_REJECTED, {
            "reason": reason,
            "user_turns": user_turns,
            "min_required": self.capture.min_user_turns,
        })

    def end_conversation(self, transcript: str) -> bool:
        """
        Accept the final transcript and move on to generation.

        Called by the capture flush, or directly when the client already
        holds the final transcript.
        """
        if not self.phases.guard([P.ACTIVE], "end_conversation"):
            return False

        self.capture.clear()
        self._release_session()
        self.transcript = transcript

        if self.staged:
            self.phases.transition(P.ENDED, "conversation ended")
            self._enqueue("process_transcript", STAGE_STORY_GENERATION, self.process_transcript)
        else:
            self._begin_generation("conversation ended", self.start_delay)
        return True

    async def process_transcript(self) -> bool:
        """Staged design: ENDED → PROCESSING → GENERATING."""
        if not self.phases.guard([P.ENDED], "process_transcript"):
            return False

        self.phases.transition(P.PROCESSING, "processing transcript")
        if not self.transcript or not self.transcript.strip():
            self._record_missing_transcript()
            self.phases.transition(P.IDLE, "empty transcript")
            return False

        self._begin_generation("transcript processed", self.start_delay)
        return True

    def end_conversation_manually(self) -> bool:
        """User pressed stop: flush now, same user-turn minimum."""
        if not self.phases.guard([P.ACTIVE], "end_conversation_manually"):
            return False
        logger.info("✋ Conversation ended manually")
        self.capture.cancel()
        return self.capture.finalize(REASON_MANUAL) is not None

    def _begin_generation(self, reason: str, delay: float):
        self.phases.transition(P.GENERATING, reason)
        self.display_gate.start()
        self._generation_started_at = self._clock()
        self.registry.remove_error(STAGE_STORY_GENERATION)

        token = self._generation_token

        async def job():
            if delay > 0:
                # Let the progress view mount before the first backend call
                await asyncio.sleep(delay)
            if token != self._generation_token:
                return
            await self.generate_story_automatically()

        self._enqueue("generate_story", STAGE_STORY_GENERATION, job)

    def _record_missing_transcript(self):
        self.registry.add_error(STAGE_STORY_GENERATION, ErrorHandler.create_error(
            ErrorType.VALIDATION,
            ErrorSeverity.MEDIUM,
            "No conversation transcript available for story generation",
            "We need a conversation transcript to create your story. "
            "Please try talking with the StoryWriter Agent first.",
            context={"action": "automatic_story_generation", "transcript_length": 0},
        ))

    def _progress_reporter(self, token: int) -> Callable[[str], None]:
        def report(message: str):
            if token != self._generation_token:
                return
            self.progress = message
            self._emit(EVENT_GENERATION_PROGRESS, {"progress": message})
        return report

    def _finish_generation(self):
        self.display_gate.cancel()
        self.progress = None
        self.is_generating = False
        self._generation_started_at = None

    async def generate_story_automatically(self) -> Optional[StoryGenerationResult]:
        """
        Run the generation pipeline on the retained transcript.

        Returns:
            The pipeline result, or None when nothing ran or the result was
            discarded because the conversation was reset meanwhile
        """
        if not self.phases.guard([P.GENERATING], "generate_story_automatically"):
            return None

        token = self._generation_token
        transcript = self.transcript
        if not transcript or not transcript.strip():
            self._record_missing_transcript()
            self._finish_generation()
            self.phases.transition(P.IDLE, "no transcript")
            return None

        try:
            self.is_generating = True
            self.registry.remove_error(STAGE_STORY_GENERATION)
            self.app_logger.generation_started(self.conversation_id, transcript)

            result = await self.story_service.generate_story_automatically(
                transcript, on_progress=self._progress_reporter(token)
            )
        except Exception as e:
            if token != self._generation_token or not self.phases.is_in(P.GENERATING):
                logger.warning(f"⚠️ Stale generation job failed after reset: {e}")
                return None
            logger.error(f"❌ Story generation job failed: {e}", exc_info=True)
            self.registry.add_error(STAGE_STORY_GENERATION, ErrorHandler.from_unknown(
                e,
                ErrorType.STORY_GENERATION,
                ErrorSeverity.MEDIUM,
                {"action": "automatic_story_generation", "transcript_length": len(transcript)},
            ))
            self._finish_generation()
            self.phases.transition(P.IDLE, "generation error")
            return None

        if token != self._generation_token or not self.phases.is_in(P.GENERATING):
            self.app_logger.generation_discarded(self.conversation_id, token, self._generation_token)
            return None

        if not result.success:
            error_type = result.error_type or ErrorType.STORY_GENERATION
            self.registry.add_error(STAGE_STORY_GENERATION, ErrorHandler.create_error(
                error_type,
                ErrorSeverity.MEDIUM,
                result.error or "Story generation service failed",
                ErrorHandler.generate_user_message(error_type),
                context={"action": "automatic_story_generation", "transcript_length": len(transcript)},
            ))
            self._finish_generation()
            self.phases.transition(P.IDLE, "generation failed")
            return result

        story = result.story
        self.display_gate.schedule(lambda: self._complete_generation(token, story))
        return result

    def _complete_generation(self, token: int, story: Story):
        if token != self._generation_token or not self.phases.is_in(P.GENERATING):
            self.app_logger.generation_discarded(self.conversation_id, token, self._generation_token)
            return

        duration = None
        if self._generation_started_at is not None:
            duration = self._clock() - self._generation_started_at

        self.story = story
        self._finish_generation()
        self.phases.transition(P.COMPLETE, "story ready")
        self.app_logger.story_ready(self.conversation_id, story.title, len(story.pages), duration)
        self._emit(EVENT_STORY_READY, {"story": story.model_dump(mode="json")})

    def retry_story_generation(self) -> bool:
        """
        Generate again from the last transcript without re-running capture.

        Only valid after a failed generation left the conversation in IDLE
        with its transcript retained.
        """
        if not self.phases.guard([P.IDLE], "retry_story_generation"):
            return False
        if not self.transcript or not self.transcript.strip():
            logger.warning("⚠️ Retry requested but no transcript is retained")
            self._record_missing_transcript()
            return False

        self._begin_generation("retry", 0)
        return True

    def reset_conversation(self, reason: str = "reset"):
        """Back to IDLE from anywhere, dropping timers, data and errors."""
        self._generation_token += 1
        self._retire_jobs()
        self.capture.clear()
        self.display_gate.cancel()
        self._release_session()

        self.transcript = None
        self.story = None
        self.progress = None
        self.is_generating = False
        self.is_generating_audio = False
        self._generation_started_at = None

        self.registry.clear_errors()
        self.phases.reset(reason)

    # =========================================================================
    # SAVED STORIES
    # =========================================================================

    def _require_library(self) -> StoryLibrary:
        if self.library is None:
            raise ErrorHandler.create_error(
                ErrorType.SYSTEM,
                ErrorSeverity.MEDIUM,
                "Story library is not configured",
                ErrorHandler.generate_user_message(ErrorType.STORAGE),
            )
        return self.library

    async def save_story(self, title: Optional[str] = None) -> SavedStory:
        return await self._require_library().save_story(self.story, title)

    async def load_saved_stories(self) -> List[SavedStory]:
        return await self._require_library().load_saved_stories()

    def load_story(self, story_id: str) -> Optional[Story]:
        """Show a saved story: IDLE → COMPLETE (a shown story is replaced)."""
        if not self.phases.guard([P.IDLE, P.COMPLETE], "load_story"):
            return None

        story = self._require_library().load_story(story_id)
        if self.phases.is_in(P.COMPLETE):
            self.reset_conversation("loading saved story")

        self.story = story
        self.phases.transition(P.COMPLETE, "saved story loaded")
        self._emit(EVENT_STORY_READY, {"story": story.model_dump(mode="json")})
        return story

    # =========================================================================
    # NARRATION
    # =========================================================================

    async def generate_story_audio(self, text: Optional[str] = None) -> Optional[bytes]:
        """Narrate the story; failures are low severity and never change the phase."""
        if text is None:
            text = self.story.full_text if self.story else ""

        self.registry.remove_error(STAGE_AUDIO_GENERATION)
        if self.speech is None:
            self.registry.add_error(STAGE_AUDIO_GENERATION, ErrorHandler.create_error(
                ErrorType.AUDIO,
                ErrorSeverity.LOW,
                "Speech synthesis is not configured",
                ErrorHandler.generate_user_message(ErrorType.AUDIO),
            ))
            return None

        self.is_generating_audio = True
        try:
            return await self.speech.text_to_speech(text)
        except Exception as e:
            self.registry.add_error(STAGE_AUDIO_GENERATION, ErrorHandler.from_unknown(
                e, ErrorType.AUDIO, ErrorSeverity.LOW,
                {"action": "generate_story_audio", "story_length": len(text)}
            ))
            return None
        finally:
            self.is_generating_audio = False
