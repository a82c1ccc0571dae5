"""
Agent Session - bridge to the remote conversational agent

The voice agent itself (speech recognition, turn taking, its own prompt)
runs remotely. This module only defines what the coordinator needs from it:
a way to open a session with callbacks and a way to end it.

RelayAgentSessionFactory is the default: the browser holds the real agent
connection and relays its events to the API, so starting a session here
just opens a handle the relay endpoints feed.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from pydantic import BaseModel

from src.models import AgentMessage

logger = logging.getLogger(__name__)


class AgentSessionConfig(BaseModel):
    """What the remote agent needs to open a conversation"""
    agent_id: Optional[str] = None
    api_key: Optional[str] = None
    conversation_id: Optional[str] = None


@dataclass
class AgentCallbacks:
    """Events the agent session reports back to the coordinator"""
    on_connect: Callable[[], Any]
    on_disconnect: Callable[[], Any]
    on_message: Callable[[AgentMessage], Any]
    on_error: Callable[[Any], Any]


class AgentSession(Protocol):
    session_id: str

    async def end(self) -> None:
        ...


class AgentSessionFactory(Protocol):
    async def start(self, config: AgentSessionConfig, callbacks: AgentCallbacks) -> AgentSession:
        ...


@dataclass
class RelayAgentSession:
    """Session handle whose events arrive through the relay endpoints"""
    callbacks: AgentCallbacks
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=datetime.now)
    active: bool = True

    def relay_disconnect(self):
        if not self.active:
            return
        self.active = False
        self.callbacks.on_disconnect()

    async def end(self) -> None:
        if self.active:
            self.active = False
            logger.info(f"🔌 Agent session {self.session_id[:8]} ended")


class RelayAgentSessionFactory:
    """Opens RelayAgentSessions and remembers the latest one for the relay endpoints"""

    def __init__(self):
        self.current: Optional[RelayAgentSession] = None

    async def start(self, config: AgentSessionConfig, callbacks: AgentCallbacks) -> RelayAgentSession:
        session = RelayAgentSession(callbacks=callbacks)
        self.current = session
        logger.info(
            f"🔌 Agent session {session.session_id[:8]} opened"
            + (f" for agent {config.agent_id}" if config.agent_id else "")
        )
        callbacks.on_connect()
        return session

