"""Agents package for StoryWriter"""

from .session import (
    AgentSessionConfig,
    AgentCallbacks,
    AgentSession,
    AgentSessionFactory,
    RelayAgentSession,
    RelayAgentSessionFactory,
)

__all__ = [
    "AgentSessionConfig",
    "AgentCallbacks",
    "AgentSession",
    "AgentSessionFactory",
    "RelayAgentSession",
    "RelayAgentSessionFactory",
]
