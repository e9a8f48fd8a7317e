"""Agent sessions: the session pool, reconnects and conversations."""

from sessions.conversation import Conversation, TranscriptListener
from sessions.reconnect import ReconnectController
from sessions.registry import SessionRegistry

__all__ = [
    "Conversation",
    "ReconnectController",
    "SessionRegistry",
    "TranscriptListener",
]
