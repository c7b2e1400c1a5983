"""Error kinds raised by the session core and the conversation gateway."""

from __future__ import annotations


class ChatSessionError(Exception):
    """Base class for every recoverable chat-session error."""


class SessionNotFound(ChatSessionError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionExists(ChatSessionError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session already exists: {session_id}")


class GatewayError(ChatSessionError):
    """The conversation provider failed to produce a reply."""


class GatewayTimeout(GatewayError):
    """The conversation provider did not answer within the allowed time."""


class ConfigurationError(RuntimeError):
    """Startup configuration is missing or invalid. Fatal."""
