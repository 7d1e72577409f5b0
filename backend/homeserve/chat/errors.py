"""Relay error taxonomy.

Every failure surfaced over the WebSocket channel maps to one of these
kinds. The dispatcher catches :class:`RelayError` at the event boundary
and replies with an ``error`` event to the offending connection only.
"""


class RelayError(Exception):
    """Base class for errors reported to a single connection."""

    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthInvalid(RelayError):
    """Bad, expired or unverifiable bearer credential."""
    code = "auth_invalid"


class NotAuthenticated(RelayError):
    """Operation attempted before ``auth`` succeeded."""
    code = "not_authenticated"


class AccessDenied(RelayError):
    """Requester is not a participant of the conversation."""
    code = "access_denied"


class NotFound(RelayError):
    """Conversation or target user does not exist."""
    code = "not_found"


class ValidationError(RelayError):
    """Missing or invalid event fields (e.g. empty message content)."""
    code = "validation_error"


class Transient(RelayError):
    """Store unavailable. Retrying is the caller's responsibility."""
    code = "transient"
