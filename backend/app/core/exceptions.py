"""
Engine exceptions.

Definition problems are raised at publish time, channel problems are caught
by the executor and turned into retries or enrollment failures, and the rest
are surfaced to the caller (API layer maps them to HTTP status codes).
"""
from typing import List, Optional


class EngineError(Exception):
    """Base class for every error raised by the campaign engine."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class CampaignValidationError(EngineError):
    """A campaign definition was rejected at publish time."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Campaign definition is invalid", {"errors": self.errors})


class CampaignNotFound(EngineError):
    pass


class CampaignStateError(EngineError):
    """Illegal lifecycle move (e.g. resuming an archived campaign)."""
    pass


class EnrollmentNotFound(EngineError):
    pass


class EnrollmentRejected(EngineError):
    """Enrollment refused: duplicate open run, inactive campaign, re-enrollment policy."""

    def __init__(self, message: str, reason: str, details: Optional[dict] = None):
        self.reason = reason
        super().__init__(message, details)


class InvalidTransition(EngineError):
    """Code attempted a status change the enrollment state machine forbids."""
    pass


class TaskResolutionError(EngineError):
    pass


class ChannelError(EngineError):
    def __init__(self, message: str, channel: Optional[str] = None, details: Optional[dict] = None):
        self.channel = channel
        super().__init__(message, details)


class TransientChannelError(ChannelError):
    """Timeout / 5xx from the provider. Retried with backoff."""
    pass


class PermanentChannelError(ChannelError):
    """Provider refused the message for good (bad address, opted out...)."""
    pass
