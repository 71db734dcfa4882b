from __future__ import annotations

"""Error taxonomy shared by the streaming, session and generation layers.

Routers translate these into ``HTTPException`` at the API boundary; services
raise them and never swallow a TransportError without applying a policy.
"""

from typing import Optional


class AdvisorError(Exception):
    """Base class for all advisor failures."""


class TransportError(AdvisorError):
    """Network failure or non-2xx / non-zero-code upstream response."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(AdvisorError):
    """A single malformed stream frame. Recovered locally by skipping it."""


class GenerationTimeoutError(AdvisorError):
    """Polling cap exceeded while waiting for an upstream task."""

    def __init__(self, attempts: int, last_status: Optional[str] = None) -> None:
        super().__init__(f"Generation did not complete after {attempts} polls (last status: {last_status})")
        self.attempts = attempts
        self.last_status = last_status


class GenerationFailedError(AdvisorError):
    """Upstream task ended in a terminal non-completed state or produced no answer."""

    def __init__(self, message: str, status: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status


class ConfigError(AdvisorError):
    """Missing bot identifier or credential."""


class TurnInProgressError(AdvisorError):
    """A chat turn is already streaming for this session."""


class PersistenceWarning(UserWarning):
    """Record store write failed; state is kept in memory only."""
