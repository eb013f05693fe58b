from __future__ import annotations


class ReconcilerError(Exception):
    """Base class for errors raised by the reconciliation engine."""


class ConstructionError(ReconcilerError, ValueError):
    """Raised when a controller cannot be built from the supplied configuration.

    Nothing has been started when this is raised.
    """


ConfigError = ConstructionError


class TransientHandlerError(ReconcilerError):
    """A handler failure expected to clear on retry.

    Handlers may raise any exception to request a retry.  Raising this one
    says the failure is expected, so the retry is logged without a traceback.
    """


class ExhaustedRetryError(ReconcilerError):
    """Reported when a key has failed more times than the retry budget allows.

    The key is dropped from the queue and only reconsidered on the next
    watch event or resync.  The controller itself keeps running.
    """

    def __init__(self, key: str, attempts: int, cause: BaseException | None = None) -> None:
        super().__init__(f"giving up on {key} after {attempts} attempt(s)")
        self.key = key
        self.attempts = attempts
        self.cause = cause


class SourceFatalError(ReconcilerError):
    """The event source could not list resources; fatal for the current Running period."""
