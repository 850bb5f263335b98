"""Error types shared by the queue store, the backend client and the front end."""

from __future__ import annotations


class StoreUnavailable(RuntimeError):
    """The shared queue store could not be reached."""


class BackendError(RuntimeError):
    classification = "backend_other"


class SessionExpired(BackendError):
    classification = "session_expired"


class BackendTimeout(BackendError):
    classification = "backend_timeout"


class MalformedAffinity(ValueError):
    pass


class SlackApiError(RuntimeError):
    def __init__(self, method: str, error: str):
        super().__init__(f"{method} failed: {error}")
        self.method = method
        self.error = error


def classify(exc: BaseException) -> str:
    return getattr(exc, "classification", BackendError.classification)


__all__ = [
    "BackendError",
    "BackendTimeout",
    "MalformedAffinity",
    "SessionExpired",
    "SlackApiError",
    "StoreUnavailable",
    "classify",
]
