from __future__ import annotations
from typing import Optional


class RunnerError(Exception):
    """Base class for everything the runner raises on purpose."""


class ConfigError(RunnerError):
    pass


class SubmissionRejected(RunnerError):
    """A submission refused before any session was created."""
    code = "rejected"


class UnknownLanguage(SubmissionRejected):
    code = "unknown_language"

    def __init__(self, language: str):
        super().__init__(f"unknown language: {language!r}")
        self.language = language


class InvalidInput(SubmissionRejected):
    code = "invalid_input"


class Overloaded(SubmissionRejected):
    code = "overloaded"

    def __init__(self, capacity: int, retry_after: int = 1):
        super().__init__(f"worker pool and queue saturated (capacity={capacity})")
        self.capacity = capacity
        self.retry_after = retry_after


class BuildFailed(RunnerError):
    def __init__(self, language: str, reason: str):
        super().__init__(f"sandbox build failed for {language}: {reason}")
        self.language = language
        self.reason = reason


class InternalError(RunnerError):
    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message)
        self.session_id = session_id
