"""Error kinds raised by the survey engine."""

from __future__ import annotations

from typing import Any, Dict, Optional


class SurveyEngineError(Exception):
    """Base exception for all survey engine errors."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


# =============================================================================
# Request faults (surfaced to the caller verbatim)
# =============================================================================


class NotFoundError(SurveyEngineError):
    """Project, survey record, contributor or reference row is absent."""
    pass


class OwnershipViolationError(SurveyEngineError):
    """Caller does not own the survey record (or may not answer it)."""
    pass


class DuplicateRegistrationError(SurveyEngineError):
    """A survey record already exists for this project and owner."""
    pass


class InvalidStateError(SurveyEngineError):
    """Operation not allowed in the survey record's current state."""
    pass


class QuorumNotMetError(SurveyEngineError):
    """Too few participants to close the survey."""

    def __init__(self, message: str, participant: int, required: int):
        super().__init__(message, {"participant": participant, "required": required})
        self.participant = participant
        self.required = required


# =============================================================================
# Environment faults
# =============================================================================


class ConfigurationMissingError(SurveyEngineError):
    """Static reference data (descriptions, feedback, aggregate row) is missing."""
    pass


class DependencyUnavailableError(SurveyEngineError):
    """Notification cache or entity store cannot be reached."""

    def __init__(self, message: str, dependency: str | None = None):
        super().__init__(message, {"dependency": dependency} if dependency else None)
        self.dependency = dependency
