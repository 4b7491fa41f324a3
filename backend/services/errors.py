from __future__ import annotations

from typing import Any


class StudioError(Exception):
    code = "STUDIO_ERROR"
    http_status = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


# Validation errors: surfaced to the caller, never retried.

class ValidationError(StudioError):
    code = "VALIDATION_ERROR"
    http_status = 422


class BriefInvalid(ValidationError):
    code = "BRIEF_INVALID"


class ContractInvalid(ValidationError):
    code = "CONTRACT_INVALID"


class OverrideRejected(ValidationError):
    code = "OVERRIDE_REJECTED"


class PagesInvalid(ValidationError):
    code = "PAGES_INVALID"


class MessageInvalid(ValidationError):
    code = "MESSAGE_INVALID"


class RuleSetInvalid(ValidationError):
    code = "RULESET_INVALID"


class NotFound(StudioError):
    code = "NOT_FOUND"
    http_status = 404


class PermissionDenied(StudioError):
    code = "PERMISSION_DENIED"
    http_status = 403


class SessionForbidden(PermissionDenied):
    code = "SESSION_FORBIDDEN"


# Conflict errors carry expected/actual so callers can refetch and retry by hand.

class ConflictError(StudioError):
    code = "CONFLICT"
    http_status = 409

    def __init__(self, message: str, field: str | None = None, expected: Any = None, actual: Any = None, **details: Any) -> None:
        super().__init__(message, field=field, expected=expected, actual=actual, **details)
        self.field = field
        self.expected = expected
        self.actual = actual


class ProposalStale(ConflictError):
    code = "PROPOSAL_STALE"


class ProposalClosed(ConflictError):
    code = "PROPOSAL_CLOSED"


class DraftImmutable(ConflictError):
    code = "DRAFT_IMMUTABLE"


class InvalidTransition(ConflictError):
    code = "INVALID_TRANSITION"


class RevisionLimitReached(ConflictError):
    code = "REVISION_LIMIT_REACHED"


class BriefLocked(ConflictError):
    code = "BRIEF_LOCKED"


class RuleSetImmutable(ConflictError):
    code = "RULESET_IMMUTABLE"


class TransientError(StudioError):
    code = "TRANSIENT_ERROR"
    http_status = 502


class GenerationFailed(TransientError):
    code = "GENERATION_FAILED"
