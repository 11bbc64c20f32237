"""Domain error taxonomy.

Every error raised by the playbook services carries a stable ``code`` and the
HTTP status it maps to. The API layer renders them with a single exception
handler; the run processor uses ``code`` to pick a terminal status.
"""

from __future__ import annotations

from typing import Any


class PlaybookError(Exception):
    """Base class for all classified domain errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "error": self.code,
            "code": self.code,
            **self.details,
        }


class ValidationError(PlaybookError):
    code = "VALIDATION_FAILED"
    status_code = 400


class NotFoundError(PlaybookError):
    code = "NOT_FOUND"
    status_code = 404


class AuthorizationError(PlaybookError):
    code = "FORBIDDEN"
    status_code = 403


class EntitlementError(PlaybookError):
    """The caller's plan does not include the feature."""

    code = "ENTITLEMENTS_LIMIT_REACHED"
    status_code = 403


class ApprovalRequiredError(PlaybookError):
    code = "APPROVAL_REQUIRED"
    status_code = 403


class ApprovalConflictError(PlaybookError):
    code = "APPROVAL_ALREADY_EXISTS"
    status_code = 400


class ApprovalStateError(PlaybookError):
    code = "APPROVAL_INVALID_STATE"
    status_code = 400


class ScopeConflictError(PlaybookError):
    """The live scope no longer matches the scope the caller was issued."""

    code = "PLAYBOOK_SCOPE_INVALID"
    status_code = 409

    def __init__(self, expected_scope_id: str, provided_scope_id: str | None):
        super().__init__(
            "The product scope has changed since the preview was generated. "
            "Please re-run the estimate to get an updated scopeId.",
            expectedScopeId=expected_scope_id,
            providedScopeId=provided_scope_id,
        )
        self.expected_scope_id = expected_scope_id
        self.provided_scope_id = provided_scope_id


class RulesChangedError(PlaybookError):
    code = "PLAYBOOK_RULES_CHANGED"
    status_code = 409


class DraftNotFoundError(PlaybookError):
    code = "PLAYBOOK_DRAFT_NOT_FOUND"
    status_code = 409


class QuotaExceededError(PlaybookError):
    code = "AI_DAILY_LIMIT_REACHED"
    status_code = 429


class ProviderError(PlaybookError):
    """The content-generation provider failed."""

    code = "AI_PROVIDER_ERROR"
    status_code = 502


# Contract violations: the run cannot be retried as-is, the caller has to
# redo the preview/draft step.
STALE_ERROR_CODES = frozenset({
    ScopeConflictError.code,
    RulesChangedError.code,
    DraftNotFoundError.code,
})


def error_code_of(error: BaseException) -> str:
    """Return the classification code for any exception."""
    if isinstance(error, PlaybookError):
        return error.code
    code = getattr(error, "code", None)
    if isinstance(code, str) and code:
        return code
    return PlaybookError.code
