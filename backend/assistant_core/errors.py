from __future__ import annotations

from dataclasses import dataclass


class PipelineError(Exception):
    kind = "PipelineError"
    user_message = "The assistant could not complete that request."

    def __init__(self, message: str, *, user_message: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if user_message is not None:
            self.user_message = user_message


@dataclass(frozen=True)
class FieldViolation:
    field: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


class ActionValidationError(PipelineError):
    kind = "ValidationError"

    def __init__(self, violations: list[FieldViolation]) -> None:
        self.violations = list(violations)
        summary = "; ".join(f"{v.field}: {v.message}" for v in self.violations) or "invalid parameters"
        super().__init__(f"Validation error: {summary}")
        self.user_message = self.first.message if self.violations else "Some details were invalid."

    @property
    def first(self) -> FieldViolation:
        return self.violations[0]


class UnknownActionError(PipelineError):
    kind = "UnknownAction"

    def __init__(self, action_name: str) -> None:
        super().__init__(
            f"Unknown action: {action_name}",
            user_message=f"I don't know how to perform '{action_name}'.",
        )
        self.action_name = action_name


class NotFoundError(PipelineError):
    kind = "NotFound"

    def __init__(self, message: str, *, suggestions: list[str] | None = None) -> None:
        super().__init__(message, user_message=message)
        self.suggestions = list(suggestions or [])


class AmbiguousMatchError(PipelineError):
    kind = "Ambiguous"

    def __init__(self, query: str, candidates: list[str]) -> None:
        message = (
            f'Multiple clients match "{query}": {", ".join(candidates)}. '
            "Please be more specific (use full name)."
        )
        super().__init__(message, user_message=message)
        self.query = query
        self.candidates = list(candidates)


class UnauthorizedError(PipelineError):
    kind = "Unauthorized"
    user_message = (
        "You do not have authorization to access this client's information. "
        "Access denied and logged."
    )


class ProviderTimeoutError(PipelineError):
    kind = "Timeout"
    user_message = "The request took too long. Please try again with a shorter message."


class ProviderError(PipelineError):
    kind = "ProviderError"
    status_code = 500
    user_message = "AI service error. Please try again in a moment."


class ProviderRateLimitedError(ProviderError):
    kind = "ProviderRateLimited"
    status_code = 429
    user_message = "Rate limit exceeded. Please try again later."


class ProviderQuotaError(ProviderError):
    kind = "ProviderQuotaExceeded"
    status_code = 402
    user_message = "Payment required. Please add credits to your AI workspace."


class PersistenceFailure(PipelineError):
    kind = "PersistenceError"
    user_message = "The change could not be saved. Please try again."


class ComplianceFailure(PipelineError):
    kind = "ComplianceLogError"
    user_message = "The action was stopped because the compliance log could not be written."
