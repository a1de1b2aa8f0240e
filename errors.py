"""Error taxonomy shared by the student and admin flows."""

from typing import Optional


class LMSError(Exception):
    """Base class. `status` is the HTTP status the web layer reports."""

    status = 500
    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LMSError):
    status = 400
    kind = "validation"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(f"{field}: {message}" if field else message)
        self.field = field


class InvalidExam(ValidationError):
    """An exam (or question set) that cannot be scored or taken."""


class AuthorizationError(LMSError):
    status = 403
    kind = "authorization"

    def __init__(self, message: str, status: int = 403):
        super().__init__(message)
        self.status = status


class DependencyError(LMSError):
    """Database or AI provider failure. Never retried automatically."""

    status = 502
    kind = "dependency"


class NotFoundError(LMSError):
    status = 404
    kind = "not_found"
