"""
Application error taxonomy.

Domain code raises these; the exception handlers in main.py turn them into
`{"message": ...}` responses with the error's status code.
"""

from typing import Any, Dict, List, Optional


class AppError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message}


class ValidationError(AppError):
    status_code = 400
    default_message = "Validation failed"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "errors": self.errors}


class AuthError(AppError):
    status_code = 401
    default_message = "Not authenticated"


class InvalidToken(AuthError):
    default_message = "Invalid authentication token"


class InvalidCredentials(AuthError):
    # login answers 400 and never says which half was wrong
    status_code = 400
    default_message = "Invalid credentials"


class PermissionDenied(AppError):
    status_code = 403
    default_message = "Forbidden"


class Forbidden(PermissionDenied):
    pass


class NotEnrolled(PermissionDenied):
    default_message = "You are not a participant of this semester"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Not found"


class RecipientNotFound(NotFoundError):
    default_message = "Recipient not found"


class EnrollmentNotFound(NotFoundError):
    default_message = "Semester not found"


class StateError(AppError):
    status_code = 400
    default_message = "Operation not allowed in the current state"


class DiscussionClosed(StateError):
    default_message = "This discussion is closed"


class InvalidTimeRange(StateError, ValidationError):
    default_message = "End time must be later than start time"


class QueryTooShort(StateError):
    default_message = "Search query must be at least 2 characters"


class DuplicateEmail(StateError):
    default_message = "Email already registered"


class AlreadyEnrolled(StateError):
    default_message = "User is already a participant of this semester"


class ConflictError(AppError):
    status_code = 409
    default_message = "The resource was modified concurrently, reload and retry"
