"""
Error taxonomy for the API.

Every error is an HTTPException so FastAPI routes can raise them directly;
the handlers in main.py render them into the standard failure envelope.
"""
from typing import Any, List, Optional

from fastapi import HTTPException


class ApiError(HTTPException):
    status_code_default = 500
    message_default = "Something went wrong"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None, errors: Optional[List[Any]] = None):
        self.message = message or self.message_default
        self.errors = errors or []
        super().__init__(status_code=status_code or self.status_code_default, detail=self.message)


class ValidationError(ApiError):
    """Malformed or missing input: identifiers, required fields, paging."""
    status_code_default = 400
    message_default = "Invalid request"


class AuthenticationError(ApiError):
    status_code_default = 401
    message_default = "Authentication required"


class AuthorizationError(ApiError):
    """The acting user does not own the resource."""
    status_code_default = 403
    message_default = "You are not allowed to modify this resource"


class NotFoundError(ApiError):
    status_code_default = 404
    message_default = "Resource not found"


class UpstreamError(ApiError):
    """The media host or the database failed."""
    status_code_default = 502
    message_default = "Upstream service failed"
