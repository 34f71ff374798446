"""
sylvan.errors — Service-layer exceptions
==========================================

Services raise these instead of ``HTTPException`` so they stay usable
from the worker.  :mod:`sylvan.api.main` installs one handler that turns
any :class:`SylvanError` into ``{"error": ..., "message": ...}`` JSON.
"""

from __future__ import annotations


class SylvanError(Exception):
    """Base error carrying an HTTP status, a short title and a message."""

    status_code = 400
    title = "Bad Request"

    def __init__(
        self,
        message: str,
        *,
        title: str | None = None,
        status_code: int | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if title is not None:
            self.title = title
        if status_code is not None:
            self.status_code = status_code
        self.headers = headers

    def to_dict(self) -> dict:
        return {"error": self.title, "message": self.message}


class ValidationFailed(SylvanError):
    status_code = 400
    title = "Validation Error"

    def __init__(self, message: str, errors: list[str] | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.errors = errors or []

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.errors:
            data["errors"] = self.errors
        return data


class ForbiddenError(SylvanError):
    status_code = 403
    title = "Forbidden"


class NotFoundError(SylvanError):
    status_code = 404
    title = "Not Found"


class ConflictError(SylvanError):
    status_code = 409
    title = "Conflict"


class TaskExpiredError(SylvanError):
    status_code = 400
    title = "Task Expired"
