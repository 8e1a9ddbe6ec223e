from __future__ import annotations

from typing import Any


class CRMError(Exception):
    """Base for lifecycle failures that carry a machine-readable code."""

    code = "crm_error"

    def __init__(self, message: str, *, code: str | None = None, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        if code is not None:
            self.code = code


class InvalidArgumentError(CRMError):
    code = "invalid_argument"


class NotFoundError(CRMError):
    code = "not_found"


class ConflictError(CRMError):
    code = "conflict"


class UnavailableError(CRMError):
    """Storage or transport failure. The message is safe to show; the cause is not."""

    code = "unavailable"
