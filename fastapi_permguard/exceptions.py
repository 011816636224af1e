from collections.abc import Sequence
from typing import Any

from fastapi import HTTPException


class Forbidden(HTTPException):
    """403 Forbidden - user lacks required permissions."""

    def __init__(
        self,
        detail: str = "Forbidden",
        *,
        required_permissions: Sequence[str] | None = None,
        permission_mode: str | None = None,
        missing_permissions: Sequence[str] | None = None,
    ) -> None:
        self.required_permissions = list(required_permissions or [])
        self.permission_mode = permission_mode
        self.missing_permissions = list(missing_permissions or [])

        body: str | dict[str, Any] = detail
        if required_permissions is not None:
            body = {
                "message": detail,
                "required_permissions": self.required_permissions,
                "permission_mode": permission_mode,
            }
            if missing_permissions is not None:
                body["missing_permissions"] = self.missing_permissions

        super().__init__(status_code=403, detail=body)


class Unauthenticated(HTTPException):
    """401 Unauthorized - no user identity on the request."""

    def __init__(self, detail: str = "Authentication required") -> None:
        super().__init__(status_code=401, detail=detail)


class StoreUnavailable(Exception):
    """The permission store or role directory could not answer.

    Never a denial: callers must surface this as an internal error.
    """


class StoreTimeout(StoreUnavailable):
    """A permission store call exceeded the configured timeout."""
