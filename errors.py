from typing import Optional

from fastapi.responses import JSONResponse


class PasskeyError(Exception):
    """A rejected ceremony step, rendered as ``{"error": code, "message"?: ...}``."""

    def __init__(
        self,
        code: str,
        status_code: int,
        message: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        user_id: Optional[str] = None,
        user_email: Optional[str] = None,
    ):
        super().__init__(message or code)
        self.code = code
        self.status_code = status_code
        self.message = message
        self.headers = headers
        self.user_id = user_id
        self.user_email = user_email

    def to_response(self) -> JSONResponse:
        content = {"error": self.code}
        if self.message:
            content["message"] = self.message
        return JSONResponse(status_code=self.status_code, content=content, headers=self.headers)


class StorageError(Exception):
    """Raised by the repository when the database rejects a read or write."""


class CredentialAlreadyBound(StorageError):
    """The credential id is registered to a different user."""


class AuthProviderError(Exception):
    """The hosted auth provider failed or timed out."""


def error_response(code: str, status_code: int, message: Optional[str] = None) -> JSONResponse:
    return PasskeyError(code, status_code, message).to_response()
