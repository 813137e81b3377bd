"""
Application exceptions. Each maps to an HTTP status and a {code, message} detail
so REST handlers and the realtime gateway report errors the same way.
"""
from fastapi import HTTPException, status


class AppException(HTTPException):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "BAD_REQUEST"
    message = "Bad request."

    def __init__(self, message: str = None, code: str = None):
        self.message = message or self.message
        self.code = code or self.code
        super().__init__(
            status_code=self.status_code,
            detail={"code": self.code, "message": self.message},
        )

    def to_payload(self) -> dict:
        return {"code": self.code, "message": self.message}


class NotAuthenticated(AppException):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "NOT_AUTHENTICATED"
    message = "Authentication required."


class SessionExpired(AppException):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "SESSION_EXPIRED"
    message = "Session expired or invalid. Please log in again."


class Forbidden(AppException):
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"
    message = "You are not a participant of this conversation."


class NotFound(AppException):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource"):
        super().__init__(message=f"{resource} not found.")


class InvalidTarget(AppException):
    code = "INVALID_OTHER_USER"
    message = "Cannot start a conversation with that user."


class EmptyContent(AppException):
    code = "EMPTY_CONTENT"
    message = "Message content cannot be empty or whitespace only."


class PersistenceFailed(AppException):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "SERVICE_ERROR"
    message = "Failed to save. Please try again."
