from __future__ import annotations


class ChatError(Exception):
    status_code = 500
    error = "internal_error"

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.error)
        self.detail = detail or self.error


class Unauthorized(ChatError):
    status_code = 401
    error = "unauthorized"


class Forbidden(ChatError):
    status_code = 403
    error = "forbidden"


class NotFound(ChatError):
    status_code = 404
    error = "not_found"


class InvalidMessage(ChatError):
    status_code = 400
    error = "invalid_message"


class UnsupportedType(ChatError):
    status_code = 415
    error = "unsupported_type"


class TooLarge(ChatError):
    status_code = 413
    error = "too_large"


class RateLimitExceeded(Exception):
    def __init__(self, message: str, error: str, retry_after_seconds: int):
        self.message = message
        self.error = error
        self.retry_after_seconds = retry_after_seconds
