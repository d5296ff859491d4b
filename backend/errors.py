"""
Service-layer error taxonomy.

Services raise these instead of HTTPException so they stay usable from jobs and
tests; main.py renders every one of them into the uniform response envelope:

    {"success": false, "error": "<message>", "code": "<MACHINE_CODE>"}

`code` is what the extension branches on (e.g. MAX_DEVICES_REACHED); `error`
is meant for humans.
"""


class ServiceError(Exception):
    status_code = 500
    default_code = "SERVER_ERROR"

    def __init__(self, message: str, code: str | None = None, **extra):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.extra = extra


class ValidationFailed(ServiceError):
    status_code = 400
    default_code = "MISSING_PARAMS"


class AuthenticationFailed(ServiceError):
    """Missing, malformed, tampered or expired credentials.

    The message is deliberately the same for every cause; callers log the
    specific reason themselves.
    """
    status_code = 401
    default_code = "UNAUTHORIZED"

    def __init__(self, message: str = "Invalid or expired token", code: str | None = None, **extra):
        super().__init__(message, code, **extra)


class AccessDenied(ServiceError):
    status_code = 403
    default_code = "FORBIDDEN"


class NotFoundError(ServiceError):
    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(ServiceError):
    status_code = 409
    default_code = "CONFLICT"


class KeyGenerationError(ServiceError):
    """Could not produce a unique license key within the attempt budget."""
    status_code = 500
    default_code = "KEY_GENERATION_FAILED"
