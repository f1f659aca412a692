"""errors.py - error taxonomy shared by the API handlers.

Every AppError carries the HTTP status it maps to; app.py turns them into
`{"error": message}` bodies.
"""


class AppError(Exception):
    status_code = 500
    default_message = 'internal server error'

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    default_message = 'invalid request parameters'


class AuthError(AppError):
    status_code = 401
    default_message = 'unauthorized'


class ForbiddenError(AppError):
    status_code = 403
    default_message = 'insufficient permissions'


class NotFoundError(AppError):
    status_code = 404
    default_message = 'not found'


class ConflictError(AppError):
    status_code = 409
    default_message = 'concurrent modification, please retry'


class StorageError(AppError):
    status_code = 500
    default_message = 'storage unavailable'


class UpstreamError(AppError):
    # raised inside the downstream client only, never returned to a caller
    status_code = 502
    default_message = 'upstream source failed'


class ConfigError(AppError):
    status_code = 500
    default_message = 'invalid configuration'
