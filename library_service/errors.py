"""
Error taxonomy shared by the engine and the HTTP layer.

Every error carries a machine-readable ``code`` and the HTTP status it maps
to. Anything that is not a ``LibraryError`` is treated as internal.
"""


class LibraryError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class BadRequest(LibraryError):
    """Malformed or missing input. Never retried."""

    code = "BAD_REQUEST"
    status_code = 400


class NotFound(LibraryError):
    code = "NOT_FOUND"
    status_code = 404


class Conflict(LibraryError):
    """A business rule rejected the request in the current state."""

    code = "CONFLICT"
    status_code = 409
