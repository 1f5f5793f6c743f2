"""Error kinds raised by the portal services.

Every error carries a short ``kind`` and a human readable message and is
serialized as ``{"success": false, "error": kind, "message": ...}`` by the
HTTP layer. None of them is fatal to the process.
"""


class PortalError(Exception):
    kind = "error"
    status = 500

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.message = message
        self.errors = list(errors or [])

    def to_dict(self):
        body = {"success": False, "error": self.kind, "message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationError(PortalError):
    """Malformed input: bad enum value, text too long, rating out of range."""

    kind = "validation_error"
    status = 400


class ConflictError(PortalError):
    """Uniqueness violated: mood already logged that day, session already open."""

    kind = "conflict"
    status = 409


class NotFoundError(PortalError):
    """Record absent or not owned by the caller."""

    kind = "not_found"
    status = 404


class StateError(PortalError):
    """Operation not allowed in the record's current state."""

    kind = "invalid_state"
    status = 409


class AuthError(PortalError):
    kind = "unauthorized"
    status = 401


class ForbiddenError(PortalError):
    kind = "forbidden"
    status = 403
