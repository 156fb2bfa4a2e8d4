"""Error taxonomy for huddle.

Every error raised by the core carries a short machine-readable ``code``
and the HTTP status it maps to on the REST surface. Over the WebSocket the
same code is sent back to the submitting connection in a ``message_error``
event; other room members never see a failed submission.
"""


class ChatError(Exception):
    """Base class for errors reported back to a client."""

    code = "error"
    status_code = 500

    def __init__(self, message: str = "Internal error"):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class ValidationError(ChatError):
    """Missing room or body, oversized text, malformed event."""

    code = "invalid"
    status_code = 400

    def __init__(self, message: str = "Invalid request"):
        super().__init__(message)


class NotFoundError(ChatError):
    """React/edit/delete on a message that does not exist."""

    code = "not_found"
    status_code = 404

    def __init__(self, message: str = "Not found"):
        super().__init__(message)


class StoreUnavailable(ChatError):
    """The message store failed; nothing was persisted or broadcast."""

    code = "store_unavailable"
    status_code = 503

    def __init__(self, message: str = "Message store unavailable"):
        super().__init__(message)


class TransportError(ChatError):
    """Delivery to a single connection failed."""

    code = "transport"
    status_code = 502

    def __init__(self, message: str = "Delivery failed"):
        super().__init__(message)


class AuthError(ChatError):
    """Missing or invalid credential."""

    code = "unauthenticated"
    status_code = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class PermissionDenied(AuthError):
    """Authenticated, but not allowed to touch this resource."""

    code = "forbidden"
    status_code = 403

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message)
