"""
Error taxonomy for the messaging core.

ValidationError, NotFoundError, ForbiddenError and ServiceUnavailableError are
surfaced to callers. BackingStoreUnavailable is internal: presence and cache
paths swallow it, the message store turns it into a fallback or a
ServiceUnavailableError.
"""


class MessagingError(Exception):
    """Base class for errors surfaced by the messaging core."""

    status_code = 500

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(MessagingError):
    """Missing or malformed required fields."""

    status_code = 400


class NotFoundError(MessagingError):
    """Referenced message does not exist."""

    status_code = 404


class ForbiddenError(MessagingError):
    """Actor is not allowed to perform the mutation."""

    status_code = 403


class ServiceUnavailableError(MessagingError):
    """Durable store is down and no fallback is configured."""

    status_code = 503


class BackingStoreUnavailable(Exception):
    """A durable store or cache could not be reached."""

    def __init__(self, message: str, backend: str = "unknown"):
        super().__init__(message)
        self.backend = backend
