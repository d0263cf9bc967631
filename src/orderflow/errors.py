"""Error taxonomy for operations that are not plain input validation.

Malformed or out-of-policy input raises Protean's ``ValidationError`` and
missing records raise ``ObjectNotFoundError``. The classes below cover the
remaining failure modes and carry the HTTP status the API maps them to.
"""


class OrderflowError(Exception):
    status_code = 500

    def __init__(self, messages):
        if isinstance(messages, str):
            messages = {"_entity": [messages]}
        self.messages = messages
        super().__init__(messages)


class ConflictError(OrderflowError):
    """State-transition precondition violated: stale version or wrong status."""

    status_code = 409


class AuthError(OrderflowError):
    """Signature or credential verification failed."""

    status_code = 401


class RateLimitError(OrderflowError):
    """Attempts exhausted; cleared only by regenerating the resource."""

    status_code = 429


class ExternalServiceError(OrderflowError):
    """Payment gateway or courier unreachable or returned an error."""

    status_code = 502
