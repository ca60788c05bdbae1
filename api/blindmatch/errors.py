class GenerationError(Exception):
    """Raised when the text generator fails or returns something unusable."""

    def __init__(self, message: str, raw: str | None = None):
        super().__init__(message)
        self.raw = raw


class ContextValidationError(GenerationError):
    """Raised when a context delta does not fit the conversation context shape."""


class NotificationError(Exception):
    """Raised when an outbound message cannot be handed to the SMS provider."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class StoreUnavailableError(Exception):
    """Raised when the identity store cannot be reached. Always fatal for the caller."""
