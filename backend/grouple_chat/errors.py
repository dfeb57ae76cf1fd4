"""Exceptions raised by the Grouple chat service."""


class ChatError(Exception):
    """Base exception for chat errors."""
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ClaimsValidationError(ChatError):
    """Raised when connection claims or an inbound event payload are invalid."""
    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class ChatAuthorizationError(ChatError):
    """Raised when a user may not access a booking's chat."""
    def __init__(self, message: str = "You are not authorized to access this chat"):
        super().__init__(message, status_code=403)


class StoreError(ChatError):
    """Raised when a booking or message store operation fails."""
    def __init__(self, message: str, operation: str):
        self.operation = operation
        super().__init__(f"Store operation {operation} failed: {message}", status_code=500)
