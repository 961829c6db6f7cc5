from typing import Any, Dict


class ChatRequestError(ValueError):
    """Malformed client input; rejected before any external call."""

    def __init__(self, message: str, payload: Dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.payload = payload if payload is not None else {"error": message}


class CompletionError(RuntimeError):
    """The completion service failed; the request cannot produce a reply."""


class SessionStoreUnavailable(RuntimeError):
    """The session history backend could not be reached."""
