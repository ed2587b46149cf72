"""
Exceptions raised while coordinating a chat turn.

The HTTP layer maps every ``ChatServiceError`` subclass to a JSON body of the
form ``{"error": "..."}``; see ``advisor.main``.
"""

from __future__ import annotations

GENERIC_RETRY_MESSAGE = "Failed to get a response from Tina. Please try again."
HISTORY_RESET_MESSAGE = (
    "There was an internal chat history synchronization issue. "
    "Please refresh the page and try again."
)


class ChatServiceError(Exception):
    """Base class for every failure surfaced to API clients."""

    status_code = 500
    client_message = GENERIC_RETRY_MESSAGE


class ValidationError(ChatServiceError):
    """Raised when the inbound request is missing a session id or utterance."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.client_message = message


class UpstreamError(ChatServiceError):
    """
    Raised when the model call fails for any reason.

    No turn is committed when this is raised, so the client may retry the
    identical request.
    """


class UpstreamProtocolError(UpstreamError):
    """
    Raised when the outgoing history breaks the user/assistant alternation the
    model API requires.

    Either the coordinator built a bad history or the stored session is
    corrupt; the client is told to start over.
    """

    client_message = HISTORY_RESET_MESSAGE


class UpstreamTransientError(UpstreamError):
    """Raised on network failures, timeouts, rate limiting and 5xx replies."""



class SessionStoreError(ChatServiceError):
    """Raised when the session store cannot load or save a transcript."""
