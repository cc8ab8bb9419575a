"""Error taxonomy shared by the retrieval and streaming layers."""

from __future__ import annotations

QUOTA_MESSAGE_AUTHENTICATED = (
    "You have reached the daily limit of requests. "
    "Please try again tomorrow or Use your own API key."
)
QUOTA_MESSAGE_ANONYMOUS = (
    "You have reached the daily limit of requests. "
    "Please sign in to enjoy more requests."
)
GENERIC_FAILURE_MESSAGE = "Something went wrong. Please try again."
ABORTED_MESSAGE = "Generation aborted"


class AgentStreamError(Exception):
    """Base class for every error raised by agent_stream."""


class ServiceError(AgentStreamError):
    """An embedding or generation backend failed or returned a malformed payload."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ParseError(AgentStreamError):
    """A stream frame or its JSON payload could not be decoded."""


class QuotaExceededError(ServiceError):
    """HTTP 429 from the generation service."""

    def __init__(self, *, is_authenticated: bool) -> None:
        self.is_authenticated = is_authenticated
        super().__init__(
            QUOTA_MESSAGE_AUTHENTICATED if is_authenticated else QUOTA_MESSAGE_ANONYMOUS,
            status_code=429,
        )

    @property
    def user_message(self) -> str:
        return str(self)


class CancellationError(AgentStreamError):
    """The caller aborted the session."""


class TransientReadError(AgentStreamError):
    """A single stream read failed; the caller may retry after a backoff."""


class AuthRequiredError(AgentStreamError):
    """The requested chat mode is only available to signed-in callers."""

    def __init__(self, mode: str) -> None:
        super().__init__(f"Mode '{mode}' requires a signed-in user")
        self.mode = mode
