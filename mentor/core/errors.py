# mentor/core/errors.py
"""
Error taxonomy for the chat gateway.

Every failure that can reach the outbound stream is a GatewayError carrying a
short, user-facing line. The full detail (message, cause chain) stays in the
server log; user_message never contains internals.
"""

from __future__ import annotations

from typing import Optional


GENERIC_RETRY_MESSAGE = "An error occurred. Please wait a moment and try again."


class GatewayError(RuntimeError):
    """Base class for failures surfaced to the client as one line of text."""

    user_message: str = GENERIC_RETRY_MESSAGE

    def __init__(self, detail: str = "", user_message: Optional[str] = None) -> None:
        super().__init__(detail or self.__class__.__name__)
        if user_message is not None:
            self.user_message = user_message


class AuthenticationFailure(GatewayError):
    user_message = "Authentication failed. Please sign in again."


class InvalidTopic(GatewayError):
    user_message = "Invalid topic id."


class ConfigurationError(GatewayError):
    user_message = "A server configuration error occurred."


class UpstreamFailure(GatewayError):
    """Any failure of the completion/research service not covered below."""


class RateLimited(UpstreamFailure):
    """Upstream rate limit; retried internally, surfaced only when exhausted."""


class RegionRestricted(UpstreamFailure):
    user_message = (
        "The model cannot be reached from this server's region. "
        "Please retry through the server-side route."
    )


class Cancelled(GatewayError):
    """
    Client disconnected or the application aborted the turn.

    Not an error from the gateway's point of view: logged at INFO and never
    written to the stream (there is nobody left to read it).
    """

    user_message = ""
