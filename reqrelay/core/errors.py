"""Typed relay failures. The Request Source maps `kind` to an HTTP response."""

from __future__ import annotations


class RelayError(Exception):
    """Base for every failure the relay surfaces to its caller.

    `delivered` is the number of chunks handed to the sink before the failure;
    those chunks are not retracted.
    """

    kind = "relay_error"

    def __init__(self, message: str, *, delivered: int = 0) -> None:
        super().__init__(message)
        self.delivered = delivered


class InvalidInput(RelayError):
    """Malformed or empty request. No upstream call was made."""

    kind = "invalid_input"


class UpstreamUnavailable(RelayError):
    """The provider stream could not be opened (unreachable, auth, bad status)."""

    kind = "upstream_unavailable"


class StreamInterrupted(RelayError):
    """The provider stream failed after it was opened."""

    kind = "stream_interrupted"


class ConsumerGone(RelayError):
    """The sink rejected a chunk; forwarding stopped and upstream was closed."""

    kind = "consumer_gone"
