"""Exceptions raised by the relay core."""
from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """Base class for relay errors."""


class UpstreamError(RelayError):
    def __init__(self, channel_id: str, message: str):
        super().__init__(message)
        self.channel_id = channel_id


class UpstreamConnectError(UpstreamError):
    """The upstream stream could not be opened (network error or non-2xx)."""

    def __init__(self, channel_id: str, reason: str, status_code: Optional[int] = None):
        if status_code is not None:
            message = f"Upstream error: {status_code} {reason}".rstrip()
        else:
            message = f"Upstream error: {reason}"
        super().__init__(channel_id, message)
        self.status_code = status_code
        self.reason = reason


class UpstreamStreamError(UpstreamError):
    """The upstream stream broke after it was established."""


class UpstreamCancelled(UpstreamError):
    """The stream was aborted on purpose by ``UpstreamStream.cancel``."""

    def __init__(self, channel_id: str):
        super().__init__(channel_id, f"Upstream for round {channel_id} aborted")


class SinkClosedError(RelayError):
    """A frame could not be written to a client sink."""


class ChannelClosedError(RelayError):
    """The session closed before the subscriber could be attached."""

    def __init__(self, channel_id: str):
        super().__init__(f"Round {channel_id} already closed")
        self.channel_id = channel_id
