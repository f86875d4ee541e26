from __future__ import annotations

from typing import Optional


class MihomoTuiError(Exception):
    """Base class for all errors raised by mihomo-tui."""


class ConfigError(MihomoTuiError):
    """Config file missing, unreadable or invalid."""


class ConnectError(MihomoTuiError):
    """
    Initial handshake with the control API failed.

    Fatal: startup aborts and the process exits non-zero.
    """

    def __init__(self, url: str, reason: str):
        super().__init__(f"cannot reach mihomo API at {url}: {reason}")
        self.url = url
        self.reason = reason


class ApiError(MihomoTuiError):
    """
    A single request/command against the control API failed.

    Non-fatal; the dispatcher reports it through an Error action.
    """

    def __init__(self, operation: str, message: str, status: Optional[int] = None):
        text = f"{operation} failed"
        if status is not None:
            text += f" (HTTP {status})"
        if message:
            text += f": {message}"
        super().__init__(text)
        self.operation = operation
        self.status = status
        self.message = message


class StreamError(MihomoTuiError):
    """
    A running stream (connections/logs/traffic/memory) terminated.

    Streams yield this as their last item instead of raising it.
    """

    def __init__(self, stream: str, message: str):
        super().__init__(f"{stream} stream closed: {message}")
        self.stream = stream
        self.message = message


class ConsistencyWarning(UserWarning):
    """Optimistic state was reconciled to a different server value."""
