from typing import List, Optional


class SessionError(Exception):
    """Base class for every failure raised by the live session engine."""


class TransportConnectionError(SessionError, ConnectionError):
    """The model or transcription link could not be established or was lost."""


class NotConnected(SessionError):
    """A send was attempted without a live transport, even after a lazy connect."""


class InvalidToolResponse(SessionError):
    """A tool response had no id, or its id matches no pending tool call."""


class ProtocolParseError(SessionError):
    """An inbound frame could not be decoded. Recovered locally, never fatal."""

    def __init__(self, message: str, raw: Optional[object] = None):
        super().__init__(message)
        self.raw = raw


class DeviceError(SessionError):
    """Microphone, speaker, camera or screen could not be acquired."""


class TeardownError(SessionError):
    """One or more children failed while the session was being torn down."""

    def __init__(self, errors: List[BaseException]):
        self.errors = list(errors)
        summary = "; ".join(f"{type(e).__name__}: {e}" for e in self.errors)
        super().__init__(f"{len(self.errors)} error(s) during teardown: {summary}")
