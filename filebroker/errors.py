from __future__ import annotations

from typing import Optional


class BrokerError(Exception):
    """Base class for broker failures. ``retryable`` drives the job retry loop."""

    retryable = False

    def __init__(self, message: str, session_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.session_id = session_id

    @property
    def kind(self) -> str:
        return type(self).__name__


class TransientIOError(BrokerError):
    retryable = True


class MalformedRequest(BrokerError):
    pass


class ResponderFailure(BrokerError):
    retryable = True


class WatcherFault(BrokerError):
    pass


class MalformedResponse(BrokerError):
    pass
