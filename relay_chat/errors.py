"""Exceptions raised by the relay chat core."""


class RelayChatError(Exception):
    """Base class for relay chat errors."""


class ValidationError(RelayChatError):
    """An inbound event is missing a required field."""

    def __init__(self, event: str, reason: str) -> None:
        super().__init__(f"{event}: {reason}")
        self.event = event
        self.reason = reason


class PersistenceError(RelayChatError):
    """The message store could not complete a read or write."""
