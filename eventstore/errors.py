"""Exceptions raised by event stores."""


class EventStoreError(Exception):
    """Base class for every error raised by an event store."""


class DuplicateEventError(EventStoreError):
    """Raised when an event that is already stored is saved again."""

    def __init__(self, message: str = "duplicate: event already exists") -> None:
        super().__init__(message)