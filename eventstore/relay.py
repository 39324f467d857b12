"""A relay-style front end over any store, handling replaceable events."""

from __future__ import annotations

from collections.abc import Iterator

from eventstore.errors import DuplicateEventError, EventStoreError
from eventstore.nostr import Event, Filter
from eventstore.store import Store


def is_older(previous: Event, next_event: Event) -> bool:
    """Tell whether ``previous`` should be replaced by ``next_event``."""
    return previous.created_at < next_event.created_at or (
        previous.created_at == next_event.created_at and previous.id > next_event.id
    )


def _first(events: Iterator[Event]) -> Event | None:
    iterator = iter(events)
    try:
        return next(iterator, None)
    finally:
        close = getattr(iterator, "close", None)
        if close is not None:
            close()


class RelayWrapper:
    """Publishes and queries events the way a relay would."""

    def __init__(self, store: Store) -> None:
        self.store = store

    def publish(self, event: Event) -> None:
        """Store ``event``, replacing an older version of it where the kind asks for that.

        Ephemeral events are dropped and duplicates are silently ignored.
        """
        kind = event.kind
        if 20000 <= kind < 30000:
            return
        if kind in (0, 3) or 10000 <= kind < 20000:
            self._replace(
                Filter(authors=[event.pubkey], kinds=[kind]), event, "replacing"
            )
        elif 30000 <= kind < 40000:
            d_tag = event.first_tag(["d", ""])
            if d_tag is not None:
                self._replace(
                    Filter(authors=[event.pubkey], kinds=[kind], tags={"d": [d_tag[1]]}),
                    event,
                    "parameterized replacing",
                )

        try:
            self.store.save_event(event)
        except DuplicateEventError:
            pass
        except Exception as exc:
            raise EventStoreError(f"failed to save: {exc}") from exc

    def query_sync(self, filter: Filter) -> list[Event]:
        """Run a query and collect all its results."""
        try:
            return list(self.store.query_events(filter))
        except Exception as exc:
            raise EventStoreError(f"failed to query: {exc}") from exc

    def _replace(self, filter: Filter, event: Event, action: str) -> None:
        try:
            previous = _first(self.store.query_events(filter))
        except Exception as exc:
            raise EventStoreError(f"failed to query before {action}: {exc}") from exc
        if previous is not None and is_older(previous, event):
            try:
                self.store.delete_event(previous)
            except Exception as exc:
                raise EventStoreError(
                    f"failed to delete event for {action}: {exc}"
                ) from exc