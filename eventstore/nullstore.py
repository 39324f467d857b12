"""A store that keeps nothing."""

from __future__ import annotations

from collections.abc import Iterator

from eventstore.nostr import Event, Filter
from eventstore.store import Store


class NullStore(Store):
    """Accepts every event and never returns any."""

    def init(self) -> None:
        pass

    def close(self) -> None:
        pass

    def query_events(self, filter: Filter) -> Iterator[Event]:
        return iter(())

    def delete_event(self, event: Event) -> None:
        pass

    def save_event(self, event: Event) -> None:
        pass