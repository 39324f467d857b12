"""An in-memory store backed by a list sorted newest first."""

from __future__ import annotations

import bisect
from collections.abc import Iterator

from eventstore.nostr import Event, Filter
from eventstore.store import Store

_DEFAULT_MAX_LIMIT = 500


def _newest_first(event: Event) -> int:
    return -event.created_at


class SliceStore(Store):
    """Keeps events in memory, ordered by ``created_at`` descending."""

    def __init__(self, max_limit: int = 0) -> None:
        self.max_limit = max_limit
        self._events: list[Event] = []

    def init(self) -> None:
        self._events = []
        if self.max_limit == 0:
            self.max_limit = _DEFAULT_MAX_LIMIT

    def close(self) -> None:
        pass

    def _search(self, timestamp: int) -> tuple[int, bool]:
        """Find the first position whose event is not newer than ``timestamp``."""
        index = bisect.bisect_left(self._events, -timestamp, key=_newest_first)
        found = index < len(self._events) and self._events[index].created_at == timestamp
        return index, found

    def _locate(self, event: Event) -> tuple[int, bool]:
        """Where ``event`` belongs, and whether it is already stored there."""
        index, found = self._search(event.created_at)
        return index, found and self._events[index].id == event.id

    def query_events(self, filter: Filter) -> Iterator[Event]:
        limit = filter.limit
        if limit > self.max_limit or limit == 0:
            limit = self.max_limit

        start = 0 if filter.until is None else self._search(filter.until)[0]
        end = len(self._events) if filter.since is None else self._search(filter.since)[0]
        if end < start:
            return iter(())
        return self._emit(self._events[start:end], filter, limit)

    @staticmethod
    def _emit(candidates: list[Event], filter: Filter, limit: int) -> Iterator[Event]:
        count = 0
        for event in candidates:
            if count == limit:
                break
            if filter.matches(event):
                yield event
                count += 1

    def count_events(self, filter: Filter) -> int:
        return sum(1 for event in self._events if filter.matches(event))

    def save_event(self, event: Event) -> None:
        index, present = self._locate(event)
        if not present:
            self._events.insert(index, event)

    def delete_event(self, event: Event) -> None:
        index, present = self._locate(event)
        if present:
            del self._events[index]