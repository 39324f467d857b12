"""The interface every event store implements, and the shared base of the SQL stores."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator, Sequence
from types import TracebackType
from typing import Any

from eventstore.errors import DuplicateEventError, EventStoreError
from eventstore.nostr import Event, Filter

QUERY_LIMIT = 100
QUERY_IDS_LIMIT = 500
QUERY_AUTHORS_LIMIT = 500
QUERY_KINDS_LIMIT = 10
QUERY_TAGS_LIMIT = 10

_DEFAULT_LIMITS = (
    ("query_limit", QUERY_LIMIT),
    ("query_ids_limit", QUERY_IDS_LIMIT),
    ("query_authors_limit", QUERY_AUTHORS_LIMIT),
    ("query_kinds_limit", QUERY_KINDS_LIMIT),
    ("query_tags_limit", QUERY_TAGS_LIMIT),
)

_SELECT_EVENTS = """SELECT
          id, pubkey, created_at, kind, tags, content, sig
        FROM event WHERE """

_SELECT_COUNT = """SELECT
          COUNT(*)
        FROM event WHERE """

_ORDER_AND_LIMIT = " ORDER BY created_at DESC LIMIT ?"


class Store(ABC):
    """A persistence layer for nostr events handled by a relay.

    Used as a context manager, a store is initialised on entry and closed
    on exit.
    """

    @abstractmethod
    def init(self) -> None:
        """Set up the store's resources; called before any other method."""

    @abstractmethod
    def close(self) -> None:
        """Release the store's resources."""

    @abstractmethod
    def query_events(self, filter: Filter) -> Iterator[Event]:
        """Return an iterator over the events matching ``filter``."""

    @abstractmethod
    def delete_event(self, event: Event) -> None:
        """Remove ``event`` from the store, if it is there."""

    @abstractmethod
    def save_event(self, event: Event) -> None:
        """Store ``event``."""

    def __enter__(self) -> Store:
        self.init()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


def _placeholders(count: int) -> str:
    return ",".join("?" * count)


def _like_pattern(text: str) -> str:
    return "%" + text.replace("%", "\\%") + "%"


def _event_params(event: Event) -> list[Any]:
    """The column values of ``event``, in table order, with tags as JSON."""
    tags_json = json.dumps(
        [list(tag) for tag in event.tags], ensure_ascii=False, separators=(",", ":")
    )
    return [
        event.id,
        event.pubkey,
        event.created_at,
        event.kind,
        tags_json,
        event.content,
        event.sig,
    ]


def _row_to_event(row: Sequence[Any]) -> Event:
    event_id, pubkey, created_at, kind, tags, content, sig = row
    if isinstance(tags, (bytes, bytearray, memoryview)):
        tags = bytes(tags).decode("utf-8")
    if isinstance(tags, str):
        tags = json.loads(tags)
    return Event.from_dict(
        {
            "id": event_id,
            "pubkey": pubkey,
            "created_at": int(created_at),
            "kind": int(kind),
            "tags": tags,
            "content": content,
            "sig": sig,
        }
    )


def _events_from(rows: Iterable[Sequence[Any]]) -> Iterator[Event]:
    """Yield events from rows, stopping at the first row that cannot be read."""
    for row in rows:
        try:
            event = _row_to_event(row)
        except (ValueError, TypeError):
            return
        yield event


class _SQLStore(Store):
    """Shared behaviour of the stores that keep events in one SQL table."""

    _insert_sql = ""
    _delete_sql = ""

    def __init__(
        self,
        database_url: str = "",
        query_limit: int = 0,
        query_ids_limit: int = 0,
        query_authors_limit: int = 0,
        query_kinds_limit: int = 0,
        query_tags_limit: int = 0,
    ) -> None:
        self.database_url = database_url
        self.query_limit = query_limit
        self.query_ids_limit = query_ids_limit
        self.query_authors_limit = query_authors_limit
        self.query_kinds_limit = query_kinds_limit
        self.query_tags_limit = query_tags_limit
        self._db: Any = None

    @property
    def _conn(self) -> Any:
        if self._db is None:
            raise EventStoreError("store is not initialised")
        return self._db

    @abstractmethod
    def _execute(self, sql: str, params: Sequence[Any]) -> Any:
        """Run a read statement and return its cursor."""

    @abstractmethod
    def _write(self, sql: str, params: Sequence[Any]) -> Any:
        """Run a statement that changes data, commit it and return its cursor."""

    @abstractmethod
    def query_events_sql(self, filter: Filter, do_count: bool) -> tuple[str, list[Any]]:
        """Build the SQL for ``filter``; an empty query means nothing can match."""

    def _apply_default_limits(self) -> None:
        for name, default in _DEFAULT_LIMITS:
            if getattr(self, name) == 0:
                setattr(self, name, default)

    def _fetch(self, sql: str, params: Sequence[Any]) -> Any:
        try:
            return self._execute(sql, params)
        except EventStoreError:
            raise
        except Exception as exc:
            raise EventStoreError(f"failed to fetch events using query {sql!r}: {exc}") from exc

    def close(self) -> None:
        if self._db is not None:
            self._db.close()
            self._db = None

    def query_events(self, filter: Filter) -> Iterator[Event]:
        sql, params = self.query_events_sql(filter, False)
        if not sql:
            return iter(())
        return _events_from(self._fetch(sql, params).fetchall())

    def count_events(self, filter: Filter) -> int:
        sql, params = self.query_events_sql(filter, True)
        if not sql:
            return 0
        row = self._fetch(sql, params).fetchone()
        return 0 if row is None else int(row[0])

    def save_event(self, event: Event) -> None:
        if self._write(self._insert_sql, _event_params(event)).rowcount == 0:
            raise DuplicateEventError()

    def delete_event(self, event: Event) -> None:
        self._write(self._delete_sql, [event.id])

    @staticmethod
    def _add_membership(
        conditions: list[str],
        params: list[Any],
        column: str,
        values: Sequence[Any],
        limit: int,
    ) -> bool:
        """Add ``column IN (...)`` for ``values``; False when there are too many."""
        if not values:
            return True
        if len(values) > limit:
            return False
        params.extend(values)
        conditions.append(f"{column} IN ({_placeholders(len(values))})")
        return True

    @staticmethod
    def _tag_values(filter: Filter, limit: int) -> list[str] | None:
        """All tag values of ``filter``, or None when the tag filters are unusable."""
        values: list[str] = []
        for tag_values in (filter.tags or {}).values():
            if not tag_values:
                return None
            values.extend(tag_values)
            if len(values) > limit:
                return None
        return values

    def _finish_sql(
        self,
        filter: Filter,
        conditions: list[str],
        params: list[Any],
        do_count: bool,
        search_condition: str,
    ) -> tuple[str, list[Any]]:
        if filter.since is not None:
            conditions.append("created_at >= ?")
            params.append(filter.since)
        if filter.until is not None:
            conditions.append("created_at <= ?")
            params.append(filter.until)
        if filter.search:
            conditions.append(search_condition)
            params.append(_like_pattern(filter.search))

        if not conditions:
            conditions.append("true")

        if filter.limit < 1 or filter.limit > self.query_limit:
            params.append(self.query_limit)
        else:
            params.append(filter.limit)

        head = _SELECT_COUNT if do_count else _SELECT_EVENTS
        return head + " AND ".join(conditions) + _ORDER_AND_LIMIT, params