"""An event store kept in a MySQL database."""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterator, Sequence
from typing import Any
from urllib.parse import unquote, urlsplit

import pymysql

from eventstore.errors import DuplicateEventError, EventStoreError
from eventstore.nostr import Event, Filter
from eventstore.store import Store

QUERY_LIMIT = 100
QUERY_IDS_LIMIT = 500
QUERY_AUTHORS_LIMIT = 500
QUERY_KINDS_LIMIT = 10
QUERY_TAGS_LIMIT = 10

KIND_PROFILE_METADATA = 0
KIND_RECOMMEND_SERVER = 2
KIND_CONTACT_LIST = 3

_DDLS = (
    """CREATE TABLE IF NOT EXISTS event (
       id char(64) NOT NULL primary key,
       pubkey char(64) NOT NULL,
       created_at int NOT NULL,
       kind integer NOT NULL,
       tags json NOT NULL,
       content text NOT NULL,
       sig text NOT NULL);""",
    "CREATE INDEX pubkeyprefix ON event (pubkey);",
    "CREATE INDEX timeidx ON event (created_at DESC);",
    "CREATE INDEX kindidx ON event (kind);",
    "CREATE INDEX kindtimeidx ON event(kind,created_at DESC);",
)

_INSERT = """INSERT INTO event (
	id, pubkey, created_at, kind, tags, content, sig)
	VALUES (?, ?, ?, ?, ?, ?, ?)"""

_SELECT_EVENTS = """SELECT
          id, pubkey, created_at, kind, tags, content, sig
        FROM event WHERE """

_SELECT_COUNT = """SELECT
          COUNT(*)
        FROM event WHERE """

_ORDER_AND_LIMIT = " ORDER BY created_at DESC LIMIT ?"

_PARAMSTYLES = frozenset({"format", "pyformat", "qmark"})
_DUPLICATE_KEY_NAME = 1061

_GO_DSN = re.compile(
    r"^(?:(?P<user>[^:@/]*)(?::(?P<password>[^@]*))?@)?"
    r"(?:(?P<net>[a-z]+)\((?P<addr>[^)]*)\))?"
    r"/(?P<database>[^?]*)(?:\?.*)?$"
)


def _parse_dsn(database_url: str) -> dict[str, Any]:
    """Turn a ``mysql://`` URL or a ``user:pass@tcp(host:port)/db`` DSN into connect arguments."""
    args: dict[str, Any] = {}
    if database_url.startswith("mysql://"):
        parts = urlsplit(database_url)
        args["host"] = parts.hostname or "localhost"
        if parts.port:
            args["port"] = parts.port
        if parts.username:
            args["user"] = unquote(parts.username)
        if parts.password:
            args["password"] = unquote(parts.password)
        database = parts.path.lstrip("/")
        if database:
            args["database"] = unquote(database)
        return args

    match = _GO_DSN.match(database_url)
    if match is None:
        raise ValueError(f"invalid MySQL address '{database_url}'")
    if match["user"]:
        args["user"] = match["user"]
    if match["password"]:
        args["password"] = match["password"]
    address = match["addr"]
    if match["net"] == "unix" and address:
        args["unix_socket"] = address
    elif address:
        host, _, port = address.partition(":")
        args["host"] = host or "localhost"
        if port:
            args["port"] = int(port)
    if match["database"]:
        args["database"] = match["database"]
    return args


def _connect(database_url: str) -> Any:
    return pymysql.connect(**_parse_dsn(database_url))


def _placeholders(count: int) -> str:
    return ",".join("?" * count)


def _like_pattern(text: str) -> str:
    return "%" + text.replace("%", "\\%") + "%"


def _to_driver(query: str, params: Sequence[Any], paramstyle: str) -> tuple[str, list[Any]]:
    if paramstyle == "qmark":
        return query, list(params)
    return query.replace("%", "%%").replace("?", "%s"), list(params)


def _is_duplicate_key_name(exc: Exception) -> bool:
    if exc.args and exc.args[0] == _DUPLICATE_KEY_NAME:
        return True
    return str(exc).startswith("Error 1061: Duplicate key name")


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


def delete_before_save_sql(event: Event) -> tuple[str, list[Any]] | None:
    """Return the statement removing what ``event`` replaces, or None if it replaces nothing."""
    kind = event.kind
    if kind in (KIND_PROFILE_METADATA, KIND_CONTACT_LIST) or 10000 <= kind < 20000:
        return "DELETE FROM event WHERE pubkey = ? AND kind = ?", [event.pubkey, kind]
    if kind == KIND_RECOMMEND_SERVER:
        return (
            "DELETE FROM event WHERE pubkey = ? AND kind = ? AND content = ?",
            [event.pubkey, kind, event.content],
        )
    if 30000 <= kind < 40000:
        d_tag = event.first_tag(["d"])
        if d_tag is not None:
            value = d_tag[1] if len(d_tag) > 1 else ""
            return (
                "DELETE FROM event WHERE pubkey = ? AND kind = ? AND tags LIKE ?",
                [event.pubkey, kind, value],
            )
    return None


def save_event_sql(event: Event) -> tuple[str, list[Any]]:
    """Return the insert statement and its parameters for ``event``."""
    tags_json = json.dumps(
        [list(tag) for tag in event.tags], ensure_ascii=False, separators=(",", ":")
    )
    params = [
        event.id,
        event.pubkey,
        event.created_at,
        event.kind,
        tags_json,
        event.content,
        event.sig,
    ]
    return _INSERT, params


class MySQLBackend(Store):
    """Stores events in MySQL.

    ``connect`` opens a DB-API connection from ``database_url`` (PyMySQL by
    default); ``paramstyle`` is that driver's parameter style.
    """

    def __init__(
        self,
        database_url: str = "",
        query_limit: int = 0,
        query_ids_limit: int = 0,
        query_authors_limit: int = 0,
        query_kinds_limit: int = 0,
        query_tags_limit: int = 0,
        connect: Callable[[str], Any] | None = None,
        paramstyle: str = "format",
    ) -> None:
        if paramstyle not in _PARAMSTYLES:
            raise ValueError(f"unsupported parameter style '{paramstyle}'")
        self.database_url = database_url
        self.query_limit = query_limit
        self.query_ids_limit = query_ids_limit
        self.query_authors_limit = query_authors_limit
        self.query_kinds_limit = query_kinds_limit
        self.query_tags_limit = query_tags_limit
        self.connect = connect
        self.paramstyle = paramstyle
        self._db: Any = None

    @property
    def _conn(self) -> Any:
        if self._db is None:
            raise EventStoreError("store is not initialised")
        return self._db

    def _execute(self, sql: str, params: Sequence[Any] | None = None) -> Any:
        cursor = self._conn.cursor()
        if params is None:
            cursor.execute(sql)
        else:
            cursor.execute(*_to_driver(sql, params, self.paramstyle))
        return cursor

    def init(self) -> None:
        connect = self.connect or _connect
        try:
            self._db = connect(self.database_url)
        except Exception as exc:
            raise EventStoreError(f"failed to connect: {exc}") from exc

        for ddl in _DDLS:
            try:
                self._execute(ddl)
            except Exception as exc:
                if not _is_duplicate_key_name(exc):
                    raise EventStoreError(f"failed to create schema: {exc}") from exc
        self._db.commit()

        if self.query_limit == 0:
            self.query_limit = QUERY_LIMIT
        if self.query_ids_limit == 0:
            self.query_ids_limit = QUERY_IDS_LIMIT
        if self.query_authors_limit == 0:
            self.query_authors_limit = QUERY_AUTHORS_LIMIT
        if self.query_kinds_limit == 0:
            self.query_kinds_limit = QUERY_KINDS_LIMIT
        if self.query_tags_limit == 0:
            self.query_tags_limit = QUERY_TAGS_LIMIT

    def close(self) -> None:
        if self._db is not None:
            self._db.close()
            self._db = None

    def query_events(self, filter: Filter) -> Iterator[Event]:
        sql, params = self.query_events_sql(filter, False)
        if not sql:
            return iter(())
        try:
            rows = self._execute(sql, params).fetchall()
        except EventStoreError:
            raise
        except Exception as exc:
            raise EventStoreError(f"failed to fetch events using query {sql!r}: {exc}") from exc
        return self._events_from(rows)

    @staticmethod
    def _events_from(rows: Sequence[Sequence[Any]]) -> Iterator[Event]:
        for row in rows:
            try:
                event = _row_to_event(row)
            except (ValueError, TypeError):
                return
            yield event

    def count_events(self, filter: Filter) -> int:
        sql, params = self.query_events_sql(filter, True)
        if not sql:
            return 0
        try:
            row = self._execute(sql, params).fetchone()
        except EventStoreError:
            raise
        except Exception as exc:
            raise EventStoreError(f"failed to fetch events using query {sql!r}: {exc}") from exc
        return 0 if row is None else int(row[0])

    def save_event(self, event: Event) -> None:
        deletion = delete_before_save_sql(event)
        if deletion is not None:
            try:
                self._execute(*deletion)
            except Exception:
                pass

        sql, params = save_event_sql(event)
        try:
            cursor = self._execute(sql, params)
            self._conn.commit()
        except EventStoreError:
            raise
        except Exception as exc:
            raise EventStoreError(str(exc)) from exc
        if cursor.rowcount == 0:
            raise DuplicateEventError()

    def delete_event(self, event: Event) -> None:
        try:
            self._execute("DELETE FROM event WHERE id = ?", [event.id])
            self._conn.commit()
        except EventStoreError:
            raise
        except Exception as exc:
            raise EventStoreError(str(exc)) from exc

    def query_events_sql(self, filter: Filter, do_count: bool) -> tuple[str, list[Any]]:
        """Build the SQL for ``filter``; an empty query means nothing can match."""
        if filter is None:
            raise ValueError("filter cannot be null")
        rejected: tuple[str, list[Any]] = ("", [])
        conditions: list[str] = []
        params: list[Any] = []

        if filter.ids:
            if len(filter.ids) > self.query_ids_limit:
                return rejected
            params.extend(filter.ids)
            conditions.append(f" id IN ({_placeholders(len(filter.ids))})")

        if filter.authors:
            if len(filter.authors) > self.query_authors_limit:
                return rejected
            params.extend(filter.authors)
            conditions.append(f" pubkey IN ({_placeholders(len(filter.ids or []))})")

        if filter.kinds:
            if len(filter.kinds) > self.query_kinds_limit:
                return rejected
            params.extend(filter.kinds)
            conditions.append(f"kind IN ({_placeholders(len(filter.kinds))})")

        tag_query: list[str] = []
        for values in (filter.tags or {}).values():
            if not values:
                return rejected
            tag_query.extend(values)
            if len(tag_query) > self.query_tags_limit:
                return rejected

        # only tag values are matched; tag names are ignored
        for tag_value in tag_query:
            conditions.append("tags LIKE ?")
            params.append(_like_pattern(tag_value))

        if filter.since is not None:
            conditions.append("created_at >= ?")
            params.append(filter.since)
        if filter.until is not None:
            conditions.append("created_at <= ?")
            params.append(filter.until)
        if filter.search:
            conditions.append("content LIKE ?")
            params.append(_like_pattern(filter.search))

        if not conditions:
            conditions.append("true")

        if filter.limit < 1 or filter.limit > self.query_limit:
            params.append(self.query_limit)
        else:
            params.append(filter.limit)

        head = _SELECT_COUNT if do_count else _SELECT_EVENTS
        return head + " AND ".join(conditions) + _ORDER_AND_LIMIT, params