"""An event store kept in an LMDB environment, with one database per index."""

from __future__ import annotations

import heapq
import itertools
import logging
import os
import re
import threading
from collections.abc import Iterator
from typing import Any, NamedTuple

import lmdb

from eventstore.errors import DuplicateEventError, EventStoreError
from eventstore.lmdb_keys import (
    INDEX_CREATED_AT,
    INDEX_ID,
    INDEX_KIND,
    INDEX_PUBKEY,
    INDEX_PUBKEY_KIND,
    INDEX_TAG,
    INDEX_TAG32,
    INDEX_TAG_ADDR,
    index_keys_for_event,
    tag_index_prefix,
)
from eventstore.nostr import Event, Filter
from eventstore.store import Store

logger = logging.getLogger(__name__)

MAX_UINT16 = 65535
MAX_UINT32 = 4294967295
DEFAULT_MAX_LIMIT = 500
DEFAULT_MAP_SIZE = 1 << 38
DB_VERSION_KEY = b"v"
CURRENT_VERSION = 4

_SETTINGS = "settings"
_RAW = "raw"
_PLAIN_DBS = (_SETTINGS, _RAW, INDEX_ID)
_MULTI_DBS = (
    INDEX_CREATED_AT,
    INDEX_KIND,
    INDEX_PUBKEY,
    INDEX_PUBKEY_KIND,
    INDEX_TAG,
    INDEX_TAG32,
    INDEX_TAG_ADDR,
)

_HEX_PAIRS = re.compile(r"(?:[0-9a-fA-F]{2})*")


class _Query(NamedTuple):
    dbi: str
    prefix: bytes
    starting_point: bytes
    skip_timestamp: bool


class _Plan(NamedTuple):
    queries: list[_Query]
    extra: Filter | None
    since: int


def _hex_prefix(text: str) -> bytes:
    """Decode the leading run of valid hex pairs of ``text``."""
    match = _HEX_PAIRS.match(text)
    return bytes.fromhex(match.group()) if match else b""


def _uint16(value: int) -> bytes:
    return (value & 0xFFFF).to_bytes(2, "big")


def _uint32(value: int) -> bytes:
    return (value & 0xFFFFFFFF).to_bytes(4, "big")


def _newest_first(event: Event) -> int:
    return -event.created_at


def _version_bytes(version: int) -> bytes:
    return _uint16(version) + b"\x00\x00"


def _prepare_queries(filter: Filter) -> _Plan:
    if filter is None:
        raise ValueError("filter cannot be null")
    extra: Filter | None = None
    parts: list[tuple[str, bytes, bool]] = []

    if filter.ids:
        for id_hex in filter.ids:
            if len(id_hex) != 64:
                raise EventStoreError(f"invalid id '{id_hex}'")
            parts.append((INDEX_ID, _hex_prefix(id_hex[:16]), True))
    elif filter.authors:
        for pubkey_hex in filter.authors:
            if len(pubkey_hex) != 64:
                raise EventStoreError(f"invalid pubkey '{pubkey_hex}'")
            pubkey = _hex_prefix(pubkey_hex[:16])
            if filter.kinds:
                parts.extend(
                    (INDEX_PUBKEY_KIND, pubkey + _uint16(kind), False) for kind in filter.kinds
                )
            else:
                parts.append((INDEX_PUBKEY, pubkey, False))
        extra = Filter(tags=filter.tags)
    elif filter.tags:
        if sum(len(values or []) for values in filter.tags.values()) == 0:
            raise EventStoreError("empty tag filters")
        extra = Filter(kinds=filter.kinds)
        for values in filter.tags.values():
            for value in values or []:
                dbi, prefix = tag_index_prefix(value)
                parts.append((dbi, prefix, False))
    elif filter.kinds:
        parts.extend((INDEX_KIND, _uint16(kind), False) for kind in filter.kinds)
    else:
        parts.append((INDEX_CREATED_AT, b"", False))

    until = MAX_UINT32
    if filter.until is not None:
        requested = filter.until & 0xFFFFFFFF
        if requested < until:
            until = requested + 1
    queries = [
        _Query(dbi, prefix, prefix + _uint32(until), skip) for dbi, prefix, skip in parts
    ]

    since = 0
    if filter.since is not None and filter.since > 0:
        since = filter.since & 0xFFFFFFFF

    return _Plan(queries, extra, since)


class LMDBBackend(Store):
    """Stores raw events in LMDB, with index databases pointing at them."""

    def __init__(
        self,
        path: str = "",
        max_limit: int = 0,
        map_size: int = DEFAULT_MAP_SIZE,
    ) -> None:
        self.path = path
        self.max_limit = max_limit
        self.map_size = map_size
        self._env: Any = None
        self._dbs: dict[str, Any] = {}
        self._last_id = 0
        self._serial_lock = threading.Lock()

    @property
    def _environment(self) -> Any:
        if self._env is None:
            raise EventStoreError("store is not initialised")
        return self._env

    def init(self) -> None:
        if self.max_limit == 0:
            self.max_limit = DEFAULT_MAX_LIMIT
        try:
            os.makedirs(self.path, exist_ok=True)
            env = lmdb.open(
                self.path,
                map_size=self.map_size,
                max_dbs=10,
                max_readers=1000,
                mode=0o644,
            )
        except (OSError, lmdb.Error) as exc:
            raise EventStoreError(f"failed to open '{self.path}': {exc}") from exc

        try:
            with env.begin(write=True) as txn:
                dbs = {name: env.open_db(name.encode(), txn=txn, create=True) for name in _PLAIN_DBS}
                for name in _MULTI_DBS:
                    dbs[name] = env.open_db(
                        name.encode(), txn=txn, create=True, dupsort=True, dupfixed=True
                    )
            self._env = env
            self._dbs = dbs

            with env.begin() as txn:
                cursor = txn.cursor(db=dbs[_RAW])
                self._last_id = int.from_bytes(cursor.key()[:4], "big") if cursor.last() else 0

            self._run_migrations()
        except Exception as exc:
            env.close()
            self._env = None
            self._dbs = {}
            if isinstance(exc, EventStoreError):
                raise
            raise EventStoreError(f"failed to set up '{self.path}': {exc}") from exc

    def _run_migrations(self) -> None:
        with self._environment.begin(write=True) as txn:
            stored = txn.get(DB_VERSION_KEY, db=self._dbs[_SETTINGS])
            version = 0 if stored is None else int.from_bytes(stored[:2], "big")

            # earlier layouts cannot be migrated in place: the data must be re-imported
            if version < CURRENT_VERSION:
                if txn.cursor(db=self._dbs[INDEX_ID]).first():
                    raise EventStoreError(
                        f"your database is at version {version}, but in order to migrate up "
                        f"to version {CURRENT_VERSION} you must manually export all the events "
                        "and then import again: run an old version of this software, export "
                        "the data, then delete the database files, run the new version, import "
                        "the data back in."
                    )
                txn.put(DB_VERSION_KEY, _version_bytes(CURRENT_VERSION), db=self._dbs[_SETTINGS])

    def close(self) -> None:
        if self._env is not None:
            self._env.close()
            self._env = None
            self._dbs = {}

    def serial(self) -> bytes:
        """Return the next raw-store key, four bytes big-endian."""
        with self._serial_lock:
            self._last_id = (self._last_id + 1) & 0xFFFFFFFF
            value = self._last_id
        return _uint32(value)

    def query_events(self, filter: Filter) -> Iterator[Event]:
        env = self._environment
        plan = _prepare_queries(filter)
        limit = self.max_limit
        if 0 < filter.limit < limit:
            limit = filter.limit
        return self._emit(env, plan, limit)

    def _emit(self, env: Any, plan: _Plan, limit: int) -> Iterator[Event]:
        with env.begin() as txn:
            streams = [self._scan(txn, query, plan.extra, plan.since) for query in plan.queries]
            merged = heapq.merge(*streams, key=_newest_first)
            yield from itertools.islice(merged, limit)

    def _scan(self, txn: Any, query: _Query, extra: Filter | None, since: int) -> Iterator[Event]:
        """Walk one index backwards from the starting point, newest first."""
        raw_db = self._dbs[_RAW]
        cursor = txn.cursor(db=self._dbs[query.dbi])
        found = cursor.prev() if cursor.set_range(query.starting_point) else cursor.last()
        while found:
            key = cursor.key()
            if not key.startswith(query.prefix):
                break
            if not query.skip_timestamp and int.from_bytes(key[-4:], "big") < since:
                break

            idx = cursor.value()
            raw = txn.get(idx, db=raw_db)
            if raw is None:
                logger.warning(
                    "lmdb: failed to get %s based on prefix %s, index key %s from raw event store",
                    idx.hex(),
                    query.prefix.hex(),
                    key.hex(),
                )
                break
            try:
                event = Event.from_json(raw)
            except ValueError as exc:
                logger.warning("lmdb: value read error (idx %s): %s", idx.hex(), exc)
                break

            if extra is None or extra.matches(event):
                yield event
            found = cursor.prev()

    def count_events(self, filter: Filter) -> int:
        env = self._environment
        plan = _prepare_queries(filter)
        with env.begin() as txn:
            return sum(
                1
                for query in plan.queries
                for _ in self._scan(txn, query, plan.extra, plan.since)
            )

    def save_event(self, event: Event) -> None:
        if event.created_at > MAX_UINT32 or event.kind > MAX_UINT16:
            raise EventStoreError("event with values out of expected boundaries")
        env = self._environment
        keys = index_keys_for_event(event)
        id_key = next(key.key for key in keys if key.dbi == INDEX_ID)
        data = event.to_json().encode("utf-8")

        with env.begin(write=True) as txn:
            if txn.get(id_key, db=self._dbs[INDEX_ID]) is not None:
                raise DuplicateEventError()
            idx = self.serial()
            txn.put(idx, data, db=self._dbs[_RAW])
            for key in keys:
                txn.put(key.key, idx, db=self._dbs[key.dbi])

    def delete_event(self, event: Event) -> None:
        env = self._environment
        if len(event.id) < 16:
            raise ValueError(f"invalid id '{event.id}'")
        id_prefix = _hex_prefix(event.id[:16])

        with env.begin(write=True) as txn:
            idx = txn.get(id_prefix, db=self._dbs[INDEX_ID])
            if idx is None:
                return

            target = event
            raw = txn.get(idx, db=self._dbs[_RAW])
            if raw is not None:
                try:
                    target = Event.from_json(raw)
                except ValueError:
                    target = event

            for key in index_keys_for_event(target):
                txn.delete(key.key, idx, db=self._dbs[key.dbi])
            txn.delete(idx, db=self._dbs[_RAW])