"""An event store kept in an Elasticsearch index, reached over its HTTP API."""

from __future__ import annotations

import json
import os
from collections.abc import Iterator, Sequence
from typing import Any

import requests

from eventstore.errors import EventStoreError
from eventstore.nostr import Event, Filter
from eventstore.store import Store

DEFAULT_INDEX = "events"
DEFAULT_ADDRESS = "http://localhost:9200"
SEARCH_LIMIT = 1000
KIND_ENCRYPTED_DIRECT_MESSAGE = 4

INDEX_MAPPING: dict[str, Any] = {
    "settings": {
        "number_of_shards": 1,
        "number_of_replicas": 0,
    },
    "mappings": {
        "dynamic": False,
        "properties": {
            "event": {
                "dynamic": False,
                "properties": {
                    "id": {"type": "keyword"},
                    "pubkey": {"type": "keyword"},
                    "kind": {"type": "integer"},
                    "tags": {"type": "keyword"},
                    "created_at": {"type": "date"},
                },
            },
            "content_search": {"type": "text"},
        },
    },
}


def _bool_query(must: list[Any] | None = None, should: list[Any] | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {}
    if must:
        body["must"] = must
    if should:
        body["should"] = should
    return {"bool": body}


def _prefix_or_term(field_name: str, values: Sequence[str]) -> dict[str, Any]:
    should = [
        {"prefix": {field_name: {"value": value}}}
        if len(value) < 64
        else {"term": {field_name: {"value": value}}}
        for value in values
    ]
    return _bool_query(should=should)


def build_dsl(filter: Filter) -> dict[str, Any]:
    """Translate ``filter`` into an Elasticsearch query body."""
    if filter is None:
        raise ValueError("filter cannot be null")
    must: list[Any] = []

    if filter.ids:
        must.append(_prefix_or_term("event.id", filter.ids))
    if filter.authors:
        must.append(_prefix_or_term("event.pubkey", filter.authors))
    if filter.kinds:
        must.append({"terms": {"event.kind": list(filter.kinds)}})
    if filter.tags:
        should = [
            {"terms": {"event.tags": [*(values or []), name]}}
            for name, values in filter.tags.items()
        ]
        must.append(_bool_query(should=should))
    if filter.since is not None:
        must.append({"range": {"event.created_at": {"gte": filter.since}}})
    if filter.until is not None:
        must.append({"range": {"event.created_at": {"lte": filter.until}}})
    if filter.search:
        must.append({"match": {"content_search": {"query": filter.search}}})

    return {"query": _bool_query(must=must)}


def is_get_by_id(filter: Filter) -> bool:
    """Tell whether ``filter`` asks only for full event ids."""
    return (
        bool(filter.ids)
        and not filter.authors
        and not filter.kinds
        and not filter.tags
        and not filter.search
        and filter.since is None
        and filter.until is None
        and all(len(event_id) == 64 for event_id in filter.ids or [])
    )


def _indexed_event(event: Event) -> dict[str, Any]:
    content = "" if event.kind == KIND_ENCRYPTED_DIRECT_MESSAGE else event.content
    return {"event": event.to_dict(), "content_search": content}


class ElasticsearchStorage(Store):
    """Stores events as documents of one Elasticsearch index.

    ``url`` may hold several comma-separated node addresses; they are tried
    in order when a node cannot be reached.
    """

    def __init__(self, url: str = "", index_name: str = "", timeout: float = 30.0) -> None:
        self.url = url
        self.index_name = index_name
        self.timeout = timeout
        self._addresses: list[str] = []
        self._session: requests.Session | None = None

    def init(self) -> None:
        if not self.index_name:
            self.index_name = DEFAULT_INDEX
        if self.url:
            addresses = [part.strip() for part in self.url.split(",") if part.strip()]
        else:
            addresses = [os.environ.get("ELASTICSEARCH_URL", DEFAULT_ADDRESS)]
        self._addresses = [address.rstrip("/") for address in addresses]
        self._session = requests.Session()

        response = self._request("PUT", f"/{self.index_name}", json=INDEX_MAPPING)
        if not response.ok and "resource_already_exists_exception" not in response.text:
            self.close()
            raise EventStoreError(response.text)

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        if self._session is None:
            raise EventStoreError("store is not initialised")
        last_error: Exception | None = None
        for address in self._addresses:
            try:
                return self._session.request(
                    method, address + path, timeout=self.timeout, **kwargs
                )
            except requests.ConnectionError as exc:
                last_error = exc
        raise EventStoreError(f"error getting response: {last_error}")

    def _bulk(self, action: str, event_id: str, document: dict[str, Any] | None) -> dict[str, Any]:
        lines = [json.dumps({action: {"_index": self.index_name, "_id": event_id}})]
        if document is not None:
            lines.append(json.dumps(document, ensure_ascii=False, separators=(",", ":")))
        body = ("\n".join(lines) + "\n").encode("utf-8")
        response = self._request(
            "POST",
            "/_bulk",
            data=body,
            headers={"Content-Type": "application/x-ndjson"},
        )
        if not response.ok:
            raise EventStoreError(f"ERROR: {response.text}")
        try:
            items = response.json().get("items") or []
            return next(iter(items[0].values()))
        except (ValueError, IndexError, StopIteration, AttributeError) as exc:
            raise EventStoreError(f"ERROR: unexpected bulk response: {response.text}") from exc

    def save_event(self, event: Event) -> None:
        result = self._bulk("index", event.id, _indexed_event(event))
        if result.get("status", 0) > 201:
            error = result.get("error") or {}
            raise EventStoreError(f"ERROR: {error.get('type', '')}: {error.get('reason', '')}")

    def delete_event(self, event: Event) -> None:
        result = self._bulk("delete", event.id, None)
        status = result.get("status", 0)
        # a missing document is already deleted
        if status > 201 and status != 404:
            raise EventStoreError(f"ERROR: {json.dumps(result)}")

    def _get_by_id(self, filter: Filter) -> list[Event]:
        response = self._request(
            "POST", f"/{self.index_name}/_mget", json={"ids": list(filter.ids or [])}
        )
        if not response.ok:
            raise EventStoreError(f"error getting by id: {response.text}")
        try:
            docs = response.json().get("docs") or []
            return [Event.from_dict(doc["_source"]["event"]) for doc in docs if doc.get("found")]
        except (ValueError, KeyError, TypeError) as exc:
            raise EventStoreError(f"error getting by id: {exc}") from exc

    def query_events(self, filter: Filter) -> Iterator[Event]:
        if is_get_by_id(filter):
            return iter(self._get_by_id(filter))

        dsl = build_dsl(filter)
        limit = SEARCH_LIMIT
        if 0 < filter.limit < limit:
            limit = filter.limit

        response = self._request(
            "POST",
            f"/{self.index_name}/_search",
            params={"size": limit, "sort": "event.created_at:desc"},
            json=dsl,
        )
        if not response.ok:
            raise EventStoreError(response.text)
        try:
            hits = response.json()["hits"]["hits"]
            events = [Event.from_dict(hit["_source"]["event"]) for hit in hits]
        except (ValueError, KeyError, TypeError) as exc:
            raise EventStoreError(f"failed to decode search results: {exc}") from exc
        return iter(events)

    def count_events(self, filter: Filter) -> int:
        count = 0
        if is_get_by_id(filter):
            count += len(self._get_by_id(filter))

        response = self._request(
            "POST", f"/{self.index_name}/_count", json=build_dsl(filter)
        )
        if not response.ok:
            raise EventStoreError(response.text)
        try:
            return int(response.json()["count"]) + count
        except (ValueError, KeyError, TypeError) as exc:
            raise EventStoreError(f"failed to decode count result: {exc}") from exc