"""Nostr events and filters, with their JSON forms."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _get_str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field '{key}' must be a string")
    return value


def _get_int(data: Mapping[str, Any], key: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    if not _is_int(value):
        raise ValueError(f"field '{key}' must be an integer")
    return value


def _get_optional_int(data: Mapping[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if not _is_int(value):
        raise ValueError(f"field '{key}' must be an integer")
    return value


def _str_list(value: Any, key: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"field '{key}' must be a list of strings")
    return list(value)


def _optional_str_list(data: Mapping[str, Any], key: str) -> list[str] | None:
    value = data.get(key)
    return None if value is None else _str_list(value, key)


def _optional_int_list(data: Mapping[str, Any], key: str) -> list[int] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, list) or not all(_is_int(v) for v in value):
        raise ValueError(f"field '{key}' must be a list of integers")
    return list(value)


def _tag_starts_with(tag: Sequence[str], prefix: Sequence[str]) -> bool:
    if len(prefix) > len(tag):
        return False
    if not prefix:
        return True
    *head, last = prefix
    return all(a == b for a, b in zip(head, tag)) and tag[len(prefix) - 1].startswith(last)


def _contains_any(tags: Sequence[Sequence[str]], name: str, values: Sequence[str]) -> bool:
    return any(len(tag) >= 2 and tag[0] == name and tag[1] in values for tag in tags)


def _parse_json_object(text: str | bytes) -> Mapping[str, Any]:
    data = json.loads(text)
    if not isinstance(data, Mapping):
        raise ValueError("expected a JSON object")
    return data


@dataclass
class Event:
    """A signed nostr event."""

    id: str = ""
    pubkey: str = ""
    created_at: int = 0
    kind: int = 0
    tags: list[list[str]] = field(default_factory=list)
    content: str = ""
    sig: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": [list(tag) for tag in self.tags],
            "content": self.content,
            "sig": self.sig,
        }

    def to_json(self) -> str:
        return _dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Event:
        if not isinstance(data, Mapping):
            raise ValueError("an event must be a JSON object")
        raw_tags = data.get("tags")
        if raw_tags is None:
            tags: list[list[str]] = []
        elif isinstance(raw_tags, list):
            tags = [_str_list(tag, "tags") for tag in raw_tags]
        else:
            raise ValueError("field 'tags' must be a list of lists of strings")
        return cls(
            id=_get_str(data, "id"),
            pubkey=_get_str(data, "pubkey"),
            created_at=_get_int(data, "created_at"),
            kind=_get_int(data, "kind"),
            tags=tags,
            content=_get_str(data, "content"),
            sig=_get_str(data, "sig"),
        )

    @classmethod
    def from_json(cls, text: str | bytes) -> Event:
        return cls.from_dict(_parse_json_object(text))

    def first_tag(self, prefix: Sequence[str]) -> list[str] | None:
        """Return the first tag that starts with ``prefix``.

        All elements but the last must be equal; the last one only has to be
        a prefix of the tag's element at that position.
        """
        return next((tag for tag in self.tags if _tag_starts_with(tag, prefix)), None)

    def __str__(self) -> str:
        return self.to_json()


@dataclass
class Filter:
    """A subscription filter; ``None`` means the field places no restriction."""

    ids: list[str] | None = None
    kinds: list[int] | None = None
    authors: list[str] | None = None
    tags: dict[str, list[str]] | None = None
    since: int | None = None
    until: int | None = None
    limit: int = 0
    search: str = ""

    def matches(self, event: Event | None) -> bool:
        if event is None:
            return False
        if self.ids is not None and event.id not in self.ids:
            return False
        if self.kinds is not None and event.kind not in self.kinds:
            return False
        if self.authors is not None and event.pubkey not in self.authors:
            return False
        for name, values in (self.tags or {}).items():
            if values is not None and not _contains_any(event.tags, name, values):
                return False
        if self.since is not None and event.created_at < self.since:
            return False
        if self.until is not None and event.created_at > self.until:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.ids is not None:
            data["ids"] = list(self.ids)
        if self.kinds is not None:
            data["kinds"] = list(self.kinds)
        if self.authors is not None:
            data["authors"] = list(self.authors)
        for name, values in (self.tags or {}).items():
            data[f"#{name}"] = list(values)
        if self.since is not None:
            data["since"] = self.since
        if self.until is not None:
            data["until"] = self.until
        if self.limit > 0:
            data["limit"] = self.limit
        if self.search:
            data["search"] = self.search
        return data

    def to_json(self) -> str:
        return _dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Filter:
        if not isinstance(data, Mapping):
            raise ValueError("a filter must be a JSON object")
        tags = {
            key[1:]: _str_list(value, key)
            for key, value in data.items()
            if isinstance(key, str) and key.startswith("#")
        }
        return cls(
            ids=_optional_str_list(data, "ids"),
            kinds=_optional_int_list(data, "kinds"),
            authors=_optional_str_list(data, "authors"),
            tags=tags or None,
            since=_get_optional_int(data, "since"),
            until=_get_optional_int(data, "until"),
            limit=_get_int(data, "limit"),
            search=_get_str(data, "search"),
        )

    @classmethod
    def from_json(cls, text: str | bytes) -> Filter:
        return cls.from_dict(_parse_json_object(text))

    def __str__(self) -> str:
        return self.to_json()