"""Index keys under which an event is stored in the LMDB databases."""

from __future__ import annotations

import re
from typing import NamedTuple

from eventstore.nostr import Event
from eventstore.utils import get_addr_tag_elements

INDEX_CREATED_AT = "created_at"
INDEX_ID = "id"
INDEX_KIND = "kind"
INDEX_PUBKEY = "pubkey"
INDEX_PUBKEY_KIND = "pubkeyKind"
INDEX_TAG = "tag"
INDEX_TAG32 = "tag32"
INDEX_TAG_ADDR = "tagaddr"

_HEX_PAIRS = re.compile(r"(?:[0-9a-fA-F]{2})*")
_MAX_TAG_VALUE_BYTES = 100


class IndexKey(NamedTuple):
    """A key in one of the named index databases."""

    dbi: str
    key: bytes


def _decode_hex_prefix(text: str) -> bytes:
    """Decode the leading run of valid hex pairs, ignoring whatever follows."""
    match = _HEX_PAIRS.match(text)
    return bytes.fromhex(match.group()) if match else b""


def _uint16(value: int) -> bytes:
    return (value & 0xFFFF).to_bytes(2, "big")


def _uint32(value: int) -> bytes:
    return (value & 0xFFFFFFFF).to_bytes(4, "big")


def _hex_prefix8(value: str, what: str) -> bytes:
    if len(value) < 16:
        raise ValueError(f"invalid {what} '{value}'")
    return _decode_hex_prefix(value[:16])


def tag_index_prefix(tag_value: str) -> tuple[str, bytes]:
    """Return the index database for a tag value and the key prefix before the timestamp."""
    elements = get_addr_tag_elements(tag_value)
    if elements is not None:
        # the kind's low byte is overwritten by the start of the pubkey
        prefix = bytes([0, (elements.kind >> 8) & 0xFF]) + elements.pubkey[:8]
        return INDEX_TAG_ADDR, prefix + elements.d.encode("utf-8")

    decoded = _decode_hex_prefix(tag_value)
    if len(decoded) == 32:
        return INDEX_TAG32, decoded[:8]

    return INDEX_TAG, tag_value.encode("utf-8")


def _indexable(tag: list[str]) -> bool:
    if len(tag) < 2 or len(tag[0].encode("utf-8")) != 1:
        return False
    size = len(tag[1].encode("utf-8"))
    return 0 < size <= _MAX_TAG_VALUE_BYTES


def index_keys_for_event(event: Event) -> list[IndexKey]:
    """Compute every index key under which ``event`` is stored."""
    id_prefix = _hex_prefix8(event.id, "id")
    pubkey_prefix = _hex_prefix8(event.pubkey, "pubkey")
    created_at = _uint32(event.created_at)
    kind = _uint16(event.kind)

    keys = [
        IndexKey(INDEX_ID, id_prefix),
        IndexKey(INDEX_PUBKEY, pubkey_prefix + created_at),
        IndexKey(INDEX_KIND, kind + created_at),
        IndexKey(INDEX_PUBKEY_KIND, pubkey_prefix + kind + created_at),
    ]

    seen: set[str] = set()
    for tag in event.tags:
        if len(tag) < 2:
            continue
        value = tag[1]
        duplicate = value in seen
        seen.add(value)
        if duplicate or not _indexable(tag):
            continue
        dbi, prefix = tag_index_prefix(value)
        keys.append(IndexKey(dbi, prefix + created_at))

    keys.append(IndexKey(INDEX_CREATED_AT, created_at))
    return keys