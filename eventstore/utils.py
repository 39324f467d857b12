"""Helpers shared by the store backends."""

from __future__ import annotations

import re
from typing import NamedTuple

_HEX64 = re.compile(r"[0-9a-fA-F]{64}")
_DIGITS = re.compile(r"[0-9]+")
_MAX_KIND = 65535


class AddrTagElements(NamedTuple):
    """The parts of an ``a`` tag value: ``<kind>:<pubkey>:<d>``."""

    kind: int
    pubkey: bytes
    d: str


def get_addr_tag_elements(tag_value: str) -> AddrTagElements | None:
    """Split an address tag value, or return None if it is not one."""
    parts = tag_value.split(":")
    if len(parts) != 3:
        return None
    kind_text, pubkey_hex, d = parts
    if not _HEX64.fullmatch(pubkey_hex) or not _DIGITS.fullmatch(kind_text):
        return None
    kind = int(kind_text)
    if kind > _MAX_KIND:
        return None
    return AddrTagElements(kind, bytes.fromhex(pubkey_hex), d)