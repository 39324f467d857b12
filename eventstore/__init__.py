"""Interchangeable storage backends for Nostr events: in-memory, MySQL, LMDB and Elasticsearch."""

__version__ = "0.1.0"