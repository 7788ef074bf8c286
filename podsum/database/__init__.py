"""Persistence layer (SQLite item store)."""

from .item_store import ItemStore  # noqa: F401
