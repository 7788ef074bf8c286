"""Compare a feed's current listing against the items already stored for it."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from podsum.models import FeedEntry, Item

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeedDiff:
    new_entries: list[FeedEntry] = field(default_factory=list)
    relocated: list[tuple[Item, str]] = field(default_factory=list)
    vanished: list[Item] = field(default_factory=list)
    reappeared: list[Item] = field(default_factory=list)
    duplicates: list[FeedEntry] = field(default_factory=list)

    @property
    def unchanged(self) -> bool:
        return not (self.new_entries or self.relocated or self.vanished or self.reappeared)


def diff_feed(entries: Sequence[FeedEntry], known: Mapping[str, Item]) -> FeedDiff:
    """Classify `entries` against `known` (guid -> stored item of the same feed).

    Identity is the guid alone: a known guid is never new, even when its title or
    enclosure URL changed. New entries keep the listing order; duplicate guids inside
    one listing keep their first occurrence. `vanished` only lists items not already
    annotated as unpublished, so a second pass over the same listing reports nothing.
    """
    new_entries: list[FeedEntry] = []
    relocated: list[tuple[Item, str]] = []
    reappeared: list[Item] = []
    duplicates: list[FeedEntry] = []
    seen: set[str] = set()

    for entry in entries:
        if entry.guid in seen:
            duplicates.append(entry)
            logger.warning(f"Duplicate guid in feed listing, keeping first occurrence: {entry.guid!r}")
            continue
        seen.add(entry.guid)

        item = known.get(entry.guid)
        if item is None:
            new_entries.append(entry)
            continue
        if entry.source_url and entry.source_url != item.source_url:
            relocated.append((item, entry.source_url))
        if item.unpublished_at is not None:
            reappeared.append(item)

    vanished = [item for guid, item in known.items() if guid not in seen and item.unpublished_at is None]

    return FeedDiff(
        new_entries=new_entries,
        relocated=relocated,
        vanished=vanished,
        reappeared=reappeared,
        duplicates=duplicates,
    )
