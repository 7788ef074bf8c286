"""Domain types: feeds, items, statuses, failures and summaries."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from podsum.errors import ErrorCategory


class ItemStatus(str, Enum):
    NEW = "new"
    ACQUIRED = "acquired"
    DERIVED = "derived"
    SUMMARIZED = "summarized"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self) if self in _STATUS_ORDER else -1

    def next(self) -> "ItemStatus | None":
        """The single status this one may advance to (None for terminal states)."""
        if self not in _STATUS_ORDER or self is ItemStatus.SUMMARIZED:
            return None
        return _STATUS_ORDER[self.rank + 1]


_STATUS_ORDER = [ItemStatus.NEW, ItemStatus.ACQUIRED, ItemStatus.DERIVED, ItemStatus.SUMMARIZED]


class Stage(str, Enum):
    """Pipeline stages; each consumes items at `input_status`."""

    ACQUIRE = "acquire"
    DERIVE = "derive"
    SUMMARIZE = "summarize"

    @property
    def input_status(self) -> ItemStatus:
        return {
            Stage.ACQUIRE: ItemStatus.NEW,
            Stage.DERIVE: ItemStatus.ACQUIRED,
            Stage.SUMMARIZE: ItemStatus.DERIVED,
        }[self]

    @property
    def output_status(self) -> ItemStatus:
        return self.input_status.next()  # type: ignore[return-value]


@dataclass(frozen=True)
class Failure:
    """Tagged failure value (which stage, what category, what kind, details)."""

    stage: Stage
    category: ErrorCategory
    kind: str
    message: str

    @property
    def retryable(self) -> bool:
        return self.category is ErrorCategory.TRANSIENT_REMOTE

    def describe(self) -> str:
        return f"{self.stage.value}: {self.kind}: {self.message}"


@dataclass(frozen=True)
class FeedEntry:
    """One item as currently published by a feed."""

    guid: str
    title: str
    source_url: str
    published_at: Optional[datetime] = None
    description: Optional[str] = None
    duration_secs: Optional[int] = None


@dataclass(frozen=True)
class FeedInfo:
    title: str
    entries: list[FeedEntry]
    website_url: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class Feed:
    id: int
    url: str
    title: str
    added_at: datetime
    website_url: Optional[str] = None
    description: Optional[str] = None
    last_checked: Optional[datetime] = None
    unsubscribed_at: Optional[datetime] = None

    @property
    def active(self) -> bool:
        return self.unsubscribed_at is None


@dataclass(frozen=True)
class Item:
    id: int
    feed_id: int
    guid: str
    title: str
    source_url: str
    status: ItemStatus
    discovered_at: datetime
    description: Optional[str] = None
    published_at: Optional[datetime] = None
    duration_secs: Optional[int] = None
    acquired_path: Optional[str] = None
    derived_path: Optional[str] = None
    failure: Optional[Failure] = None
    acquired_at: Optional[datetime] = None
    derived_at: Optional[datetime] = None
    summarized_at: Optional[datetime] = None
    unpublished_at: Optional[datetime] = None

    @property
    def key(self) -> tuple[int, str]:
        return (self.feed_id, self.guid)

    @property
    def label(self) -> str:
        return f"#{self.id} {self.title}"


class StructuredSummary(BaseModel):
    """Structured summary payload produced by every summarization path."""

    topics: list[str] = Field(description="Main topics discussed, short noun phrases.")
    overview: str = Field(description="A concise narrative summary (2-3 paragraphs).")
    key_takeaways: list[str] = Field(
        description="The most important insights and conclusions, one per entry."
    )
    notable_quotes: list[str] = Field(
        description="Direct quotes from the transcript, with approximate timestamps if available."
    )
    coverage_gaps: list[str] = Field(
        default_factory=list,
        description="Parts of the transcript that could not be summarized. Leave empty.",
    )

    def render_markdown(self) -> str:
        lines = ["## Topics", ", ".join(self.topics) if self.topics else "-", ""]
        lines += ["## Summary", self.overview.strip(), ""]
        lines.append("## Key takeaways")
        lines.extend(f"- {t}" for t in self.key_takeaways)
        lines.append("")
        lines.append("## Notable quotes")
        lines.extend(f"- {q}" for q in self.notable_quotes)
        if self.coverage_gaps:
            lines.append("")
            lines.append("## Coverage gaps")
            lines.extend(f"- {g}" for g in self.coverage_gaps)
        return "\n".join(lines).strip() + "\n"


@dataclass(frozen=True)
class SummaryDraft:
    """Result of the summarization stage, before it is persisted."""

    summary: StructuredSummary
    model: str
    prompt_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    windows: int = 1


@dataclass(frozen=True)
class Summary:
    id: int
    item_id: int
    content: str
    structured: StructuredSummary
    model: str
    created_at: datetime
    prompt_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    windows: int = 1


@dataclass(frozen=True)
class ItemEvent:
    """One recorded status transition."""

    item_id: int
    from_status: Optional[ItemStatus]
    to_status: ItemStatus
    at: datetime
    note: Optional[str] = None
