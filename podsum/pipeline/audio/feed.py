"""Podcast feed retrieval (requests) and parsing (feedparser)."""

from __future__ import annotations

import calendar
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import feedparser
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from podsum.errors import FetchError
from podsum.models import FeedEntry, FeedInfo

logger = logging.getLogger(__name__)

USER_AGENT = "podsum/0.1.0"
AUDIO_SUFFIXES = (".mp3", ".m4a", ".ogg", ".opus", ".wav", ".aac")


class FeedSource(Protocol):
    def fetch(self, url: str) -> FeedInfo:
        ...


def get_session(*, retries: bool = True) -> requests.Session:
    """Session with the podsum User-Agent.

    Feed fetches use urllib3 retries. Callers that retry on their own (the acquire
    stage) pass `retries=False` so every attempt is exactly one request.
    """
    session = requests.Session()
    if retries:
        retry = Retry(
            total=3,
            read=3,
            connect=3,
            backoff_factor=1,
            status_forcelist=[500, 502, 503, 504],
            allowed_methods=["GET", "HEAD"],
            raise_on_status=False,
        )
    else:
        retry = Retry(total=0, read=False)
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers["User-Agent"] = USER_AGENT
    return session


def parse_duration(raw: Any) -> Optional[int]:
    """itunes:duration as seconds; accepts `SS`, `MM:SS` and `HH:MM:SS`."""
    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None
    try:
        parts = [float(p) for p in text.split(":")]
    except ValueError:
        return None
    if len(parts) > 3:
        return None
    seconds = 0.0
    for p in parts:
        seconds = seconds * 60 + p
    return int(seconds)


def _parsed_time(entry: Any) -> Optional[datetime]:
    for key in ("published_parsed", "updated_parsed"):
        value = entry.get(key)
        if value:
            return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
    return None


def _audio_url(entry: Any) -> Optional[str]:
    for enclosure in entry.get("enclosures", []) or []:
        href = enclosure.get("href")
        mime = (enclosure.get("type") or "").lower()
        if href and (mime.startswith("audio/") or href.split("?")[0].lower().endswith(AUDIO_SUFFIXES)):
            return href
    for link in entry.get("links", []) or []:
        href = link.get("href")
        mime = (link.get("type") or "").lower()
        if href and (mime.startswith("audio/") or link.get("rel") == "enclosure"):
            return href
    return None


def extract_entry(entry: Any) -> Optional[FeedEntry]:
    """Build a `FeedEntry` from a feedparser entry; None when it carries no audio."""
    audio_url = _audio_url(entry)
    if not audio_url:
        return None
    guid = (entry.get("id") or entry.get("guid") or audio_url).strip()
    return FeedEntry(
        guid=guid,
        title=(entry.get("title") or "Untitled").strip(),
        source_url=audio_url,
        published_at=_parsed_time(entry),
        description=entry.get("summary"),
        duration_secs=parse_duration(entry.get("itunes_duration")),
    )


def parse_feed_document(content: bytes | str, url: str = "") -> FeedInfo:
    """Parse an RSS/Atom document into a `FeedInfo`; raises FetchError('malformed')."""
    parsed = feedparser.parse(content)
    channel = parsed.get("feed", {}) or {}
    if parsed.get("bozo") and not parsed.get("entries") and not channel.get("title"):
        reason = parsed.get("bozo_exception")
        raise FetchError("malformed", f"Cannot parse feed {url}: {reason}")
    if parsed.get("bozo"):
        logger.warning(f"Feed {url} has formatting issues, continuing: {parsed.get('bozo_exception')}")

    entries = []
    for raw in parsed.get("entries", []):
        entry = extract_entry(raw)
        if entry is None:
            logger.debug(f"Skipping entry without audio: {raw.get('title')!r}")
            continue
        entries.append(entry)

    return FeedInfo(
        title=(channel.get("title") or "Untitled").strip(),
        entries=entries,
        website_url=channel.get("link"),
        description=channel.get("subtitle") or channel.get("description"),
    )


class HttpFeedSource:
    """`FeedSource` over HTTP."""

    def __init__(self, session: requests.Session | None = None, *, timeout: float = 30.0) -> None:
        self.session = session or get_session()
        self.timeout = timeout

    def fetch(self, url: str) -> FeedInfo:
        logger.info(f"Fetching feed: {url}")
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.Timeout as e:
            raise FetchError("timeout", f"{url}: {e}") from e
        except requests.RequestException as e:
            raise FetchError("network", f"{url}: {e}") from e

        if response.status_code in (404, 410):
            raise FetchError("not_found", f"{url}: HTTP {response.status_code}")
        if response.status_code >= 500:
            raise FetchError("network", f"{url}: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise FetchError("not_found", f"{url}: HTTP {response.status_code}")

        return parse_feed_document(response.content, url)
