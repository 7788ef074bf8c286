"""Episode audio download.

Files land in `<audio_dir>/<feed_id>/<item_id>-<name from URL>`. The body is streamed
to a `.part` file which is renamed once complete, so a present destination file is
always a finished download and is reused as-is.
"""

from __future__ import annotations

import errno
import logging
import re
from pathlib import Path
from typing import Protocol
from urllib.parse import unquote, urlsplit

import requests

from podsum.errors import AcquireError
from podsum.models import Item
from podsum.pipeline.audio.feed import get_session

logger = logging.getLogger(__name__)

_DISK_FULL_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}
_REJECTED_CONTENT_TYPES = ("text/html", "application/xhtml")


class Acquirer(Protocol):
    def acquire(self, item: Item) -> Path:
        ...


def sanitize_filename(filename: str) -> str:
    r"""Remove characters that are invalid in file names (/, ?, :, |, <, >, *, ", \)."""
    clean_name = re.sub(r'[\\/*?:"<>|]', "", filename)
    clean_name = "".join(ch for ch in clean_name if ord(ch) >= 32)
    return clean_name.strip()


def filename_for(item: Item) -> str:
    """Local file name derived from the enclosure URL (query string dropped)."""
    name = sanitize_filename(unquote(urlsplit(item.source_url).path.rsplit("/", 1)[-1]))
    if not name or "." not in name:
        name = f"{name or 'episode'}.mp3"
    return f"{item.id}-{name}"


class HttpAcquirer:
    """`Acquirer` streaming enclosures over HTTP."""

    def __init__(
        self,
        audio_dir: Path,
        session: requests.Session | None = None,
        *,
        timeout: tuple[float, float] = (10.0, 300.0),
        chunk_size: int = 64 * 1024,
    ) -> None:
        self.audio_dir = Path(audio_dir)
        # The acquire stage retries each item itself; the session must not.
        self.session = session or get_session(retries=False)
        self.timeout = timeout
        self.chunk_size = chunk_size

    def destination(self, item: Item) -> Path:
        return self.audio_dir / str(item.feed_id) / filename_for(item)

    def acquire(self, item: Item) -> Path:
        dest = self.destination(item)
        if dest.exists() and dest.stat().st_size > 0:
            logger.info(f"Reusing existing download: {dest}")
            return dest

        tmp = dest.with_name(dest.name + ".part")
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            logger.info(f"Downloading {item.label}: {item.source_url}")
            with self.session.get(item.source_url, stream=True, timeout=self.timeout) as response:
                self._check_response(item, response)
                with open(tmp, "wb") as f:
                    for chunk in response.iter_content(chunk_size=self.chunk_size):
                        if chunk:
                            f.write(chunk)
            tmp.replace(dest)
        except requests.RequestException as e:
            tmp.unlink(missing_ok=True)
            raise AcquireError("network", f"{item.source_url}: {e}") from e
        except OSError as e:
            tmp.unlink(missing_ok=True)
            if e.errno in _DISK_FULL_ERRNOS:
                raise AcquireError("storage_full", f"{dest.parent}: {e}") from e
            raise
        return dest

    @staticmethod
    def _check_response(item: Item, response: requests.Response) -> None:
        status = response.status_code
        if status >= 500 or status == 429:
            raise AcquireError("network", f"{item.source_url}: HTTP {status}")
        if status >= 400:
            raise AcquireError("unsupported_format", f"{item.source_url}: HTTP {status}")
        content_type = (response.headers.get("Content-Type") or "").lower()
        if content_type.startswith(_REJECTED_CONTENT_TYPES):
            raise AcquireError("unsupported_format", f"{item.source_url}: got {content_type}, not audio")
