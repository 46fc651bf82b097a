"""Editor session state for IPTC Editor.

One EditSession per uploaded file: the original bytes, the metadata found
in them, the generated metadata, and the working caption/keywords the user
edits. Sessions live only in memory, in a SessionStore owned by the app.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import Callable, Iterable, Optional
from uuid import uuid4

from iptc_editor.metadata import write_metadata
from iptc_editor.models import ImageMetadata, KeywordEntry, SessionView

logger = logging.getLogger(__name__)

DEFAULT_KEYWORD_LIMIT = 25


def merge_keywords(
    existing: Iterable[str],
    generated: Iterable[str],
    limit: int = DEFAULT_KEYWORD_LIMIT,
) -> list[str]:
    """Ordered union of two keyword lists, first occurrence wins, capped at limit.

    Matching is case-sensitive. Merging a list with itself returns it unchanged
    (apart from the cap).
    """
    merged = list(dict.fromkeys([*existing, *generated]))
    return merged[:limit]


class EditSession:
    """Working metadata for one image, plus the inputs it was built from."""

    def __init__(
        self,
        filename: str,
        image_bytes: bytes,
        keyword_limit: int = DEFAULT_KEYWORD_LIMIT,
        session_id: Optional[str] = None,
    ):
        self.session_id = session_id or str(uuid4())
        self.filename = filename
        self.image_bytes = image_bytes
        self.keyword_limit = keyword_limit
        self.existing: Optional[ImageMetadata] = None
        self.generated: Optional[ImageMetadata] = None
        self.caption = ""
        self.keywords: list[str] = []
        self.busy = False

    @property
    def analyzed(self) -> bool:
        return self.generated is not None

    def apply(self, existing: ImageMetadata, generated: ImageMetadata) -> None:
        """Seed the working metadata from what was found and what was generated."""
        self.existing = existing
        self.generated = generated
        self.caption = generated.caption or existing.caption
        self.keywords = merge_keywords(existing.keywords, generated.keywords, self.keyword_limit)

    def set_caption(self, caption: str) -> None:
        self.caption = caption.strip()

    def add_keyword(self, keyword: str) -> bool:
        """Append a keyword. Blank, duplicate, or over-cap additions are no-ops.

        Returns:
            True if the keyword was added.
        """
        keyword = keyword.strip()
        if not keyword or keyword in self.keywords:
            return False
        if len(self.keywords) >= self.keyword_limit:
            logger.debug("Keyword cap %d reached, ignoring %r", self.keyword_limit, keyword)
            return False
        self.keywords.append(keyword)
        return True

    def remove_keyword(self, index: int) -> str:
        """Remove the keyword at a position; later keywords shift down by one.

        Raises:
            IndexError: If index is out of range.
        """
        if index < 0 or index >= len(self.keywords):
            raise IndexError(f"No keyword at position {index}")
        return self.keywords.pop(index)

    def export(self, prefix: str = "iptc_edited_") -> tuple[str, bytes]:
        """Write the working metadata into the original bytes.

        Returns:
            (download filename, new image bytes)
        """
        data = write_metadata(self.image_bytes, self.caption, self.keywords, self.keyword_limit)
        return f"{prefix}{self.filename}", data

    def view(self) -> SessionView:
        """Full snapshot for rendering; keyword indexes are current positions."""
        return SessionView(
            session_id=self.session_id,
            filename=self.filename,
            size=len(self.image_bytes),
            analyzed=self.analyzed,
            busy=self.busy,
            caption=self.caption,
            keywords=[KeywordEntry(index=i, keyword=k) for i, k in enumerate(self.keywords)],
            keyword_limit=self.keyword_limit,
            existing=self.existing,
            generated=self.generated,
        )


class SessionStore:
    """In-memory sessions keyed by id, bounded in count and idle time.

    Every lookup refreshes a session. Sessions idle longer than `ttl_seconds`
    are dropped, and opening one past `max_sessions` drops the least recently
    used. A session mid-analysis is never dropped.
    """

    def __init__(
        self,
        max_sessions: int = 32,
        ttl_seconds: Optional[float] = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_sessions = max_sessions
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: OrderedDict[str, EditSession] = OrderedDict()
        self._last_used: dict[str, float] = {}

    def _drop(self, session_id: str, reason: str) -> None:
        session = self._sessions.pop(session_id)
        self._last_used.pop(session_id, None)
        logger.info("Dropped %s session %s (%s)", reason, session_id[:8], session.filename)

    def _expire(self) -> None:
        if self.ttl_seconds is None:
            return
        cutoff = self._clock() - self.ttl_seconds
        for session_id, session in list(self._sessions.items()):
            if self._last_used[session_id] <= cutoff and not session.busy:
                self._drop(session_id, "idle")

    def _touch(self, session_id: str) -> None:
        self._sessions.move_to_end(session_id)
        self._last_used[session_id] = self._clock()

    def create(self, filename: str, image_bytes: bytes, keyword_limit: int) -> EditSession:
        self._expire()
        idle = [sid for sid, s in self._sessions.items() if not s.busy]
        while idle and len(self._sessions) >= self.max_sessions:
            self._drop(idle.pop(0), "least recently used")

        session = EditSession(filename, image_bytes, keyword_limit=keyword_limit)
        self._sessions[session.session_id] = session
        self._touch(session.session_id)
        logger.info("Opened session %s for %s (%d bytes)", session.session_id[:8], filename, len(image_bytes))
        return session

    def get(self, session_id: str) -> Optional[EditSession]:
        self._expire()
        session = self._sessions.get(session_id)
        if session is not None:
            self._touch(session_id)
        return session

    def discard(self, session_id: str) -> bool:
        self._last_used.pop(session_id, None)
        return self._sessions.pop(session_id, None) is not None

    def __len__(self) -> int:
        return len(self._sessions)
