"""Wrap-up assembly: final stats plus the highlights made during the session."""

from __future__ import annotations

import logging
from datetime import datetime

from .models import SessionSnapshot, WrapUp
from .store import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_TOP_HIGHLIGHTS = 3


class WrapUpAssembler:
    """Builds the summary shown after a successful end().

    Highlight ranking belongs to the store; this only asks for "highlights
    for this book created between start and end, most relevant first".
    """

    def __init__(self, store: SessionStore, top_highlights: int = DEFAULT_TOP_HIGHLIGHTS):
        self.store = store
        self.top_highlights = top_highlights

    async def assemble(self, snapshot: SessionSnapshot, ended_at: datetime) -> WrapUp:
        try:
            highlights = await self.store.query_highlights(
                snapshot.book_id, snapshot.started_at, ended_at, self.top_highlights
            )
        except Exception as e:
            # A summary without highlights beats no summary
            logger.warning(f"Highlight query failed for session {snapshot.session_id}: {e}")
            highlights = []
        return WrapUp(
            snapshot=snapshot,
            top_highlights=list(highlights)[: self.top_highlights],
            ended_at=ended_at,
        )
