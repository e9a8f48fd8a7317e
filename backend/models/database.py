"""SQLite transcript cache using aiosqlite.

This module provides the TranscriptCache class, a per-session warm-start
cache of conversation transcripts. The server-side session stays
authoritative; the cache only lets a reopened conversation render
immediately instead of waiting for the server. Only the most recent
messages of each session are kept.

Writes fail gracefully: a database error is logged and never breaks a
running conversation.

Tables:
    transcripts: One row per session (messages and result metadata as JSON).

Usage:
    >>> from models.database import TranscriptCache
    >>> cache = TranscriptCache("./data/transcripts.db")
    >>> await cache.init()
    >>> await cache.save("sess_abc123", "agent_1", [{"role": "user", ...}])
    >>> messages = await cache.load("sess_abc123")
"""

import json
import time
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

logger = structlog.get_logger(__name__)


class TranscriptCache:
    """Async SQLite cache for session transcripts.

    Attributes:
        db_path: Path to the SQLite database file.
        max_messages: Number of most recent messages kept per session.
    """

    def __init__(self, db_path: str, max_messages: int = 200) -> None:
        """Initialize the cache.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
            max_messages: Per-session bound on stored messages.
        """
        self.db_path = db_path
        self.max_messages = max_messages

    async def init(self) -> None:
        """Create the table if it does not exist."""
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS transcripts (
                        session_id TEXT PRIMARY KEY,
                        agent_id TEXT NOT NULL,
                        messages TEXT NOT NULL,
                        result_meta TEXT,
                        message_count INTEGER NOT NULL DEFAULT 0,
                        updated_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_transcripts_agent
                    ON transcripts(agent_id, updated_at DESC)
                """)
                await db.commit()
            logger.info("transcript_cache_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error(
                "transcript_cache_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    async def save(
        self,
        session_id: str,
        agent_id: str,
        messages: list[dict[str, Any]],
        result_meta: dict[str, Any] | None = None,
    ) -> None:
        """Replace the cached transcript of a session.

        Only the last ``max_messages`` entries are stored.

        Args:
            session_id: Session the transcript belongs to.
            agent_id: Owning agent.
            messages: Transcript messages as dicts, oldest first.
            result_meta: Metadata of the last completed turn.
        """
        kept = messages[-self.max_messages :] if self.max_messages > 0 else []
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO transcripts
                        (session_id, agent_id, messages, result_meta, message_count, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        session_id,
                        agent_id,
                        json.dumps(kept),
                        json.dumps(result_meta) if result_meta else None,
                        len(kept),
                        time.time(),
                    ),
                )
                await db.commit()
            logger.debug(
                "transcript_cached",
                session_id=session_id,
                message_count=len(kept),
                dropped=len(messages) - len(kept),
            )
        except Exception as e:
            logger.error(
                "transcript_cache_save_failed",
                session_id=session_id,
                error=str(e),
            )

    async def load(self, session_id: str) -> list[dict[str, Any]] | None:
        """Return the cached messages of a session, or None on a miss."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "SELECT messages FROM transcripts WHERE session_id = ?",
                    (session_id,),
                )
                row = await cursor.fetchone()
        except Exception as e:
            logger.error(
                "transcript_cache_load_failed",
                session_id=session_id,
                error=str(e),
            )
            return None

        if row is None:
            return None
        try:
            messages = json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("transcript_cache_corrupt", session_id=session_id)
            return None
        return messages if isinstance(messages, list) else None

    async def load_meta(self, session_id: str) -> dict[str, Any] | None:
        """Return cache bookkeeping for a session.

        Returns:
            A dict with ``agent_id``, ``message_count``, ``updated_at`` and
            ``result_meta``, or None if the session is not cached.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    """
                    SELECT agent_id, result_meta, message_count, updated_at
                    FROM transcripts WHERE session_id = ?
                    """,
                    (session_id,),
                )
                row = await cursor.fetchone()
                if row is None:
                    return None
                result = dict(row)
        except Exception as e:
            logger.error(
                "transcript_cache_meta_failed",
                session_id=session_id,
                error=str(e),
            )
            return None

        if result.get("result_meta"):
            try:
                result["result_meta"] = json.loads(result["result_meta"])
            except json.JSONDecodeError:
                result["result_meta"] = None
        return result

    async def clear(self, session_id: str | None = None) -> int:
        """Remove one session's transcript, or all of them.

        Returns:
            Number of rows removed.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                if session_id is None:
                    cursor = await db.execute("DELETE FROM transcripts")
                else:
                    cursor = await db.execute(
                        "DELETE FROM transcripts WHERE session_id = ?",
                        (session_id,),
                    )
                deleted_count = cursor.rowcount
                await db.commit()
            logger.info(
                "transcript_cache_cleared",
                session_id=session_id,
                deleted_count=deleted_count,
            )
            return deleted_count
        except Exception as e:
            logger.error(
                "transcript_cache_clear_failed",
                session_id=session_id,
                error=str(e),
            )
            return 0
