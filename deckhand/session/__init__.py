"""Session snapshots with SQLite storage."""

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from deckhand.config import get_config
from deckhand.exceptions import SessionError
from deckhand.llm import Message
from deckhand.logging import get_logger

log = get_logger(__name__)

CURRENT_SLOT = "current"
BACKUP_SLOT = "backup"
DISPLAY_LIMIT = 100


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


@dataclass
class SessionSnapshot:
    """Everything needed to resume a conversation."""

    history: list[Message] = field(default_factory=list)
    display: list[Message] = field(default_factory=list)
    model: str = ""
    cwd: str = ""
    saved_at: str = field(default_factory=_utcnow_iso)

    @property
    def age_seconds(self) -> float:
        try:
            saved = datetime.fromisoformat(self.saved_at)
        except ValueError:
            return float("inf")
        if saved.tzinfo is None:
            saved = saved.replace(tzinfo=UTC)
        return (datetime.now(UTC) - saved).total_seconds()


class SessionStore:
    """Keeps the latest conversation and one pre-compaction backup in SQLite."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize session store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            config = get_config()
            self.db_path = Path(config.session.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS snapshots (
                    slot TEXT PRIMARY KEY,
                    history TEXT NOT NULL DEFAULT '[]',
                    display TEXT NOT NULL DEFAULT '[]',
                    model TEXT NOT NULL DEFAULT '',
                    cwd TEXT NOT NULL DEFAULT '',
                    saved_at TEXT NOT NULL
                )
            """)
            await self._db.commit()
        return self._db

    async def _write(self, slot: str, snapshot: SessionSnapshot) -> None:
        try:
            db = await self._ensure_db()
            await db.execute(
                """
                INSERT OR REPLACE INTO snapshots (slot, history, display, model, cwd, saved_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    slot,
                    json.dumps([msg.to_dict() for msg in snapshot.history]),
                    json.dumps([msg.to_dict() for msg in snapshot.display[-DISPLAY_LIMIT:]]),
                    snapshot.model,
                    snapshot.cwd,
                    snapshot.saved_at,
                ),
            )
            await db.commit()
        except (aiosqlite.Error, OSError, TypeError, ValueError) as e:
            raise SessionError(f"Failed to write {slot} snapshot: {e}") from e

    async def _read(self, slot: str) -> SessionSnapshot | None:
        try:
            db = await self._ensure_db()
            async with db.execute(
                "SELECT history, display, model, cwd, saved_at FROM snapshots WHERE slot = ?",
                (slot,),
            ) as cursor:
                row = await cursor.fetchone()
        except (aiosqlite.Error, OSError) as e:
            raise SessionError(f"Failed to read {slot} snapshot: {e}") from e
        if not row:
            return None
        try:
            history: list[dict[str, Any]] = json.loads(row[0])
            display: list[dict[str, Any]] = json.loads(row[1])
        except json.JSONDecodeError as e:
            raise SessionError(f"Corrupted {slot} snapshot: {e}") from e
        return SessionSnapshot(
            history=[Message.from_dict(item) for item in history if isinstance(item, dict)],
            display=[Message.from_dict(item) for item in display if isinstance(item, dict)],
            model=row[2],
            cwd=row[3],
            saved_at=row[4],
        )

    async def save(
        self,
        history: list[Message],
        display: list[Message],
        model: str,
        cwd: str | Path,
    ) -> None:
        """Persist the current conversation (display list capped at the last 100)."""
        await self._write(
            CURRENT_SLOT,
            SessionSnapshot(
                history=list(history),
                display=list(display),
                model=model,
                cwd=str(cwd),
            ),
        )
        log.debug("Session saved", messages=len(history))

    async def backup(
        self,
        history: list[Message] | None = None,
        model: str = "",
        cwd: str | Path = "",
    ) -> bool:
        """Store a backup snapshot.

        With ``history`` the backup holds exactly those messages; without it the
        last saved snapshot is copied. Returns False when there was nothing to back up.
        """
        if history is None:
            current = await self._read(CURRENT_SLOT)
            if current is None:
                return False
            snapshot = current
        else:
            current = await self._read(CURRENT_SLOT)
            snapshot = SessionSnapshot(
                history=list(history),
                display=list(current.display) if current else [],
                model=model or (current.model if current else ""),
                cwd=str(cwd) or (current.cwd if current else ""),
            )
        await self._write(BACKUP_SLOT, snapshot)
        log.info("Session backup written", messages=len(snapshot.history))
        return True

    async def load(self) -> SessionSnapshot | None:
        """Load the current snapshot, falling back to the backup."""
        try:
            current = await self._read(CURRENT_SLOT)
        except SessionError as e:
            log.warning("Current session unreadable, trying backup", error=str(e))
            current = None
        if current is not None:
            return current
        return await self._read(BACKUP_SLOT)

    async def restore_backup(self) -> SessionSnapshot | None:
        return await self._read(BACKUP_SLOT)

    async def has_recent_session(self, max_age_seconds: float = 7200) -> bool:
        """Whether a non-empty session was saved within ``max_age_seconds``."""
        try:
            current = await self._read(CURRENT_SLOT)
        except SessionError:
            return False
        if current is None or not current.history:
            return False
        return current.age_seconds < max_age_seconds

    async def clear(self) -> None:
        """Delete both the current snapshot and the backup."""
        try:
            db = await self._ensure_db()
            await db.execute("DELETE FROM snapshots")
            await db.commit()
        except aiosqlite.Error as e:
            raise SessionError(f"Failed to clear session: {e}") from e
        log.info("Session cleared")

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
