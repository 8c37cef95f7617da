"""
Notification Store - SQLite-backed notification sink.

Features:
- Persists every notification handed to it by the emitter
- Per-recipient listing, newest first
- Unread counts and read acknowledgement
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from .clock import Clock, SystemClock
from .models import Notification

logger = logging.getLogger(__name__)


class NotificationStore:
	"""
	SQLite-backed notification storage.

	Usage:
		store = NotificationStore("data/notifications.db")
		await store.init()

		await store.notify("alice", "overlap", {...})
		unread = await store.list_notifications("alice", unread_only=True)
		await store.mark_all_as_read("alice")
	"""

	def __init__(self, db_path: str | Path, clock: Optional[Clock] = None):
		"""Initialize the notification store. Timestamps come from clock."""
		self.db_path = Path(db_path)
		self.clock = clock or SystemClock()
		self.db_path.parent.mkdir(parents=True, exist_ok=True)
		self._db: Optional[aiosqlite.Connection] = None

	async def init(self):
		"""Initialize the database schema."""
		self._db = await aiosqlite.connect(str(self.db_path))
		self._db.row_factory = aiosqlite.Row

		await self._db.execute("""
			CREATE TABLE IF NOT EXISTS notifications (
				id INTEGER PRIMARY KEY AUTOINCREMENT,
				recipient_id TEXT NOT NULL,
				kind TEXT NOT NULL,
				payload TEXT NOT NULL,
				read INTEGER DEFAULT 0,
				created_at TEXT NOT NULL
			)
		""")

		await self._db.execute("""
			CREATE INDEX IF NOT EXISTS idx_notifications_recipient ON notifications(recipient_id, read)
		""")

		await self._db.commit()
		logger.info(f"Notification store initialized: {self.db_path}")

	async def close(self):
		"""Close the database connection."""
		if self._db:
			await self._db.close()
			self._db = None

	async def notify(self, recipient_id: str, kind: str, payload: dict[str, Any]) -> None:
		"""Persist one notification. Matches the NotificationSink contract."""
		if not self._db:
			await self.init()

		await self._db.execute(
			"""
			INSERT INTO notifications (recipient_id, kind, payload, read, created_at)
			VALUES (?, ?, ?, 0, ?)
			""",
			(
				recipient_id,
				kind,
				json.dumps(payload, sort_keys=True),
				self.clock.now().isoformat(),
			)
		)
		await self._db.commit()
		logger.debug(f"Stored {kind} notification for {recipient_id}")

	async def list_notifications(
		self,
		recipient_id: str,
		unread_only: bool = False,
		limit: int = 100,
	) -> list[Notification]:
		"""
		List a recipient's notifications, newest first.

		Args:
			recipient_id: Whose notifications to list
			unread_only: Skip notifications already marked read
			limit: Max rows returned
		"""
		if not self._db:
			await self.init()

		query = "SELECT * FROM notifications WHERE recipient_id = ?"
		params: list[Any] = [recipient_id]
		if unread_only:
			query += " AND read = 0"
		query += " ORDER BY id DESC LIMIT ?"
		params.append(limit)

		async with self._db.execute(query, params) as cursor:
			rows = await cursor.fetchall()

		return [
			Notification(
				id=row["id"],
				recipient_id=row["recipient_id"],
				kind=row["kind"],
				payload=json.loads(row["payload"]),
				read=bool(row["read"]),
				created_at=datetime.fromisoformat(row["created_at"]),
			)
			for row in rows
		]

	async def unread_count(self, recipient_id: str) -> int:
		if not self._db:
			await self.init()

		async with self._db.execute(
			"SELECT COUNT(*) AS n FROM notifications WHERE recipient_id = ? AND read = 0",
			(recipient_id,)
		) as cursor:
			row = await cursor.fetchone()
		return row["n"]

	async def mark_as_read(self, notification_id: int) -> bool:
		"""Mark one notification read. Returns False if it doesn't exist."""
		if not self._db:
			await self.init()

		cursor = await self._db.execute(
			"UPDATE notifications SET read = 1 WHERE id = ?",
			(notification_id,)
		)
		await self._db.commit()
		return cursor.rowcount > 0

	async def mark_all_as_read(self, recipient_id: str) -> int:
		"""Mark every unread notification of a recipient read. Returns how many."""
		if not self._db:
			await self.init()

		cursor = await self._db.execute(
			"UPDATE notifications SET read = 1 WHERE recipient_id = ? AND read = 0",
			(recipient_id,)
		)
		await self._db.commit()
		logger.info(f"Marked {cursor.rowcount} notifications read for {recipient_id}")
		return cursor.rowcount
