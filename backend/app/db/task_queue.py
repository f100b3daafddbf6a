"""Durable message queue on top of SQLite.

Follows pgmq semantics: ``read`` leases up to ``batch_size`` visible messages
by pushing their visibility timestamp (``vt``) ``vt_seconds`` into the future
and bumping ``read_ct``. A message that is not deleted before its lease
expires becomes visible again and is redelivered.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from app.db.database import get_db, transaction
from app.models import QueueMessage

logger = logging.getLogger(__name__)

TASK_QUEUE = "task_queue"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskQueue:
    """pgmq-style ``send`` / ``read`` / ``delete`` over the queue_messages table."""

    async def send(self, queue_name: str, message: Any, delay_seconds: int = 0) -> str:
        """Enqueue a JSON-serializable message.

        Returns:
            The new message ID
        """
        now = _utcnow()
        async with transaction() as db:
            cursor = await db.execute(
                """
                INSERT INTO queue_messages (queue_name, message_json, read_ct, vt, enqueued_at)
                VALUES (?, ?, 0, ?, ?)
                """,
                (
                    queue_name,
                    json.dumps(message),
                    (now + timedelta(seconds=delay_seconds)).isoformat(),
                    now.isoformat(),
                ),
            )
        msg_id = str(cursor.lastrowid)
        logger.debug(f"Enqueued message {msg_id} on {queue_name}")
        return msg_id

    async def read(
        self, queue_name: str, vt_seconds: int, batch_size: int
    ) -> list[QueueMessage]:
        """Lease up to ``batch_size`` visible messages for ``vt_seconds``."""
        now = _utcnow()
        leased_until = (now + timedelta(seconds=vt_seconds)).isoformat()

        async with transaction() as db:
            cursor = await db.execute(
                """
                SELECT msg_id, queue_name, message_json, read_ct, enqueued_at
                FROM queue_messages
                WHERE queue_name = ? AND vt <= ?
                ORDER BY msg_id
                LIMIT ?
                """,
                (queue_name, now.isoformat(), batch_size),
            )
            rows = await cursor.fetchall()
            if rows:
                await db.executemany(
                    "UPDATE queue_messages SET vt = ?, read_ct = read_ct + 1 WHERE msg_id = ?",
                    [(leased_until, row["msg_id"]) for row in rows],
                )

        messages = []
        for row in rows:
            try:
                body = json.loads(row["message_json"])
            except json.JSONDecodeError:
                # Left for the consumer's schema check to reject
                body = row["message_json"]
            messages.append(
                QueueMessage(
                    msg_id=str(row["msg_id"]),
                    queue_name=row["queue_name"],
                    message=body,
                    read_ct=row["read_ct"] + 1,
                    vt=leased_until,
                    enqueued_at=row["enqueued_at"],
                )
            )
        return messages

    async def delete(self, queue_name: str, msg_id: str | int) -> bool:
        """Permanently remove a message. Returns False if it was already gone."""
        async with transaction() as db:
            cursor = await db.execute(
                "DELETE FROM queue_messages WHERE queue_name = ? AND msg_id = ?",
                (queue_name, int(msg_id)),
            )
        return cursor.rowcount > 0

    async def count(self, queue_name: str) -> int:
        """Number of messages (visible or leased) on a queue."""
        db = await get_db()
        cursor = await db.execute(
            "SELECT COUNT(*) AS n FROM queue_messages WHERE queue_name = ?", (queue_name,)
        )
        row = await cursor.fetchone()
        return row["n"]


# Global instance
task_queue = TaskQueue()
