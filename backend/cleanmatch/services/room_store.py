import logging
from dataclasses import dataclass
from typing import Any, Dict, List
from uuid import uuid4

from cleanmatch.services.database import Database, database

logger = logging.getLogger(__name__)


@dataclass
class RoomStore:
    """Conversation rooms opened for engagements."""

    database: Database

    def __post_init__(self) -> None:
        self._init_db()

    def _init_db(self) -> None:
        with self.database.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chat_rooms (
                    id TEXT PRIMARY KEY,
                    engagement_id TEXT NOT NULL UNIQUE,
                    customer_id TEXT NOT NULL,
                    provider_user_id TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chat_messages (
                    id TEXT PRIMARY KEY,
                    room_id TEXT NOT NULL REFERENCES chat_rooms(id),
                    sender_id TEXT,
                    kind TEXT NOT NULL DEFAULT 'TEXT',
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )

    def open_room(self, engagement_id: str, customer_id: str, provider_user_id: str) -> str:
        with self.database.transaction() as conn:
            existing = conn.execute(
                "SELECT id FROM chat_rooms WHERE engagement_id = ?",
                (engagement_id,),
            ).fetchone()
            if existing:
                return str(existing["id"])
            room_id = f"room_{uuid4().hex[:10]}"
            conn.execute(
                """
                INSERT INTO chat_rooms (id, engagement_id, customer_id, provider_user_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (room_id, engagement_id, customer_id, provider_user_id, self.database.now_iso()),
            )
        logger.info("Room opened: room=%s engagement=%s", room_id, engagement_id)
        return room_id

    def post_system_message(self, room_id: str, content: str) -> str:
        message_id = f"msg_{uuid4().hex[:10]}"
        with self.database.transaction() as conn:
            conn.execute(
                """
                INSERT INTO chat_messages (id, room_id, sender_id, kind, content, created_at)
                VALUES (?, ?, NULL, 'SYSTEM', ?, ?)
                """,
                (message_id, room_id, content, self.database.now_iso()),
            )
        return message_id

    def list_messages(self, room_id: str) -> List[Dict[str, Any]]:
        with self.database.read() as conn:
            rows = conn.execute(
                "SELECT * FROM chat_messages WHERE room_id = ? ORDER BY created_at ASC",
                (room_id,),
            ).fetchall()
        return [dict(row) for row in rows]


room_store = RoomStore(database=database)
