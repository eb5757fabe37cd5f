import logging
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from cleanmatch.models import NotificationRecord
from cleanmatch.services.database import to_iso, utcnow
from cleanmatch.services.push_sender import PushSender, push_sender

logger = logging.getLogger(__name__)


class NotificationStore:
    def __init__(self, sender: PushSender = push_sender):
        self._lock = Lock()
        self._sender = sender
        self._notifications: List[NotificationRecord] = []
        self._device_tokens: Dict[str, set[str]] = {}

    def register_device_token(self, user_id: str, device_token: str) -> None:
        if not device_token.strip():
            return
        with self._lock:
            self._device_tokens.setdefault(user_id, set()).add(device_token.strip())

    def notify_one(
        self,
        user_id: str,
        kind: str,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            user_id=user_id,
            kind=kind,
            title=title,
            body=body,
            data=dict(data or {}),
            read=False,
            created_at=to_iso(utcnow()),
        )
        with self._lock:
            self._notifications.insert(0, record)
            tokens = list(self._device_tokens.get(user_id, set()))
        try:
            invalid_tokens = self._sender.send_notification(
                tokens=tokens,
                title=title,
                body=body,
                data={"notification_id": record.id, "kind": kind, **{k: str(v) for k, v in record.data.items()}},
            )
        except Exception:
            logger.exception("Push fan-out failed: user=%s kind=%s", user_id, kind)
            invalid_tokens = []
        if invalid_tokens:
            with self._lock:
                current = self._device_tokens.get(user_id, set())
                for token in invalid_tokens:
                    current.discard(token)
        return record

    def notify_many(
        self,
        user_ids: Iterable[str],
        kind: str,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> List[NotificationRecord]:
        records: List[NotificationRecord] = []
        for user_id in dict.fromkeys(user_ids):
            records.append(self.notify_one(user_id, kind, title, body, data))
        if records:
            logger.info("Notified %s users: kind=%s", len(records), kind)
        return records

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        with self._lock:
            rows = [n for n in self._notifications if n.user_id == user_id]
            if unread_only:
                rows = [n for n in rows if not n.read]
            return rows[:100]

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            for idx, row in enumerate(self._notifications):
                if row.id == notification_id and row.user_id == user_id:
                    updated = row.model_copy(update={"read": True})
                    self._notifications[idx] = updated
                    return updated
        return None


notification_store = NotificationStore()
