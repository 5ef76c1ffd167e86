import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional
from uuid import uuid4

from quoteflow.models import NotificationRecord
from quoteflow.services.push_sender import PushSender, push_sender

logger = logging.getLogger(__name__)


class NotificationStore:
    """Per-user in-app inbox; each published record is also pushed to the user's devices.

    Inboxes are newest-first and capped at ``max_per_user``; the oldest
    records fall off when a user's inbox is full.
    """

    def __init__(self, sender: PushSender = push_sender, max_per_user: int = 100):
        self._lock = Lock()
        self._sender = sender
        self._max_per_user = max_per_user
        self._inboxes: Dict[str, List[NotificationRecord]] = {}
        self._devices: Dict[str, Dict[str, str]] = {}

    @property
    def push_enabled(self) -> bool:
        return self._sender.enabled

    def register_device_token(self, user_id: str, device_token: str, platform: str = "android") -> bool:
        """Returns False when the token was blank or already known for this user."""
        token = device_token.strip()
        if not token:
            return False
        with self._lock:
            devices = self._devices.setdefault(user_id, {})
            is_new = token not in devices
            devices[token] = platform
        if is_new:
            logger.info("device_registered user_id=%s platform=%s", user_id, platform)
        return is_new

    def publish(
        self,
        user_id: str,
        *,
        title: str,
        body: str,
        category: str = "system",
        deep_link: Optional[str] = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            user_id=user_id,
            title=title,
            body=body,
            category=category,  # type: ignore[arg-type]
            created_at=datetime.now(timezone.utc).isoformat(),
            deep_link=deep_link,
        )
        with self._lock:
            inbox = self._inboxes.setdefault(user_id, [])
            inbox.insert(0, record)
            del inbox[self._max_per_user :]
            tokens = sorted(self._devices.get(user_id, {}))
        self._push(user_id, record, tokens)
        return record

    def _push(self, user_id: str, record: NotificationRecord, tokens: List[str]) -> None:
        dead = self._sender.send(
            tokens=tokens,
            title=record.title,
            body=record.body,
            data={"notification_id": record.id, "category": record.category, "deep_link": record.deep_link or ""},
        )
        if not dead:
            return
        with self._lock:
            devices = self._devices.get(user_id, {})
            for token in dead:
                devices.pop(token, None)

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        with self._lock:
            inbox = list(self._inboxes.get(user_id, []))
        if unread_only:
            return [record for record in inbox if not record.read]
        return inbox

    def unread_count(self, user_id: str) -> int:
        with self._lock:
            return sum(1 for record in self._inboxes.get(user_id, []) if not record.read)

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            inbox = self._inboxes.get(user_id, [])
            for idx, record in enumerate(inbox):
                if record.id == notification_id:
                    inbox[idx] = record.model_copy(update={"read": True})
                    return inbox[idx]
        return None

    def mark_all_read(self, user_id: str) -> int:
        with self._lock:
            inbox = self._inboxes.get(user_id, [])
            changed = 0
            for idx, record in enumerate(inbox):
                if not record.read:
                    inbox[idx] = record.model_copy(update={"read": True})
                    changed += 1
        return changed


notification_store = NotificationStore()
