import asyncio
import logging
from threading import Lock
from typing import Any, Dict, List, Optional

from servmatch.errors import EngineError, NotFoundError
from servmatch.models import NotificationRecord
from servmatch.services.push_sender import PushSender

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Append-only notification records plus best-effort push delivery.

    send() never raises: callers treat delivery as optional.
    """

    def __init__(self, store, push_sender: Optional[PushSender] = None):
        self._store = store
        self._push = push_sender or PushSender()
        self._lock = Lock()
        self._device_tokens: Dict[str, set[str]] = {}

    def register_device_token(self, user_id: str, device_token: str) -> None:
        if not device_token.strip():
            return
        with self._lock:
            self._device_tokens.setdefault(user_id, set()).add(device_token.strip())

    def device_tokens(self, user_id: str) -> List[str]:
        with self._lock:
            return sorted(self._device_tokens.get(user_id, set()))

    async def send(
        self,
        recipient_id: str,
        type: str,
        title: str,
        body: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[NotificationRecord]:
        try:
            record = await self._store.insert_notification(
                user_id=recipient_id,
                type=type,
                title=title,
                body=body,
                payload=dict(payload or {}),
            )
        except Exception:
            logger.exception("Failed to store %s notification for %s", type, recipient_id)
            return None

        tokens = self.device_tokens(recipient_id)
        if tokens:
            await self._push_to(recipient_id, tokens, record)
        return record

    async def _push_to(self, recipient_id: str, tokens: List[str], record: NotificationRecord) -> None:
        data = {key: str(value) for key, value in record.payload.items()}
        data.update({"notification_id": record.id, "type": record.type})
        try:
            invalid_tokens = await asyncio.to_thread(self._push.send, tokens, record.title, record.body, data)
        except Exception:
            logger.exception("Push delivery failed for %s", recipient_id)
            return
        if invalid_tokens:
            with self._lock:
                current = self._device_tokens.get(recipient_id, set())
                for token in invalid_tokens:
                    current.discard(token)


class NotificationInbox:
    """One user's notification list with optimistic read-state updates.

    Read flags are applied locally first, then persisted; a failed write rolls
    the local copy back and re-raises.
    """

    def __init__(self, store, user_id: str, limit: int = 50):
        self._store = store
        self.user_id = user_id
        self.limit = limit
        self.notifications: List[NotificationRecord] = []

    @property
    def unread_count(self) -> int:
        return sum(1 for item in self.notifications if not item.read)

    async def refresh(self, unread_only: bool = False) -> List[NotificationRecord]:
        self.notifications = await self._store.list_notifications(
            self.user_id, unread_only=unread_only, limit=self.limit
        )
        return self.notifications

    def _apply_read(self, ids: Optional[set[str]]) -> List[NotificationRecord]:
        snapshot = list(self.notifications)
        self.notifications = [
            item.model_copy(update={"read": True}) if ids is None or item.id in ids else item
            for item in self.notifications
        ]
        return snapshot

    async def mark_read(self, notification_id: str) -> Optional[NotificationRecord]:
        """Returns the local copy, or None when it is outside the loaded page."""
        snapshot = self._apply_read({notification_id})
        try:
            updated = await self._store.mark_notifications_read(self.user_id, [notification_id])
            if not updated:
                raise NotFoundError("Notification not found")
        except EngineError:
            self.notifications = snapshot
            raise
        return next((item for item in self.notifications if item.id == notification_id), None)

    async def mark_all_read(self) -> int:
        snapshot = self._apply_read(None)
        try:
            return await self._store.mark_notifications_read(self.user_id)
        except EngineError:
            self.notifications = snapshot
            raise
