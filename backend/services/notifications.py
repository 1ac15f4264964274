import asyncio
import itertools
import logging
import time
from typing import Callable, List, Optional

from config import Settings
from models import Notification, NotificationKind
from storage import EntityStore

logger = logging.getLogger("reqtrace")


class NotificationBus:
    """
    Ephemeral user-facing messages kept in the store's "notifications"
    collection. Each entry expires ttl_s after it was raised unless dismissed
    first. No deduplication, no count limit.
    """

    def __init__(
        self,
        store: EntityStore,
        ttl_s: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.ttl_s = Settings.NOTIFICATION_TTL_S if ttl_s is None else float(ttl_s)
        self.clock = clock
        self._ids = itertools.count(1)

    def notify(self, message: str, kind: NotificationKind) -> Notification:
        now = self.clock()
        note = Notification(
            id=next(self._ids),
            message=message,
            kind=NotificationKind(kind),
            expires_at=now + self.ttl_s,
        )
        self.store.mutate(
            "notifications",
            lambda items: [n for n in items if n.expires_at > now] + [note],
        )
        self._schedule_expiry()
        return note

    def success(self, message: str) -> Notification:
        return self.notify(message, NotificationKind.SUCCESS)

    def error(self, message: str) -> Notification:
        logger.info("notify error: %s", message)
        return self.notify(message, NotificationKind.ERROR)

    def dismiss(self, notification_id: int) -> bool:
        if self.store.find("notifications", notification_id) is None:
            return False
        self.store.mutate(
            "notifications",
            lambda items: [n for n in items if n.id != notification_id],
        )
        return True

    def expire(self) -> int:
        """Drop every entry whose window has passed. Returns how many went."""
        now = self.clock()
        expired = [n for n in self.store.get("notifications") if n.expires_at <= now]
        if expired:
            gone = {n.id for n in expired}
            self.store.mutate("notifications", lambda items: [n for n in items if n.id not in gone])
        return len(expired)

    def active(self) -> List[Notification]:
        self.expire()
        return list(self.store.get("notifications"))

    def _schedule_expiry(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no loop: entries are purged lazily on the next read or write
        loop.call_later(self.ttl_s, self.expire)
