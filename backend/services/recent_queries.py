import time
from typing import Callable, List, Optional

from config import Settings
from models import RecentQuery
from storage import EntityStore


class RecentQueryLog:
    """Most-recently-used search queries, newest first, capped at `limit`. Entries never expire."""

    def __init__(
        self,
        store: EntityStore,
        limit: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.limit = Settings.RECENT_QUERY_LIMIT if limit is None else int(limit)
        self.clock = clock

    def add(self, query: str) -> Optional[RecentQuery]:
        if not (query or "").strip():
            return None

        entry = RecentQuery(query=query, timestamp=self.clock())
        key = query.lower()
        self.store.mutate(
            "recent_queries",
            lambda items: ([entry] + [q for q in items if q.query.lower() != key])[: self.limit],
        )
        return entry

    def clear(self) -> None:
        self.store.mutate("recent_queries", lambda _items: ())

    def entries(self) -> List[RecentQuery]:
        return list(self.store.get("recent_queries"))
