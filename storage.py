# storage.py - in-memory entity store (copy-on-write) + persisted theme preference

import json
import logging
import os
from collections import defaultdict
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

from config import Settings
from models import Theme

logger = logging.getLogger("reqtrace")

COLLECTIONS = (
    "documents",
    "requirements",
    "test_cases",
    "user_stories",
    "notifications",
    "recent_queries",
)

Listener = Callable[[tuple, tuple], None]


class Snapshot(NamedTuple):
    """Immutable view of every collection at one instant."""
    documents: tuple
    requirements: tuple
    test_cases: tuple
    user_stories: tuple
    notifications: tuple
    recent_queries: tuple


class EntityStore:
    """
    Owns every collection. Collections are tuples and are only ever replaced
    whole, so a reader sees the old or the new collection, never a torn one.
    Entities are not persisted across restarts.
    """

    def __init__(self):
        self._data: Dict[str, tuple] = {name: () for name in COLLECTIONS}
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

    # -------------------- reads --------------------

    def get(self, collection: str) -> tuple:
        return self._data[self._check(collection)]

    def snapshot(self) -> Snapshot:
        return Snapshot(**self._data)

    def find(self, collection: str, entity_id: Any) -> Optional[Any]:
        return next((e for e in self.get(collection) if e.id == entity_id), None)

    # -------------------- writes --------------------

    def mutate(self, collection: str, transform: Callable[[tuple], Any]) -> tuple:
        """Replace one collection with transform(current)."""
        self._check(collection)
        return self.apply(lambda snap: {collection: transform(getattr(snap, collection))})[collection]

    def apply(self, transform: Callable[[Snapshot], Dict[str, Any]]) -> Dict[str, tuple]:
        """
        Replace several collections computed from a single snapshot.
        transform returns {collection: new_value}; an empty dict is a no-op.
        Listeners run after every replacement has landed.
        """
        snap = self.snapshot()
        updates = transform(snap) or {}

        changed: List[Tuple[str, tuple, tuple]] = []
        for name, value in updates.items():
            self._check(name)
            new = tuple(value)
            old = self._data[name]
            if len(new) == len(old) and all(a is b for a, b in zip(new, old)):
                continue  # identical entities: nothing to announce
            changed.append((name, old, new))

        for name, _old, new in changed:
            self._data[name] = new

        for name, old, new in changed:
            for listener in list(self._listeners[name]):
                listener(old, new)

        return {name: self._data[name] for name in updates}

    def subscribe(self, collection: str, listener: Listener) -> Callable[[], None]:
        """Register a reaction to a collection being replaced. Returns an unsubscribe callable."""
        self._listeners[self._check(collection)].append(listener)

        def _unsubscribe():
            if listener in self._listeners[collection]:
                self._listeners[collection].remove(listener)

        return _unsubscribe

    def get_stats(self) -> Dict[str, int]:
        return {name: len(items) for name, items in self._data.items()}

    def _check(self, collection: str) -> str:
        if collection not in self._data:
            raise KeyError(f"Unknown collection: {collection}")
        return collection


class ThemePreference:
    """The one piece of state persisted across restarts: the UI theme, stored under a single key."""

    KEY = "app-theme"

    def __init__(self, filepath: Optional[str] = None, default: Theme = Theme.DARK):
        self.filepath = filepath or Settings.PREFERENCES_FILE
        self.theme = default
        self.load_data()

    def toggle(self) -> Theme:
        self.theme = Theme.LIGHT if self.theme is Theme.DARK else Theme.DARK
        self.save_data()
        return self.theme

    def set(self, theme: Theme) -> Theme:
        self.theme = Theme(theme)
        self.save_data()
        return self.theme

    # -------------------- persistence --------------------

    def save_data(self):
        data: Dict[str, Any] = {}
        if os.path.exists(self.filepath):
            try:
                with open(self.filepath, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError):
                data = {}
        data[self.KEY] = self.theme.value

        try:
            with open(self.filepath, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.warning("Failed to save preferences to %s: %s", self.filepath, e)

    def load_data(self):
        if not os.path.exists(self.filepath):
            return

        try:
            with open(self.filepath, "r", encoding="utf-8") as f:
                data = json.load(f)
            self.theme = Theme(data.get(self.KEY, self.theme.value))
        except (OSError, ValueError, AttributeError) as e:
            logger.warning("Failed to load preferences from %s: %s", self.filepath, e)


__all__ = ["EntityStore", "Snapshot", "ThemePreference", "COLLECTIONS"]
