from models import NotificationKind
from backend.services.notifications import NotificationBus
from backend.services.recent_queries import RecentQueryLog


class FakeClock:
    def __init__(self, t: float = 100.0):
        self.t = t

    def __call__(self) -> float:
        return self.t


class TestNotificationBus:
    def test_notify_appends_with_increasing_ids(self, store):
        bus = NotificationBus(store, ttl_s=5, clock=FakeClock())
        a = bus.success("saved")
        b = bus.error("broken")
        assert (a.id, b.id) == (1, 2)
        assert [n.kind for n in bus.active()] == [NotificationKind.SUCCESS, NotificationKind.ERROR]

    def test_no_deduplication(self, store):
        bus = NotificationBus(store, ttl_s=5, clock=FakeClock())
        bus.error("same")
        bus.error("same")
        assert len(bus.active()) == 2

    def test_entries_expire_after_ttl(self, store):
        clock = FakeClock()
        bus = NotificationBus(store, ttl_s=5, clock=clock)
        bus.success("first")
        clock.t += 3
        bus.success("second")

        clock.t += 2.5
        assert [n.message for n in bus.active()] == ["second"]

        clock.t += 3
        assert bus.active() == []

    def test_notify_purges_expired(self, store):
        clock = FakeClock()
        bus = NotificationBus(store, ttl_s=5, clock=clock)
        bus.success("old")
        clock.t += 10
        bus.success("new")
        assert [n.message for n in store.get("notifications")] == ["new"]

    def test_dismiss(self, store):
        bus = NotificationBus(store, ttl_s=5, clock=FakeClock())
        note = bus.error("boom")
        assert bus.dismiss(note.id) is True
        assert bus.dismiss(note.id) is False
        assert bus.active() == []


class TestRecentQueryLog:
    def test_case_insensitive_dedup_keeps_latest_spelling(self, store):
        log = RecentQueryLog(store, limit=10)
        log.add("Login")
        log.add("login")
        assert [q.query for q in log.entries()] == ["login"]

    def test_newest_first_and_capped(self, store):
        log = RecentQueryLog(store, limit=10)
        for i in range(15):
            log.add(f"query {i}")
        entries = [q.query for q in log.entries()]
        assert len(entries) == 10
        assert entries[0] == "query 14"
        assert entries[-1] == "query 5"

    def test_readding_moves_to_front(self, store):
        log = RecentQueryLog(store, limit=10)
        log.add("alpha")
        log.add("beta")
        log.add("ALPHA")
        assert [q.query for q in log.entries()] == ["ALPHA", "beta"]

    def test_blank_queries_ignored(self, store):
        log = RecentQueryLog(store, limit=10)
        assert log.add("   ") is None
        assert log.entries() == []

    def test_clear(self, store):
        log = RecentQueryLog(store, limit=10)
        log.add("alpha")
        log.clear()
        assert log.entries() == []
