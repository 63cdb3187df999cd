"""Tests for smart next step dismissals."""

from datetime import datetime, timedelta

from ralph_loop.core.dismissals import DismissalStore


class TestDismissalStore:
    """Tests for DismissalStore."""

    def test_dismissal_expires_after_ttl(self, tmp_path):
        store = DismissalStore(tmp_path / "dismissals.json")
        now = datetime(2026, 1, 1, 12, 0)
        store.dismiss("proj", "add-tests", now=now)

        assert store.is_dismissed("proj", "add-tests", now=now + timedelta(hours=23))
        assert not store.is_dismissed("proj", "add-tests", now=now + timedelta(hours=24))

    def test_permanent_never_expires(self, tmp_path):
        store = DismissalStore(tmp_path / "dismissals.json")
        now = datetime(2026, 1, 1)
        store.dismiss("proj", "setup-hooks", permanent=True, now=now)

        assert store.is_dismissed("proj", "setup-hooks", now=now + timedelta(days=365))

    def test_redismiss_replaces(self, tmp_path):
        store = DismissalStore(tmp_path / "dismissals.json")
        now = datetime(2026, 1, 1)
        store.dismiss("proj", "x", now=now)
        store.dismiss("proj", "x", permanent=True, now=now)

        active = store.active("proj", now=now)
        assert len(active) == 1
        assert active[0].permanent

    def test_persisted_per_project(self, tmp_path):
        path = tmp_path / "dismissals.json"
        now = datetime.now()
        DismissalStore(path).dismiss("proj", "x", now=now)

        reloaded = DismissalStore(path)
        assert reloaded.dismissed_ids("proj") == ["x"]
        assert reloaded.dismissed_ids("other") == []

    def test_custom_ttl(self, tmp_path):
        store = DismissalStore(tmp_path / "dismissals.json", ttl=timedelta(hours=1))
        now = datetime(2026, 1, 1)
        store.dismiss("proj", "x", now=now)

        assert not store.is_dismissed("proj", "x", now=now + timedelta(hours=2))

    def test_clear(self, tmp_path):
        store = DismissalStore(tmp_path / "dismissals.json")
        store.dismiss("proj", "x")
        store.clear("proj")

        assert store.active("proj") == []

    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "dismissals.json"
        path.write_text("{ nope")

        assert DismissalStore(path).active("proj") == []
