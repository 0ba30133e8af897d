"""Tests for the Concurrency Coordinator."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from guildsync.coordination.coordinator import ConcurrencyCoordinator
from guildsync.errors import (
    ConfigDeletedError,
    ConfigNotFoundError,
    ConfigValidationError,
    ConflictError,
    LockTimeoutError,
    StoreIOError,
)
from guildsync.models.config import ConfigDocument, WriteIntent
from guildsync.models.settings import CoordinatorSettings
from guildsync.store.config_store import InMemoryConfigStore


class _Clock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


class _SlowStore(InMemoryConfigStore):
    """Records how many writes overlap, per key and overall."""

    def __init__(self, delay: float = 0.05):
        super().__init__()
        self.delay = delay
        self._track = threading.Lock()
        self.active = {}
        self.max_per_key = 0
        self.max_overall = 0

    def write(self, document, expected_version=None):
        with self._track:
            self.active[document.key] = self.active.get(document.key, 0) + 1
            self.max_per_key = max(self.max_per_key, self.active[document.key])
            self.max_overall = max(self.max_overall, sum(self.active.values()))
        try:
            time.sleep(self.delay)
            super().write(document, expected_version)
        finally:
            with self._track:
                self.active[document.key] -= 1


class _FlakyStore(InMemoryConfigStore):
    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.calls = 0

    def write(self, document, expected_version=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise StoreIOError(document.key, "disk full")
        super().write(document, expected_version)


@pytest.fixture
def store():
    return InMemoryConfigStore()


@pytest.fixture
def coordinator(store):
    return ConcurrencyCoordinator(store, clock=_Clock())


class TestSubmitWrite:
    def test_first_write_uses_defaults(self, coordinator):
        doc = coordinator.submit_write(WriteIntent(key="guild-42", patch={"prefix": "!"}))
        assert doc.version == 1
        assert doc.schema_version == 3
        assert doc.payload["prefix"] == "!"
        assert doc.payload["language"] == "en"
        assert doc.payload["channels"] == {}

    def test_versions_increase(self, coordinator):
        first = coordinator.submit_write(WriteIntent(key="guild-42", patch={"prefix": "!"}))
        second = coordinator.submit_write(
            WriteIntent(key="guild-42", expected_version=1, patch={"prefix": "?"})
        )
        assert second.version == 2
        assert second.payload["prefix"] == "?"
        assert second.last_modified > first.last_modified

    def test_stale_expected_version_conflicts(self, coordinator, store):
        coordinator.submit_write(WriteIntent(key="guild-42", patch={"prefix": "!"}))
        coordinator.submit_write(WriteIntent(key="guild-42", expected_version=1, patch={"prefix": "?"}))

        with pytest.raises(ConflictError) as exc_info:
            coordinator.submit_write(
                WriteIntent(key="guild-42", expected_version=1, patch={"prefix": "$"})
            )
        assert (exc_info.value.expected, exc_info.value.actual) == (1, 2)

        stored = store.read("guild-42")
        assert stored.version == 2
        assert stored.payload["prefix"] == "?"

    def test_expected_version_on_unknown_key(self, coordinator, store):
        with pytest.raises(ConflictError) as exc_info:
            coordinator.submit_write(WriteIntent(key="guild-42", expected_version=3))
        assert exc_info.value.actual == 0
        assert store.read("guild-42") is None

        doc = coordinator.submit_write(WriteIntent(key="guild-42", expected_version=0))
        assert doc.version == 1

    def test_invalid_patch_not_applied(self, coordinator, store):
        coordinator.submit_write(WriteIntent(key="guild-42", patch={"prefix": "!"}))
        with pytest.raises(ConfigValidationError) as exc_info:
            coordinator.submit_write(WriteIntent(key="guild-42", patch={"max_warnings": 0}))
        assert exc_info.value.field == "max_warnings"
        assert store.read("guild-42").version == 1

    def test_rejected_writes_leave_no_version_gaps(self, coordinator):
        versions = []
        for prefix in ("!", "toolong", "?", "", "$"):
            try:
                versions.append(
                    coordinator.submit_write(WriteIntent(key="guild-42", patch={"prefix": prefix})).version
                )
            except ConfigValidationError:
                pass
        assert versions == [1, 2, 3]

    def test_replace_resets_unspecified_fields(self, coordinator):
        coordinator.submit_write(
            WriteIntent(key="guild-42", patch={"prefix": "?", "max_warnings": 9})
        )
        doc = coordinator.submit_write(
            WriteIntent(key="guild-42", patch={"language": "fr"}, replace=True)
        )
        assert doc.payload["prefix"] == "!"
        assert doc.payload["max_warnings"] == 3
        assert doc.payload["language"] == "fr"

    def test_must_exist(self, coordinator):
        with pytest.raises(ConfigNotFoundError):
            coordinator.submit_write(WriteIntent(key="guild-42", patch={}), must_exist=True)

    def test_legacy_document_migrated_then_merged(self, store, coordinator):
        store.write(ConfigDocument(
            key="guild-42",
            schema_version=1,
            version=0,
            payload={"prefix": "?", "lang": "fr", "welcome_channel_id": 5},
            last_modified=datetime(2025, 1, 1, tzinfo=timezone.utc),
        ))

        doc = coordinator.submit_write(
            WriteIntent(key="guild-42", expected_version=0, patch={"max_warnings": 4})
        )
        assert doc.version == 1
        assert doc.schema_version == 3
        assert doc.payload["language"] == "fr"
        assert doc.payload["channels"] == {"welcome": 5}
        assert doc.payload["max_warnings"] == 4

    def test_legacy_document_without_language_adopted(self, store, coordinator):
        store.write(ConfigDocument(
            key="guild-42",
            schema_version=1,
            version=0,
            payload={"prefix": "?"},
            last_modified=datetime(2025, 1, 1, tzinfo=timezone.utc),
        ))

        doc = coordinator.submit_write(
            WriteIntent(key="guild-42", expected_version=0, patch={"max_warnings": 4})
        )
        assert doc.version == 1
        assert doc.payload["prefix"] == "?"
        assert doc.payload["language"] == "en"
        assert doc.payload["max_warnings"] == 4

    def test_unmigratable_document_untouched(self, store, coordinator):
        old = ConfigDocument(
            key="guild-42",
            schema_version=1,
            version=4,
            payload={"prefix": "?", "lang": "de"},
            last_modified=datetime(2025, 1, 1, tzinfo=timezone.utc),
        )
        store.write(old)
        with pytest.raises(ConfigValidationError):
            coordinator.submit_write(WriteIntent(key="guild-42", patch={"prefix": "!"}))
        assert store.read("guild-42") == old


class TestCommitListeners:
    def test_event_emitted_with_changed_fields(self, coordinator):
        events = []
        coordinator.add_commit_listener(events.append)

        coordinator.submit_write(WriteIntent(key="guild-42", patch={"prefix": "!"}))
        coordinator.submit_write(WriteIntent(key="guild-42", patch={"prefix": "?", "language": "en"}))

        assert [e.new_version for e in events] == [1, 2]
        assert "prefix" in events[0].changed_fields
        assert "timezone" in events[0].changed_fields
        assert events[1].changed_fields == ["prefix"]

    def test_no_event_for_rejected_write(self, coordinator):
        events = []
        coordinator.add_commit_listener(events.append)
        with pytest.raises(ConflictError):
            coordinator.submit_write(WriteIntent(key="guild-42", expected_version=5))
        assert events == []

    def test_failing_listener_does_not_undo_write(self, coordinator, store):
        def broken(event):
            raise RuntimeError("queue gone")

        coordinator.add_commit_listener(broken)
        doc = coordinator.submit_write(WriteIntent(key="guild-42", patch={"prefix": "!"}))
        assert store.read("guild-42").version == doc.version == 1


class TestDelete:
    def test_tombstone_written(self, coordinator, store):
        events = []
        coordinator.add_commit_listener(events.append)
        coordinator.submit_write(WriteIntent(key="guild-42", patch={"prefix": "?"}))

        doc = coordinator.submit_delete("guild-42", expected_version=1)
        assert doc.deleted
        assert doc.version == 2
        assert doc.payload == {}
        assert events[-1].deleted
        assert "prefix" in events[-1].changed_fields
        assert store.read("guild-42").deleted

    def test_deleted_key_is_terminal(self, coordinator):
        coordinator.submit_write(WriteIntent(key="guild-42"))
        coordinator.submit_delete("guild-42")

        with pytest.raises(ConfigDeletedError) as exc_info:
            coordinator.submit_write(WriteIntent(key="guild-42", patch={"prefix": "!"}))
        assert exc_info.value.version == 2
        with pytest.raises(ConfigNotFoundError):
            coordinator.submit_read("guild-42")
        assert coordinator.submit_read("guild-42", include_deleted=True).deleted

    def test_delete_unknown_key(self, coordinator):
        with pytest.raises(ConfigNotFoundError):
            coordinator.submit_delete("guild-42")


class TestReads:
    def test_read_missing(self, coordinator):
        with pytest.raises(ConfigNotFoundError):
            coordinator.submit_read("guild-42")

    def test_read_presents_current_schema(self, store, coordinator):
        store.write(ConfigDocument(
            key="guild-42",
            schema_version=2,
            version=6,
            payload={"language": "fr", "log_channel_id": 77},
            last_modified=datetime(2025, 1, 1, tzinfo=timezone.utc),
        ))
        doc = coordinator.submit_read("guild-42")
        assert doc.schema_version == 3
        assert doc.version == 6
        assert doc.payload["channels"] == {"log": 77}
        # Nothing written back
        assert store.read("guild-42").schema_version == 2


class TestMigrateKey:
    def test_persists_migrated_document(self, store, coordinator):
        store.write(ConfigDocument(
            key="guild-42",
            schema_version=1,
            version=3,
            payload={"lang": "fr"},
            last_modified=datetime(2025, 1, 1, tzinfo=timezone.utc),
        ))
        doc = coordinator.migrate_key("guild-42")
        assert doc.version == 4
        assert store.read("guild-42").schema_version == 3
        assert coordinator.migrate_key("guild-42") is None


class TestStoreFailures:
    def test_io_failure_surfaces_without_retry_by_default(self):
        store = _FlakyStore(failures=1)
        coordinator = ConcurrencyCoordinator(store)
        with pytest.raises(StoreIOError):
            coordinator.submit_write(WriteIntent(key="guild-42"))
        assert store.calls == 1
        assert store.read("guild-42") is None

    def test_configured_retries(self):
        store = _FlakyStore(failures=2)
        coordinator = ConcurrencyCoordinator(store, settings=CoordinatorSettings(write_retries=2))
        doc = coordinator.submit_write(WriteIntent(key="guild-42"))
        assert doc.version == 1
        assert store.calls == 3


class TestConcurrency:
    def test_same_key_writes_are_serialized(self):
        store = _SlowStore(delay=0.02)
        coordinator = ConcurrencyCoordinator(store)

        with ThreadPoolExecutor(max_workers=8) as pool:
            docs = list(pool.map(
                lambda n: coordinator.submit_write(
                    WriteIntent(key="guild-42", patch={"max_warnings": n % 20 + 1})
                ),
                range(8),
            ))

        assert sorted(d.version for d in docs) == list(range(1, 9))
        assert store.max_per_key == 1
        assert store.read("guild-42").version == 8

    def test_distinct_keys_proceed_in_parallel(self):
        store = _SlowStore(delay=0.1)
        coordinator = ConcurrencyCoordinator(store)

        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(
                lambda n: coordinator.submit_write(WriteIntent(key=f"guild-{n}")),
                range(4),
            ))

        assert store.max_per_key == 1
        assert store.max_overall > 1

    def test_optimistic_read_modify_write_loses_nothing(self, coordinator):
        coordinator.submit_write(WriteIntent(key="guild-42"))

        def disable(command: str) -> None:
            while True:
                current = coordinator.submit_read("guild-42")
                commands = current.payload["disabled_commands"] + [command]
                try:
                    coordinator.submit_write(WriteIntent(
                        key="guild-42",
                        expected_version=current.version,
                        patch={"disabled_commands": commands},
                    ))
                    return
                except ConflictError:
                    continue

        commands = [f"cmd{i}" for i in range(10)]
        with ThreadPoolExecutor(max_workers=5) as pool:
            list(pool.map(disable, commands))

        final = coordinator.submit_read("guild-42")
        assert sorted(final.payload["disabled_commands"]) == sorted(commands)
        assert final.version == 11

    def test_abandoned_writer_has_no_effect(self):
        store = _SlowStore(delay=0.3)
        coordinator = ConcurrencyCoordinator(store)
        started = threading.Event()

        def slow_writer():
            started.set()
            coordinator.submit_write(WriteIntent(key="guild-42", patch={"prefix": "?"}))

        t = threading.Thread(target=slow_writer)
        t.start()
        started.wait()
        assert _wait_for_lock(coordinator, "guild-42")

        with pytest.raises(LockTimeoutError):
            coordinator.submit_write(
                WriteIntent(key="guild-42", patch={"prefix": "$"}), timeout=0.01
            )
        t.join()

        doc = store.read("guild-42")
        assert doc.version == 1
        assert doc.payload["prefix"] == "?"


def _wait_for_lock(coordinator, key: str, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if coordinator.locks.is_locked(key):
            return True
        time.sleep(0.001)
    return False
