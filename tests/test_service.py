"""Tests for the Synchronization Service façade."""

import json

import pytest

from guildsync.errors import (
    ConfigNotFoundError,
    ConfigValidationError,
    ConflictError,
)
from guildsync.models.settings import NotifierSettings, ServiceSettings, StoreSettings
from guildsync.notifier.notifier import ChangeNotifier, HttpEventSink, LogOnlySink
from guildsync.notifier.receiver import ConfigEventReceiver
from guildsync.service.sync_service import SynchronizationService, build_sink
from guildsync.store.config_store import FileConfigStore


class ReceiverSink:
    def __init__(self, receiver: ConfigEventReceiver):
        self.receiver = receiver

    def deliver(self, event) -> None:
        self.receiver.apply(event)


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "servers"


@pytest.fixture
def receiver():
    return ConfigEventReceiver()


@pytest.fixture
def service(data_dir, receiver):
    settings = ServiceSettings(
        store=StoreSettings(data_dir=str(data_dir)),
        notifier=NotifierSettings(initial_backoff_seconds=0.001, max_backoff_seconds=0.01),
    )
    svc = SynchronizationService(
        settings=settings,
        notifier=ChangeNotifier(ReceiverSink(receiver), settings.notifier),
    )
    svc.start()
    yield svc
    svc.stop()


class TestReadWrite:
    def test_scenario_from_first_write_to_conflict(self, service):
        first = service.update_config("guild-42", {"prefix": "!"})
        assert first.version == 1
        assert first.payload["prefix"] == "!"
        assert first.payload["language"] == "en"

        second = service.update_config("guild-42", {"prefix": "?"}, expected_version=1)
        assert second.version == 2
        assert second.payload["prefix"] == "?"

        with pytest.raises(ConflictError) as exc_info:
            service.update_config("guild-42", {"prefix": "$"}, expected_version=1)
        assert (exc_info.value.expected, exc_info.value.actual) == (1, 2)
        assert service.get_config("guild-42").version == 2

    def test_get_unknown(self, service):
        with pytest.raises(ConfigNotFoundError):
            service.get_config("guild-42")

    def test_validation_error_keeps_field(self, service):
        with pytest.raises(ConfigValidationError) as exc_info:
            service.update_config("guild-42", {"language": "de"})
        assert exc_info.value.field == "language"

    def test_replace_requires_existing(self, service):
        with pytest.raises(ConfigNotFoundError):
            service.replace_config("guild-42", {"prefix": "?"})

        service.update_config("guild-42", {"max_warnings": 8})
        doc = service.replace_config("guild-42", {"prefix": "?"}, expected_version=1)
        assert doc.payload["max_warnings"] == 3
        assert doc.payload["prefix"] == "?"

    def test_persisted_as_one_file_per_guild(self, service, data_dir):
        service.update_config("guild-42", {"prefix": "?"})
        raw = json.loads((data_dir / "guild-42.json").read_text(encoding="utf-8"))
        assert raw["version"] == 1
        assert raw["schema_version"] == 3
        assert raw["payload"]["prefix"] == "?"


class TestGuildListing:
    def test_list_and_exists(self, service):
        service.update_config("2", {})
        service.update_config("1", {})
        service.update_config("3", {})
        service.delete_config("3")

        assert service.list_keys() == ["1", "2"]
        assert service.list_keys(include_deleted=True) == ["1", "2", "3"]
        assert service.exists("1")
        assert not service.exists("3")
        assert not service.exists("wrong_id")

    def test_languages(self, service):
        assert service.available_languages() == ["en", "fr"]

    def test_schema_info(self, service):
        info = service.schema_info()
        assert info["current_version"] == 3
        assert info["defaults"]["prefix"] == "!"


class TestNotifications:
    def test_bot_receives_every_commit(self, service, receiver):
        for prefix in ("!", "?", "$"):
            service.update_config("guild-42", {"prefix": prefix})
        service.delete_config("guild-42")

        assert service.notifier.flush(timeout=2)
        assert receiver.last_version("guild-42") == 4
        assert receiver.applied == 4

    def test_status(self, service):
        service.update_config("guild-42", {})
        assert service.notifier.flush(timeout=2)
        status = service.notification_status()
        assert status["delivered"] == 1
        assert status["failed"] == 0

    def test_default_sink_choice(self):
        assert isinstance(build_sink(NotifierSettings()), LogOnlySink)
        sink = build_sink(NotifierSettings(endpoint_url="http://bot.local/hook"))
        assert isinstance(sink, HttpEventSink)
        sink.close()


class TestBackfill:
    def test_migrate_all_reports_each_key(self, service, data_dir):
        service.update_config("current", {})
        (data_dir / "legacy.json").write_text(
            json.dumps({"prefix": "?", "lang": "fr"}), encoding="utf-8"
        )
        (data_dir / "54654564.json").write_text("{}", encoding="utf-8")
        (data_dir / "broken.json").write_text(
            json.dumps({"prefix": "?", "lang": "de"}), encoding="utf-8"
        )

        report = service.migrate_all()

        assert report["migrated"] == ["54654564", "legacy"]
        assert report["up_to_date"] == 1
        assert set(report["failed"]) == {"broken"}
        assert "lang" in report["failed"]["broken"]

        store = FileConfigStore(data_dir)
        legacy = store.read("legacy")
        assert legacy.version == 1
        assert legacy.schema_version == 3
        assert legacy.payload["language"] == "fr"
        assert store.read("54654564").payload["language"] == "en"
        # Broken document untouched
        assert json.loads((data_dir / "broken.json").read_text(encoding="utf-8")) == {
            "prefix": "?",
            "lang": "de",
        }
