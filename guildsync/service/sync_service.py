"""
Synchronization Service — the public contract for the transport layer.

Composes the Config Store, Schema Validator, Concurrency Coordinator and
Change Notifier. Errors from the components propagate unchanged as typed
exceptions (see guildsync.errors) so the caller keeps the field names and
version numbers they carry.
"""

import logging
from typing import Any, Dict, Iterator, List, Optional

from guildsync.coordination.coordinator import ConcurrencyCoordinator
from guildsync.errors import ConfigSyncError
from guildsync.models.config import ConfigDocument, NotificationEvent, WriteIntent
from guildsync.models.settings import NotifierSettings, ServiceSettings
from guildsync.notifier.notifier import ChangeNotifier, EventSink, HttpEventSink, LogOnlySink
from guildsync.schema.guild_schema import ALLOWED_LANGS
from guildsync.schema.validator import SchemaValidator
from guildsync.store.config_store import ConfigStore, FileConfigStore, normalize_key

logger = logging.getLogger(__name__)


def build_sink(settings: NotifierSettings) -> EventSink:
    if settings.endpoint_url:
        return HttpEventSink(settings.endpoint_url, timeout=settings.request_timeout_seconds)
    return LogOnlySink()


class SynchronizationService:
    """Façade over the configuration core."""

    def __init__(
        self,
        store: Optional[ConfigStore] = None,
        validator: Optional[SchemaValidator] = None,
        notifier: Optional[ChangeNotifier] = None,
        settings: Optional[ServiceSettings] = None,
    ):
        self.settings = settings or ServiceSettings()
        self.store = store or FileConfigStore(self.settings.store.data_dir)
        self.validator = validator or SchemaValidator()
        self.coordinator = ConcurrencyCoordinator(
            store=self.store,
            validator=self.validator,
            settings=self.settings.coordinator,
        )
        self.notifier = notifier or ChangeNotifier(
            build_sink(self.settings.notifier), self.settings.notifier
        )
        self.coordinator.add_commit_listener(self._on_commit)

    def _on_commit(self, event: NotificationEvent) -> None:
        self.notifier.notify(event)

    def start(self) -> None:
        self.notifier.start()

    def stop(self) -> None:
        self.notifier.stop()
        if isinstance(self.notifier.sink, HttpEventSink):
            self.notifier.sink.close()

    # === READS ===

    def get_config(self, key: str) -> ConfigDocument:
        return self.coordinator.submit_read(key)

    def exists(self, key: str) -> bool:
        """True when the key has a live (non-tombstoned) document."""
        document = self.store.read(normalize_key(key))
        return document is not None and not document.deleted

    def iter_keys(self, include_deleted: bool = False, start_after: Optional[str] = None) -> Iterator[str]:
        return self.store.list_keys(include_deleted=include_deleted, start_after=start_after)

    def list_keys(self, include_deleted: bool = False) -> List[str]:
        return list(self.iter_keys(include_deleted=include_deleted))

    # === WRITES ===

    def submit(self, intent: WriteIntent, timeout: Optional[float] = None) -> ConfigDocument:
        return self.coordinator.submit_write(intent, timeout=timeout)

    def update_config(
        self,
        key: str,
        patch: Dict[str, Any],
        expected_version: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> ConfigDocument:
        """Merge a partial patch; creates the document on first write."""
        intent = WriteIntent(key=key, expected_version=expected_version, patch=patch)
        return self.coordinator.submit_write(intent, timeout=timeout)

    def replace_config(
        self,
        key: str,
        payload: Dict[str, Any],
        expected_version: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> ConfigDocument:
        """Replace the whole payload of an existing document."""
        intent = WriteIntent(
            key=key, expected_version=expected_version, patch=payload, replace=True
        )
        return self.coordinator.submit_write(intent, timeout=timeout, must_exist=True)

    def delete_config(
        self,
        key: str,
        expected_version: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> ConfigDocument:
        return self.coordinator.submit_delete(key, expected_version, timeout=timeout)

    # === SCHEMA ===

    def available_languages(self) -> List[str]:
        return list(ALLOWED_LANGS)

    def schema_info(self) -> dict:
        return {
            "current_version": self.validator.current_version,
            "defaults": self.validator.defaults(),
        }

    def migrate_all(self) -> dict:
        """
        Persist every stored document at the current schema version.
        Failures are collected per key and reported, never skipped silently.
        """
        migrated: List[str] = []
        up_to_date = 0
        failed: Dict[str, str] = {}

        for key in self.store.list_keys(include_deleted=True):
            try:
                document = self.coordinator.migrate_key(key)
            except ConfigSyncError as e:
                logger.error("Backfill of %s failed: %s", key, e)
                failed[key] = str(e)
                continue
            if document is None:
                up_to_date += 1
            else:
                migrated.append(key)

        logger.info(
            "Backfill finished: %d migrated, %d up to date, %d failed",
            len(migrated), up_to_date, len(failed),
        )
        return {"migrated": migrated, "up_to_date": up_to_date, "failed": failed}

    def notification_status(self) -> dict:
        return self.notifier.status()
