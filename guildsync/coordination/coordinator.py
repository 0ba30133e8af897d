"""
Concurrency Coordinator — the only write path into the Config Store.

Behavioral Contract:
- At most one in-flight mutation per key; writers for the same key are served
  in arrival order, writers for distinct keys proceed in parallel.
- Inside the critical section: read, migrate to the current schema, check the
  expected version, merge, validate, bump the version, atomically write.
- A version mismatch is reported as ConflictError before storage is touched.
- Commit listeners are informed inside the critical section so events leave
  in commit order; they must only enqueue, never block on I/O.
- Reads take no lock. The store's atomic replace guarantees they observe a
  whole document.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from guildsync.coordination.key_locks import KeyLockRegistry
from guildsync.errors import (
    ConfigDeletedError,
    ConfigNotFoundError,
    ConflictError,
    MigrationError,
    StoreIOError,
)
from guildsync.models.config import ConfigDocument, NotificationEvent, WriteIntent
from guildsync.models.settings import CoordinatorSettings
from guildsync.schema.validator import SchemaValidator
from guildsync.store.config_store import ConfigStore, normalize_key

logger = logging.getLogger(__name__)

_MISSING = object()

CommitListener = Callable[[NotificationEvent], None]


class ConcurrencyCoordinator:
    """Serializes mutations per key and detects conflicting writes."""

    def __init__(
        self,
        store: ConfigStore,
        validator: Optional[SchemaValidator] = None,
        settings: Optional[CoordinatorSettings] = None,
        locks: Optional[KeyLockRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.validator = validator or SchemaValidator()
        self.settings = settings or CoordinatorSettings()
        self.locks = locks or KeyLockRegistry()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._listeners: List[CommitListener] = []

    def add_commit_listener(self, listener: CommitListener) -> None:
        self._listeners.append(listener)

    # --- Reads ---

    def submit_read(self, key: str, include_deleted: bool = False) -> ConfigDocument:
        """Latest committed document, presented at the current schema version."""
        key = normalize_key(key)
        stored = self.store.read(key)
        if stored is None or (stored.deleted and not include_deleted):
            raise ConfigNotFoundError(key)
        return self.validator.migrate(stored)

    # --- Writes ---

    def submit_write(
        self,
        intent: WriteIntent,
        timeout: Optional[float] = None,
        must_exist: bool = False,
    ) -> ConfigDocument:
        """Apply a patch (or full replacement) under the key's critical section."""
        key = normalize_key(intent.key)
        with self.locks.hold(key, self._timeout(timeout)):
            stored, current = self._load_current(key)
            if must_exist and stored is None:
                raise ConfigNotFoundError(key)
            if current.deleted:
                raise ConfigDeletedError(key, current.version)
            self._check_expected(key, intent.expected_version, current.version)

            base = {} if intent.replace else current.payload
            payload = self.validator.validate(
                {**base, **intent.patch}, self.validator.current_version
            )
            before = current.payload if stored is not None else {}
            return self._commit(stored, current, payload, _changed_fields(before, payload))

    def submit_delete(
        self,
        key: str,
        expected_version: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> ConfigDocument:
        """Write a terminal tombstone for the key. History is kept."""
        key = normalize_key(key)
        with self.locks.hold(key, self._timeout(timeout)):
            stored, current = self._load_current(key)
            if stored is None:
                raise ConfigNotFoundError(key)
            if current.deleted:
                raise ConfigDeletedError(key, current.version)
            self._check_expected(key, expected_version, current.version)
            return self._commit(
                stored, current, {}, sorted(current.payload), deleted=True
            )

    def migrate_key(
        self, key: str, timeout: Optional[float] = None
    ) -> Optional[ConfigDocument]:
        """
        Persist the migrated form of a stored document.
        Returns None when there is nothing to migrate.
        """
        key = normalize_key(key)
        with self.locks.hold(key, self._timeout(timeout)):
            stored = self.store.read(key)
            if (
                stored is None
                or stored.deleted
                or stored.schema_version >= self.validator.current_version
            ):
                return None
            current = self._migrate(stored)
            payload = self.validator.validate(
                current.payload, self.validator.current_version
            )
            return self._commit(
                stored, current, payload, _changed_fields(stored.payload, payload)
            )

    # --- Internals (caller holds the key's section) ---

    def _timeout(self, timeout: Optional[float]) -> Optional[float]:
        return timeout if timeout is not None else self.settings.lock_timeout_seconds

    def _load_current(
        self, key: str
    ) -> Tuple[Optional[ConfigDocument], ConfigDocument]:
        """Stored document (or None) and its view at the current schema version."""
        stored = self.store.read(key)
        if stored is None:
            return None, ConfigDocument(
                key=key,
                schema_version=self.validator.current_version,
                version=0,
                payload=self.validator.defaults(),
                last_modified=self._clock(),
            )
        return stored, self._migrate(stored)

    def _migrate(self, stored: ConfigDocument) -> ConfigDocument:
        try:
            return self.validator.migrate(stored)
        except MigrationError as e:
            logger.error("Document %s v%d cannot be migrated: %s", stored.key, stored.version, e)
            raise

    def _check_expected(self, key: str, expected: Optional[int], actual: int) -> None:
        if expected is not None and expected != actual:
            logger.warning(
                "Rejected write to %s: expected version %d, found %d", key, expected, actual
            )
            raise ConflictError(key, expected, actual)

    def _commit(
        self,
        stored: Optional[ConfigDocument],
        current: ConfigDocument,
        payload: dict,
        changed_fields: List[str],
        deleted: bool = False,
    ) -> ConfigDocument:
        document = ConfigDocument(
            key=current.key,
            schema_version=self.validator.current_version,
            version=current.version + 1,
            payload=payload,
            last_modified=self._clock(),
            deleted=deleted,
        )
        self._write(document, expected_version=stored.version if stored else 0)
        logger.info(
            "Committed %s v%d%s (%d field(s) changed)",
            document.key,
            document.version,
            " [tombstone]" if deleted else "",
            len(changed_fields),
        )

        self._publish(
            NotificationEvent(
                key=document.key,
                new_version=document.version,
                changed_fields=changed_fields,
                deleted=deleted,
                committed_at=document.last_modified,
            )
        )
        return document

    def _write(self, document: ConfigDocument, expected_version: int) -> None:
        attempts = 1 + self.settings.write_retries
        for attempt in range(1, attempts + 1):
            try:
                self.store.write(document, expected_version=expected_version)
                return
            except StoreIOError as e:
                if attempt == attempts:
                    logger.error("Write of %s v%d failed: %s", document.key, document.version, e)
                    raise
                logger.warning(
                    "Write of %s v%d failed (attempt %d/%d), retrying: %s",
                    document.key, document.version, attempt, attempts, e,
                )

    def _publish(self, event: NotificationEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                # The write is already durable; a listener cannot undo it.
                logger.exception("Commit listener failed for %s v%d", event.key, event.new_version)


def _changed_fields(before: dict, after: dict) -> List[str]:
    return sorted(
        name
        for name in set(before) | set(after)
        if before.get(name, _MISSING) != after.get(name, _MISSING)
    )
