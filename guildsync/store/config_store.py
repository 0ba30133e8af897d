"""
Config Store — durable, key-addressed storage of configuration documents.

Behavioral Contract:
- One JSON document per key, named <key>.json inside the data directory.
- The only mutation primitive is a full-document atomic replace:
  write to a temporary file in the same directory, fsync, then os.replace().
- A failed write never promotes its temporary file; the previous document
  stays untouched and the error surfaces as StoreIOError.
- The store never retries. Retry policy belongs to the coordinator.
- Files written by the bot as a bare payload (no envelope) are read as
  legacy documents at schema version 1, version 0.
"""

import json
import logging
import os
import re
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, Optional, Protocol, Union

from pydantic import ValidationError

from guildsync.errors import ConflictError, InvalidKeyError, StoreIOError
from guildsync.models.config import ConfigDocument

logger = logging.getLogger(__name__)

KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
DOCUMENT_SUFFIX = ".json"
TEMP_SUFFIX = ".tmp"
ENVELOPE_FIELDS = {"key", "schema_version", "version", "payload", "last_modified"}
LEGACY_SCHEMA_VERSION = 1


def normalize_key(key: Union[str, int]) -> str:
    """Turn a guild identifier into a ConfigKey, rejecting anything unsafe."""
    if isinstance(key, bool):
        raise InvalidKeyError(key)
    if isinstance(key, int):
        key = str(key)
    if not isinstance(key, str) or not KEY_PATTERN.match(key):
        raise InvalidKeyError(key)
    return key


class ConfigStore(Protocol):
    """Storage backend used by the coordinator."""

    def read(self, key: str) -> Optional[ConfigDocument]:
        ...

    def write(
        self, document: ConfigDocument, expected_version: Optional[int] = None
    ) -> None:
        ...

    def list_keys(
        self, include_deleted: bool = False, start_after: Optional[str] = None
    ) -> Iterator[str]:
        ...


class FileConfigStore:
    """
    File-backed store. Safe against torn reads and partial writes; readers
    see either the previous or the next document, never a mix.
    """

    def __init__(self, data_dir: Union[str, Path]):
        self.data_dir = Path(data_dir)
        self.discard_stale_temp_files()

    def _path(self, key: str) -> Path:
        return self.data_dir / f"{key}{DOCUMENT_SUFFIX}"

    def discard_stale_temp_files(self) -> int:
        """Remove temporary files left behind by writes that never completed."""
        if not self.data_dir.is_dir():
            return 0
        removed = 0
        for entry in self.data_dir.iterdir():
            if entry.name.startswith(".") and entry.name.endswith(TEMP_SUFFIX):
                try:
                    entry.unlink()
                    removed += 1
                except FileNotFoundError:
                    continue
        if removed:
            logger.warning("Discarded %d incomplete write(s) in %s", removed, self.data_dir)
        return removed

    def exists(self, key: str) -> bool:
        return self._path(normalize_key(key)).is_file()

    def read(self, key: str) -> Optional[ConfigDocument]:
        """Return the last committed document for a key, or None."""
        key = normalize_key(key)
        path = self._path(key)
        try:
            raw_text = path.read_text(encoding="utf-8")
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreIOError(key, str(e)) from e

        try:
            raw = json.loads(raw_text)
        except ValueError as e:
            raise StoreIOError(key, f"corrupt document: {e}") from e
        return self._decode(key, raw, mtime)

    def _decode(self, key: str, raw: object, mtime: float) -> ConfigDocument:
        if not isinstance(raw, dict):
            raise StoreIOError(key, "document is not a JSON object")

        if ENVELOPE_FIELDS <= raw.keys():
            try:
                document = ConfigDocument.model_validate(raw)
            except ValidationError as e:
                raise StoreIOError(key, f"corrupt document: {e}") from e
            if document.key != key:
                raise StoreIOError(
                    key, f"document is filed under {key} but names {document.key}"
                )
            return document

        # Bare payload written directly by the bot
        return ConfigDocument(
            key=key,
            schema_version=LEGACY_SCHEMA_VERSION,
            version=0,
            payload=raw,
            last_modified=datetime.fromtimestamp(mtime, tz=timezone.utc),
        )

    def write(
        self, document: ConfigDocument, expected_version: Optional[int] = None
    ) -> None:
        """
        Atomically replace the document for document.key.

        When expected_version is given, the on-disk version is checked again
        right before the replace so a concurrent external writer is detected.
        """
        key = normalize_key(document.key)
        path = self._path(key)
        body = json.dumps(document.model_dump(mode="json"), indent=2, sort_keys=True)

        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.data_dir, prefix=f".{key}.", suffix=TEMP_SUFFIX
            )
        except OSError as e:
            raise StoreIOError(key, str(e)) from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(body)
                fh.flush()
                os.fsync(fh.fileno())

            if expected_version is not None:
                current = self.read(key)
                actual = current.version if current else 0
                if actual != expected_version:
                    raise ConflictError(key, expected_version, actual)

            os.replace(tmp_name, path)
        except OSError as e:
            self._discard(tmp_name)
            raise StoreIOError(key, str(e)) from e
        except BaseException:
            self._discard(tmp_name)
            raise

        self._sync_directory()

    def _discard(self, tmp_name: str) -> None:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass

    def _sync_directory(self) -> None:
        """Flush the rename itself to disk where the platform allows it."""
        try:
            dir_fd = os.open(self.data_dir, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError as e:
            logger.debug("Directory fsync unsupported for %s: %s", self.data_dir, e)
        finally:
            os.close(dir_fd)

    def list_keys(
        self, include_deleted: bool = False, start_after: Optional[str] = None
    ) -> Iterator[str]:
        """
        Lazily yield stored keys in sorted order.

        Restartable: pass the last key seen as start_after to resume. Unless
        include_deleted is set, unreadable documents are logged and skipped.
        """
        if not self.data_dir.is_dir():
            return
        names = sorted(
            entry.name
            for entry in os.scandir(self.data_dir)
            if entry.is_file()
            and entry.name.endswith(DOCUMENT_SUFFIX)
            and not entry.name.startswith(".")
        )
        for name in names:
            key = name[: -len(DOCUMENT_SUFFIX)]
            if not KEY_PATTERN.match(key):
                continue
            if start_after is not None and key <= start_after:
                continue
            if not include_deleted:
                try:
                    document = self.read(key)
                except StoreIOError as e:
                    logger.error("Skipping unreadable document %s: %s", key, e)
                    continue
                if document is None or document.deleted:
                    continue
            yield key


class InMemoryConfigStore:
    """
    Process-local store with the same contract as FileConfigStore.
    Documents are kept serialized so callers never share mutable state with it.
    """

    def __init__(self):
        self._documents: Dict[str, str] = {}
        self._lock = threading.Lock()

    def exists(self, key: str) -> bool:
        return normalize_key(key) in self._documents

    def read(self, key: str) -> Optional[ConfigDocument]:
        key = normalize_key(key)
        raw = self._documents.get(key)
        return ConfigDocument.model_validate_json(raw) if raw else None

    def write(
        self, document: ConfigDocument, expected_version: Optional[int] = None
    ) -> None:
        key = normalize_key(document.key)
        body = document.model_dump_json()
        with self._lock:
            if expected_version is not None:
                raw = self._documents.get(key)
                actual = ConfigDocument.model_validate_json(raw).version if raw else 0
                if actual != expected_version:
                    raise ConflictError(key, expected_version, actual)
            self._documents[key] = body

    def list_keys(
        self, include_deleted: bool = False, start_after: Optional[str] = None
    ) -> Iterator[str]:
        for key in sorted(self._documents):
            if start_after is not None and key <= start_after:
                continue
            if not include_deleted and self.read(key).deleted:
                continue
            yield key
