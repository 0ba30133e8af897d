"""
Error taxonomy for the configuration synchronization service.

Every component raises these typed errors; the façade propagates them
unchanged and the HTTP layer maps each one to a response that keeps its
distinguishing detail (field name, version numbers).
"""

from typing import Optional


class ConfigSyncError(Exception):
    """Base class for all service errors."""
    pass


class InvalidKeyError(ConfigSyncError):
    """The key cannot name a configuration document."""

    def __init__(self, key: object):
        self.key = key
        super().__init__(f"Invalid config key: {key!r}")


class ConfigNotFoundError(ConfigSyncError):
    """The key has no document yet (or only a tombstone)."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"No configuration for key {key}")


class ConfigValidationError(ConfigSyncError):
    """A payload violates its schema. Never partially applied."""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid value for {field}: {reason}")


class ConflictError(ConfigSyncError):
    """Optimistic concurrency violation. The caller must re-read and retry."""

    def __init__(self, key: str, expected: int, actual: int):
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Version conflict on {key}: expected {expected}, found {actual}"
        )


class MigrationError(ConfigSyncError):
    """A schema migration step could not produce a required field."""

    def __init__(self, from_version: int, to_version: int, missing_field: str):
        self.from_version = from_version
        self.to_version = to_version
        self.missing_field = missing_field
        super().__init__(
            f"Migration v{from_version} -> v{to_version} cannot produce "
            f"required field {missing_field!r}"
        )


class StoreIOError(ConfigSyncError):
    """Underlying storage failed. Durable state is unchanged."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Storage failure for {key}: {reason}")


class ConfigDeletedError(ConfigSyncError):
    """Write attempted against a tombstoned key."""

    def __init__(self, key: str, version: int):
        self.key = key
        self.version = version
        super().__init__(f"Configuration {key} was deleted at version {version}")


class LockTimeoutError(ConfigSyncError):
    """The caller gave up while queued for the key. Nothing was written."""

    def __init__(self, key: str, timeout: Optional[float]):
        self.key = key
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s waiting to write {key}")


class NotificationDeliveryFailure(ConfigSyncError):
    """
    A change notification was given up on.

    Non-fatal: the write it describes stays committed. Recorded by the
    notifier for operator visibility and never raised into a write path.
    """

    def __init__(self, key: str, version: int, attempts: int, reason: str):
        self.key = key
        self.version = version
        self.attempts = attempts
        self.reason = reason
        super().__init__(
            f"Dropped notification for {key} v{version} after "
            f"{attempts} attempt(s): {reason}"
        )
