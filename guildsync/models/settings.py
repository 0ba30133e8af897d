"""Service settings. Every field has a default; environment overrides are optional."""

import logging
import os
from typing import Literal, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ENV_PREFIX = "GUILDSYNC_"


class StoreSettings(BaseModel):
    """Where configuration documents live on disk."""

    data_dir: str = "emulated/servers"


class CoordinatorSettings(BaseModel):
    """Per-key serialization behaviour."""

    lock_timeout_seconds: Optional[float] = Field(default=10.0, gt=0)
    write_retries: int = Field(default=0, ge=0, le=5)


class NotifierSettings(BaseModel):
    """Delivery of change notifications to the bot."""

    endpoint_url: Optional[str] = None
    max_attempts: int = Field(default=5, ge=1)
    initial_backoff_seconds: float = Field(default=0.5, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_backoff_seconds: float = Field(default=30.0, ge=0)
    queue_capacity: int = Field(default=1000, ge=1)
    overflow_policy: Literal["drop_oldest", "reject"] = "drop_oldest"
    lanes: int = Field(default=4, ge=1, le=64)
    request_timeout_seconds: float = Field(default=5.0, gt=0)
    failure_history: int = Field(default=100, ge=1)


class ServiceSettings(BaseModel):
    """Top-level settings for the synchronization service."""

    store: StoreSettings = StoreSettings()
    coordinator: CoordinatorSettings = CoordinatorSettings()
    notifier: NotifierSettings = NotifierSettings()
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "ServiceSettings":
        """
        Build settings from GUILDSYNC_* variables.

        Section fields use a double underscore, e.g. GUILDSYNC_NOTIFIER__MAX_ATTEMPTS.
        Top-level fields use a single name, e.g. GUILDSYNC_LOG_LEVEL.
        """
        environ = os.environ if environ is None else environ
        data: dict = {}
        for name, value in environ.items():
            if not name.startswith(ENV_PREFIX):
                continue
            path = name[len(ENV_PREFIX):].lower().split("__")
            field = cls.model_fields.get(path[0])
            if len(path) == 1 and field is not None:
                data[path[0]] = value
            elif (
                len(path) == 2
                and field is not None
                and isinstance(field.default, BaseModel)
                and path[1] in type(field.default).model_fields
            ):
                data.setdefault(path[0], {})[path[1]] = value
            else:
                logger.warning("Ignoring unknown setting %s", name)
        return cls.model_validate(data)
