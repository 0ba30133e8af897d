"""guildsync data models."""

from guildsync.models.config import ConfigDocument, NotificationEvent, WriteIntent
from guildsync.models.notifier import DeliveryFailureRecord, DeliveryStatus
from guildsync.models.schema import SchemaDefinition
from guildsync.models.settings import (
    CoordinatorSettings,
    NotifierSettings,
    ServiceSettings,
    StoreSettings,
)

__all__ = [
    "ConfigDocument",
    "CoordinatorSettings",
    "DeliveryFailureRecord",
    "DeliveryStatus",
    "NotificationEvent",
    "NotifierSettings",
    "SchemaDefinition",
    "ServiceSettings",
    "StoreSettings",
    "WriteIntent",
]
