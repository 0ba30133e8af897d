"""Notification delivery bookkeeping."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    QUEUED = "queued"
    DROPPED = "dropped"


class DeliveryFailureRecord(BaseModel):
    """Operator-visible record of an event that was given up on."""

    key: str
    new_version: int
    attempts: int
    reason: str
    failed_at: datetime
