"""Configuration records — the persisted document and the requests that change it."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ConfigDocument(BaseModel):
    """The persisted unit for one guild's configuration."""

    key: str
    schema_version: int = Field(ge=1)
    version: int = Field(ge=0)              # Monotonic per key, 0 = never written by this service
    payload: dict = {}
    last_modified: datetime
    deleted: bool = False                   # Tombstone marker, terminal once set


class WriteIntent(BaseModel):
    """A caller's proposed change to one key."""

    key: str
    expected_version: Optional[int] = Field(default=None, ge=0)
    patch: Dict[str, Any] = {}
    replace: bool = False                   # Replace the payload instead of merging the patch


class NotificationEvent(BaseModel):
    """Emitted after a successful write, delivered at-least-once to the bot."""

    key: str
    new_version: int = Field(ge=1)
    changed_fields: List[str] = []
    deleted: bool = False
    committed_at: datetime
