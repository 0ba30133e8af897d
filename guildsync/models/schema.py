"""Schema definitions — one per supported payload version."""

from typing import Callable, List, Optional, Type

from pydantic import BaseModel, ConfigDict


class SchemaDefinition(BaseModel):
    """
    Describes one schema version of the guild payload.

    `payload_model` declares allowed fields, their types, defaults and value
    ranges. `migrate_from_previous` turns a payload of version - 1 into a
    payload of this version and must be a pure, total function.
    `requires` lists the fields that migration must produce; defaults do not
    fill them in.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    version: int
    payload_model: Type[BaseModel]
    migrate_from_previous: Optional[Callable[[dict], dict]] = None
    requires: List[str] = []
    description: str = ""
