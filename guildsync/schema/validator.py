"""
Schema Validator — validates payloads and migrates documents across versions.

Behavioral Contract:
- Pure: no hidden state, deterministic, no side effects. Safe to call before
  committing a write, from any thread, without locking.
- validate() checks field presence, types and value ranges for one version
  and returns the normalized payload (defaults filled in).
- migrate() walks the ordered chain of per-version migrations up to the
  current version. Before each step the payload is normalized against its
  source version, so fields the older schema defaults are carried forward.
  A step that still cannot produce a required field raises MigrationError;
  nothing is skipped silently.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, ValidationError

from guildsync.errors import ConfigValidationError, MigrationError
from guildsync.models.config import ConfigDocument
from guildsync.models.schema import SchemaDefinition
from guildsync.schema.guild_schema import GUILD_SCHEMAS


class SchemaValidator:
    """Registry of schema definitions plus the validation and migration logic."""

    def __init__(self, definitions: Optional[List[SchemaDefinition]] = None):
        definitions = definitions if definitions is not None else GUILD_SCHEMAS
        if not definitions:
            raise ValueError("At least one schema definition is required")

        self._definitions: Dict[int, SchemaDefinition] = {}
        for expected, definition in enumerate(
            sorted(definitions, key=lambda d: d.version), start=1
        ):
            if definition.version != expected:
                raise ValueError(
                    f"Schema versions must be contiguous from 1; "
                    f"found {definition.version} where {expected} was expected"
                )
            if expected > 1 and definition.migrate_from_previous is None:
                raise ValueError(f"Schema v{expected} has no migration from v{expected - 1}")
            self._definitions[expected] = definition

    @property
    def current_version(self) -> int:
        return max(self._definitions)

    def definition(self, schema_version: int) -> SchemaDefinition:
        definition = self._definitions.get(schema_version)
        if definition is None:
            raise ConfigValidationError(
                "schema_version", f"unsupported schema version {schema_version}"
            )
        return definition

    def defaults(self, schema_version: Optional[int] = None) -> dict:
        """Default payload for a brand-new document."""
        model = self.definition(schema_version or self.current_version).payload_model
        return model().model_dump(mode="json")

    def validate(self, payload: dict, schema_version: int) -> dict:
        """Validate a payload against one schema version; return it normalized."""
        model = self.definition(schema_version).payload_model
        if not isinstance(payload, dict):
            raise ConfigValidationError("payload", "must be a mapping of field name to value")
        try:
            validated: BaseModel = model.model_validate(payload)
        except ValidationError as e:
            raise _first_error(e) from e
        return validated.model_dump(mode="json")

    def migrate_payload(
        self, payload: dict, from_version: int, to_version: Optional[int] = None
    ) -> dict:
        """Apply each migration step from from_version up to to_version."""
        to_version = to_version or self.current_version
        self.definition(from_version)
        self.definition(to_version)

        migrated = payload
        for version in range(from_version + 1, to_version + 1):
            step = self._definitions[version]
            migrated = step.migrate_from_previous(self.validate(migrated, version - 1))
            for field in step.requires:
                if field not in migrated:
                    raise MigrationError(version - 1, version, field)
        return migrated

    def migrate(self, document: ConfigDocument) -> ConfigDocument:
        """Bring a document up to the current schema version. Version is unchanged."""
        if document.schema_version == self.current_version:
            return document
        if document.schema_version > self.current_version:
            raise ConfigValidationError(
                "schema_version",
                f"document is at v{document.schema_version}, newer than "
                f"supported v{self.current_version}",
            )

        payload = {} if document.deleted else self.migrate_payload(
            document.payload, document.schema_version
        )
        return document.model_copy(
            update={"schema_version": self.current_version, "payload": payload}
        )


def _first_error(error: ValidationError) -> ConfigValidationError:
    """Reduce a pydantic error to the first failing field and its reason."""
    first = error.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ())) or "payload"
    return ConfigValidationError(field, first.get("msg", "invalid value"))
