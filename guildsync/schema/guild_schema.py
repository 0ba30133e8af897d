"""
Guild configuration payload, versioned.

v1  What the bot originally wrote: prefix, lang, welcome channel, disabled
    commands, warning threshold.
v2  `lang` renamed to `language`; adds `log_channel_id` and `timezone`.
v3  Channel ids folded into a single `channels` mapping.
"""

from typing import Annotated, Dict, List, Literal, Optional, get_args

from pydantic import BaseModel, ConfigDict, Field

from guildsync.models.schema import SchemaDefinition

Language = Literal["en", "fr"]
Prefix = Annotated[str, Field(pattern=r"^\S{1,5}$")]
MaxWarnings = Annotated[int, Field(ge=1, le=20)]
ChannelId = Annotated[int, Field(ge=0)]
Timezone = Annotated[str, Field(min_length=1, max_length=64)]

ALLOWED_LANGS = list(get_args(Language))


class GuildConfigV1(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    prefix: Prefix = "!"
    lang: Language = "en"
    welcome_channel_id: Optional[ChannelId] = None
    disabled_commands: List[str] = []
    max_warnings: MaxWarnings = 3


class GuildConfigV2(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    prefix: Prefix = "!"
    language: Language = "en"
    welcome_channel_id: Optional[ChannelId] = None
    log_channel_id: Optional[ChannelId] = None
    disabled_commands: List[str] = []
    max_warnings: MaxWarnings = 3
    timezone: Timezone = "UTC"


class GuildConfigV3(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    prefix: Prefix = "!"
    language: Language = "en"
    channels: Dict[str, ChannelId] = {}     # purpose -> channel id, e.g. "welcome", "log"
    disabled_commands: List[str] = []
    max_warnings: MaxWarnings = 3
    timezone: Timezone = "UTC"


def migrate_v1_to_v2(payload: dict) -> dict:
    migrated = dict(payload)
    if "lang" in migrated:
        migrated["language"] = migrated.pop("lang")
    migrated.setdefault("timezone", "UTC")
    return migrated


def migrate_v2_to_v3(payload: dict) -> dict:
    migrated = dict(payload)
    channels = {}
    for purpose in ("welcome", "log"):
        channel_id = migrated.pop(f"{purpose}_channel_id", None)
        if channel_id is not None:
            channels[purpose] = channel_id
    migrated["channels"] = channels
    return migrated


GUILD_SCHEMAS = [
    SchemaDefinition(
        version=1,
        payload_model=GuildConfigV1,
        description="Original bot configuration",
    ),
    SchemaDefinition(
        version=2,
        payload_model=GuildConfigV2,
        migrate_from_previous=migrate_v1_to_v2,
        requires=["language"],
        description="Rename lang to language, add log channel and timezone",
    ),
    SchemaDefinition(
        version=3,
        payload_model=GuildConfigV3,
        migrate_from_previous=migrate_v2_to_v3,
        requires=["channels"],
        description="Channel ids grouped under channels",
    ),
]

CURRENT_SCHEMA_VERSION = GUILD_SCHEMAS[-1].version
