"""Sync server configuration via environment variables."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, EnvSettingsSource

from sync.rooms.models import RoomLimits

if TYPE_CHECKING:
    from pydantic.fields import FieldInfo
    from pydantic_settings.sources.base import PydanticBaseSettingsSource


def parse_origins(value: str | list[str]) -> list[str]:
    """Parse CORS origins from a list, a JSON array string or a comma-separated string.

    Raises ValueError for blank strings, malformed JSON or an empty result.
    """
    if isinstance(value, list):
        origins = value
    else:
        stripped = value.strip()
        if stripped.startswith("["):
            try:
                origins = json.loads(stripped)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON array: {e}") from e
            if not isinstance(origins, list) or not all(isinstance(item, str) for item in origins):
                raise ValueError("JSON value must be an array of strings")
        else:
            origins = [part.strip() for part in stripped.split(",") if part.strip()]
    if not origins:
        raise ValueError("cors_origins must not be empty")
    return origins


class OriginsEnvSettingsSource(EnvSettingsSource):
    """Hand ``cors_origins`` to its validator as a raw string.

    pydantic-settings JSON-decodes list fields before validators run, which
    would reject the comma-separated form.
    """

    def prepare_field_value(
        self,
        field_name: str,
        field: FieldInfo,
        value: Any,  # noqa: ANN401
        value_is_complex: bool,  # noqa: FBT001
    ) -> Any:  # noqa: ANN401
        if field_name == "cors_origins" and isinstance(value, str):
            return value
        return super().prepare_field_value(field_name, field, value, value_is_complex)


class SyncServerSettings(BaseSettings):
    model_config = {"env_prefix": "SYNC_"}

    strategy: Literal["pull", "push"] = "pull"
    cors_origins: list[str] = ["*"]
    log_dir: str | None = None
    max_rooms: int | None = Field(default=None, ge=1)

    room_ttl_seconds: float = Field(default=3600, gt=0)
    participant_timeout_seconds: float = Field(default=300, gt=0)
    event_log_capacity: int = Field(default=50, ge=1)
    recent_events_limit: int = Field(default=10, ge=1)
    max_active_players: int = Field(default=4, ge=0)
    room_code_length: int = Field(default=6, ge=4, le=16)

    sweep_interval_seconds: float = Field(default=3600, gt=0)
    sweep_probability: float = Field(default=0.1, ge=0.0, le=1.0)
    channel_queue_size: int = Field(default=256, ge=1)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def validate_cors_origins(cls, v: str | list[str]) -> list[str]:
        return parse_origins(v)

    @property
    def room_limits(self) -> RoomLimits:
        return RoomLimits(
            participant_timeout_seconds=self.participant_timeout_seconds,
            room_ttl_seconds=self.room_ttl_seconds,
            event_log_capacity=self.event_log_capacity,
            recent_events_limit=self.recent_events_limit,
            max_active_players=self.max_active_players,
        )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return init_settings, OriginsEnvSettingsSource(settings_cls), dotenv_settings, file_secret_settings
