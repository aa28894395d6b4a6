"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings

from qqbridge.config.defaults import DEFAULT_BOT_USERNAME, DEFAULT_BRIDGE, DEFAULT_MEDIA


class HomeserverConfig(BaseModel):
    """Matrix homeserver the appservice is registered with."""

    model_config = ConfigDict(extra="ignore")

    address: str = "http://localhost:8008"
    domain: str = "localhost"
    async_media: bool = False


class AppServiceConfig(BaseModel):
    """Appservice registration and bot identity."""

    model_config = ConfigDict(extra="ignore")

    id: str = "qq"
    as_token: str = ""
    hs_token: str = ""
    bot_username: str = DEFAULT_BOT_USERNAME
    bot_displayname: str = "QQ bridge bot"
    bot_avatar: str = ""


class EncryptionConfig(BaseModel):
    """End-to-bridge encryption switches."""

    model_config = ConfigDict(extra="ignore")

    allow: bool = bool(DEFAULT_BRIDGE["encryption"]["allow"])
    default: bool = bool(DEFAULT_BRIDGE["encryption"]["default"])

    @model_validator(mode="after")
    def _default_requires_allow(self) -> "EncryptionConfig":
        if self.default and not self.allow:
            raise ValueError("bridge.encryption.default requires bridge.encryption.allow")
        return self


class BridgeConfig(BaseModel):
    """Portal, puppet and resync behaviour."""

    model_config = ConfigDict(extra="ignore")

    username_template: str = str(DEFAULT_BRIDGE["username_template"])
    displayname_template: str = str(DEFAULT_BRIDGE["displayname_template"])
    portal_message_buffer: int = Field(default=int(DEFAULT_BRIDGE["portal_message_buffer"]), ge=1)
    user_avatar_sync: bool = bool(DEFAULT_BRIDGE["user_avatar_sync"])
    private_chat_portal_meta: bool = bool(DEFAULT_BRIDGE["private_chat_portal_meta"])
    allow_user_invite: bool = bool(DEFAULT_BRIDGE["allow_user_invite"])
    federate_rooms: bool = bool(DEFAULT_BRIDGE["federate_rooms"])
    message_error_notices: bool = bool(DEFAULT_BRIDGE["message_error_notices"])
    parallel_member_sync: bool = bool(DEFAULT_BRIDGE["parallel_member_sync"])
    reply_fallback_window_seconds: int = Field(
        default=int(DEFAULT_BRIDGE["reply_fallback_window_seconds"]), ge=0
    )
    native_single_image: bool = bool(DEFAULT_BRIDGE["native_single_image"])
    resync_min_interval_seconds: int = Field(default=int(DEFAULT_BRIDGE["resync_min_interval_seconds"]), ge=0)
    resync_interval_seconds: int = Field(default=int(DEFAULT_BRIDGE["resync_interval_seconds"]), ge=1)
    resync_jitter_seconds: int = Field(default=int(DEFAULT_BRIDGE["resync_jitter_seconds"]), ge=0)
    bridge_info_prefix: str = str(DEFAULT_BRIDGE["bridge_info_prefix"])
    encryption: EncryptionConfig = Field(default_factory=EncryptionConfig)

    @model_validator(mode="after")
    def _validate_templates(self) -> "BridgeConfig":
        if "{uin}" not in self.username_template:
            raise ValueError("bridge.usernameTemplate must contain {uin}")
        if self.resync_jitter_seconds >= self.resync_interval_seconds:
            raise ValueError("bridge.resyncJitterSeconds must be smaller than bridge.resyncIntervalSeconds")
        return self


class MediaConfig(BaseModel):
    """Media limits and external transcoder commands."""

    model_config = ConfigDict(extra="ignore")

    max_file_size_mb: int = Field(default=int(DEFAULT_MEDIA["max_file_size_mb"]), ge=1)
    ffmpeg_path: str = str(DEFAULT_MEDIA["ffmpeg_path"])
    silk_encoder: str = str(DEFAULT_MEDIA["silk_encoder"])
    silk_decoder: str = str(DEFAULT_MEDIA["silk_decoder"])
    timeout_seconds: int = Field(default=int(DEFAULT_MEDIA["timeout_seconds"]), ge=1)
    avatar_timeout_seconds: int = Field(default=int(DEFAULT_MEDIA["avatar_timeout_seconds"]), ge=1)

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024


class DatabaseConfig(BaseModel):
    """SQLite bridge database."""

    model_config = ConfigDict(extra="ignore")

    path: str = ""  # empty means <data dir>/bridge.db

    @property
    def resolved_path(self) -> Path:
        from qqbridge.utils.helpers import get_data_path

        if not self.path:
            return get_data_path() / "bridge.db"
        candidate = Path(self.path).expanduser()
        return candidate if candidate.is_absolute() else get_data_path() / candidate


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    level: Literal["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class Config(BaseSettings):
    """Root configuration for qqbridge."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True, env_prefix="QQBRIDGE_", env_nested_delimiter="__")

    config_version: int = 2
    homeserver: HomeserverConfig = Field(default_factory=HomeserverConfig)
    appservice: AppServiceConfig = Field(default_factory=AppServiceConfig)
    bridge: BridgeConfig = Field(default_factory=BridgeConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def bot_mxid(self) -> str:
        return f"@{self.appservice.bot_username}:{self.homeserver.domain}"
