"""Centralized defaults for generated/migrated config files."""

from __future__ import annotations

from copy import deepcopy
from typing import Any

DEFAULT_BOT_USERNAME = "qqbot"
DEFAULT_USERNAME_TEMPLATE = "qq_{uin}"
DEFAULT_DISPLAYNAME_TEMPLATE = "{display} (QQ)"

DEFAULT_BRIDGE: dict[str, Any] = {
    "username_template": DEFAULT_USERNAME_TEMPLATE,
    "displayname_template": DEFAULT_DISPLAYNAME_TEMPLATE,
    "portal_message_buffer": 128,
    "user_avatar_sync": True,
    "private_chat_portal_meta": False,
    "allow_user_invite": False,
    "federate_rooms": True,
    "message_error_notices": True,
    "parallel_member_sync": False,
    "reply_fallback_window_seconds": 10,
    "native_single_image": True,
    "resync_min_interval_seconds": 7 * 24 * 3600,
    "resync_interval_seconds": 4 * 3600,
    "resync_jitter_seconds": 3600,
    "bridge_info_prefix": "net.maunium",
    "encryption": {
        "allow": False,
        "default": False,
    },
}

DEFAULT_MEDIA: dict[str, Any] = {
    "max_file_size_mb": 50,
    "ffmpeg_path": "ffmpeg",
    "silk_encoder": "silk-encoder",
    "silk_decoder": "silk-decoder",
    "timeout_seconds": 60,
    "avatar_timeout_seconds": 15,
}


def default_bridge() -> dict[str, Any]:
    """Return a deep-copied bridge payload."""
    return deepcopy(DEFAULT_BRIDGE)


def default_media() -> dict[str, Any]:
    """Return a copied media payload."""
    return dict(DEFAULT_MEDIA)


def apply_missing_defaults(snake_config: dict[str, Any]) -> None:
    """Inject missing config defaults without overriding existing user values."""
    if not isinstance(snake_config, dict):
        return

    bridge = snake_config.setdefault("bridge", {})
    if isinstance(bridge, dict):
        for k, v in default_bridge().items():
            if isinstance(v, dict):
                nested = bridge.setdefault(k, {})
                if isinstance(nested, dict):
                    for nk, nv in v.items():
                        nested.setdefault(nk, nv)
                else:
                    bridge[k] = deepcopy(v)
            else:
                bridge.setdefault(k, v)

    media = snake_config.setdefault("media", {})
    if isinstance(media, dict):
        for k, v in default_media().items():
            media.setdefault(k, v)

    appservice = snake_config.setdefault("appservice", {})
    if isinstance(appservice, dict):
        appservice.setdefault("bot_username", DEFAULT_BOT_USERNAME)
