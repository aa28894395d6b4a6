"""Configuration loading utilities."""

import json
import os
import shutil
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger

from qqbridge.config.defaults import apply_missing_defaults
from qqbridge.config.schema import Config

CONFIG_VERSION = 2

# Go text/template placeholders accepted by version 1 configs.
_LEGACY_PLACEHOLDERS = {
    "{{.}}": "{uin}",
    "{{.Uin}}": "{uin}",
    "{{.Name}}": "{name}",
    "{{.Remark}}": "{remark}",
}


def get_config_path() -> Path:
    """Get the default configuration file path."""
    from qqbridge.utils.helpers import get_data_path
    return get_data_path() / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file or create default.

    Args:
        config_path: Optional path to config file. Uses default if not provided.

    Returns:
        Loaded configuration object.
    """
    path = config_path or get_config_path()

    if path.exists():
        try:
            with open(path) as f:
                raw = json.load(f)

            migrated_raw, changed = _migrate_config_with_change(raw)
            validated = Config.model_validate(convert_keys(migrated_raw))
            if changed:
                _backup_config(path)
                _atomic_write_config(path, validated)
            return validated
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning("Failed to load config from {}: {}", path, e)
            logger.warning("Using default configuration.")

    return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """
    Save configuration to file.

    Args:
        config: Configuration to save.
        config_path: Optional path to save to. Uses default if not provided.
    """
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    _atomic_write_config(path, config)


def _migrate_config_with_change(data: dict[str, Any]) -> tuple[dict[str, Any], bool]:
    """Migrate old config formats to current schema version.

    Returns:
        (migrated_data, changed)
    """
    if not isinstance(data, dict):
        raise ValueError("Config root must be a JSON object")

    original = json.dumps(data, sort_keys=True, separators=(",", ":"))
    data = json.loads(json.dumps(data))

    # Flat encryption shortcuts → bridge.encryption.*
    bridge = data.get("bridge")
    if not isinstance(bridge, dict):
        bridge = {}
        data["bridge"] = bridge

    encryption = bridge.get("encryption")
    if not isinstance(encryption, dict):
        encryption = {}
        bridge["encryption"] = encryption

    if "encryptionAllow" in bridge and "allow" not in encryption:
        encryption["allow"] = bridge.pop("encryptionAllow")
    if "encryptionDefault" in bridge and "default" not in encryption:
        encryption["default"] = bridge.pop("encryptionDefault")

    # Normalize to snake_case for semantic migrations.
    snake = convert_keys(data)
    if not isinstance(snake, dict):
        raise ValueError("Config migration produced invalid root payload")

    version = snake.get("config_version")
    try:
        version_num = int(version) if version is not None else 1
    except (TypeError, ValueError):
        version_num = 1

    if version_num < 2:
        bridge_cfg = snake["bridge"]
        for key in ("username_template", "displayname_template"):
            template = bridge_cfg.get(key)
            if isinstance(template, str):
                for legacy, current in _LEGACY_PLACEHOLDERS.items():
                    template = template.replace(legacy, current)
                bridge_cfg[key] = template

        # Version 1 stored the database next to the binary as a bare filename.
        database = snake.get("database")
        if isinstance(database, str):
            snake["database"] = {"path": database}

    apply_missing_defaults(snake)
    snake["config_version"] = CONFIG_VERSION

    migrated = convert_to_camel(snake)
    changed = original != json.dumps(migrated, sort_keys=True, separators=(",", ":"))
    return migrated, changed


def _backup_config(path: Path) -> None:
    """Create timestamped backup of config before migration rewrite."""
    if not path.exists():
        return
    timestamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    backup = path.with_name(f"{path.stem}.backup.{timestamp}{path.suffix}")
    shutil.copy2(path, backup)
    try:
        backup.chmod(0o600)
    except OSError:
        pass


def _atomic_write_config(path: Path, config: Config) -> None:
    """Atomically write config as camelCase JSON; it holds appservice tokens."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = convert_to_camel(config.model_dump())
    tmp_path = path.with_name(f".{path.name}.tmp-{os.getpid()}")
    with open(tmp_path, "w") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    try:
        tmp_path.chmod(0o600)
    except OSError:
        pass
    os.replace(tmp_path, path)


def convert_keys(data: Any) -> Any:
    """Convert camelCase keys to snake_case for Pydantic."""
    if isinstance(data, dict):
        return {camel_to_snake(k): convert_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def convert_to_camel(data: Any) -> Any:
    """Convert snake_case keys to camelCase."""
    if isinstance(data, dict):
        return {snake_to_camel(k): convert_to_camel(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    """Convert camelCase to snake_case."""
    result = []
    for i, char in enumerate(name):
        if char.isupper() and i > 0:
            result.append("_")
        result.append(char.lower())
    return "".join(result)


def snake_to_camel(name: str) -> str:
    """Convert snake_case to camelCase."""
    components = name.split("_")
    return components[0] + "".join(x.title() for x in components[1:])
