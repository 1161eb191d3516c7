"""Settings for the bakeform service.

Values are resolved in three layers: ``DEFAULT_SETTINGS``, an optional JSON
settings file, then environment variables.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from pi_bakery.storage.exceptions import BakeryError


SETTINGS_PATH = Path(
    os.environ.get(
        "PI_BAKERY_SETTINGS_PATH",
        Path.home() / ".config" / "pi-bakery" / "settings.json",
    )
)

DEFAULT_EXPORTS_PATH = "/etc/exports"
DEFAULT_COMMAND_TIMEOUT_SECONDS = 300.0
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8000

DEFAULT_SETTINGS: dict[str, Any] = {
    "image_folder": None,
    "image_mount_root": None,
    "boot_root": "/srv/nfs/boot",
    "kpartx_path": "kpartx",
    "exports_path": DEFAULT_EXPORTS_PATH,
    "command_timeout_seconds": DEFAULT_COMMAND_TIMEOUT_SECONDS,
    "host": DEFAULT_HOST,
    "port": DEFAULT_PORT,
}

# Environment variable -> settings key
ENV_OVERRIDES: dict[str, str] = {
    "IMAGE_FOLDER": "image_folder",
    "IMAGE_MOUNT_ROOT": "image_mount_root",
    "BOOT_ROOT": "boot_root",
    "KPARTX_PATH": "kpartx_path",
    "EXPORTS_PATH": "exports_path",
    "COMMAND_TIMEOUT_SECONDS": "command_timeout_seconds",
    "PI_BAKERY_HOST": "host",
    "PI_BAKERY_PORT": "port",
}


class ConfigurationError(BakeryError):
    """Required settings are missing or invalid."""


@dataclass(frozen=True)
class Settings:
    image_folder: Path
    image_mount_root: Path
    boot_root: Path
    kpartx_path: str = "kpartx"
    exports_path: Path = Path(DEFAULT_EXPORTS_PATH)
    command_timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT


def _read_settings_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    if isinstance(data, dict):
        return data
    return {}


def load_settings(
    path: Path | None = None, environ: Mapping[str, str] | None = None
) -> Settings:
    """Resolve settings from defaults, the JSON settings file and the environment.

    Raises:
        ConfigurationError: If the image folder or mount root is unset, or a
            numeric setting cannot be parsed.
    """
    environ = os.environ if environ is None else environ
    values = dict(DEFAULT_SETTINGS)
    values.update(_read_settings_file(path or SETTINGS_PATH))
    for env_name, key in ENV_OVERRIDES.items():
        if environ.get(env_name):
            values[key] = environ[env_name]

    if not values.get("image_folder") or not values.get("image_mount_root"):
        raise ConfigurationError(
            "Please set IMAGE_FOLDER and IMAGE_MOUNT_ROOT env vars."
        )

    try:
        timeout = float(values["command_timeout_seconds"])
        port = int(values["port"])
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid numeric setting: {exc}") from exc
    if timeout <= 0:
        raise ConfigurationError("COMMAND_TIMEOUT_SECONDS must be positive")

    return Settings(
        image_folder=Path(values["image_folder"]),
        image_mount_root=Path(values["image_mount_root"]),
        boot_root=Path(values["boot_root"]),
        kpartx_path=str(values["kpartx_path"]),
        exports_path=Path(values["exports_path"]),
        command_timeout_seconds=timeout,
        host=str(values["host"]),
        port=port,
    )
