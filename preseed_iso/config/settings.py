"""Settings loading for build configuration."""

from __future__ import annotations

import copy
import json
import os
from pathlib import Path
from typing import Any


SETTINGS_FILENAME = "preseed-iso.json"
SETTINGS_PATH_ENV = "PRESEED_ISO_SETTINGS_PATH"

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_CODENAME = "trixie"
DEFAULT_ARCH = "amd64"
DEFAULT_ISO_URL = (
    "https://deb.debian.org/debian/dists/{codename}/main/"
    "installer-{arch}/current/images/netboot/mini.iso"
)
DEFAULT_LEGACY_TIMEOUT_TENTHS = 10
DEFAULT_UEFI_TIMEOUT_SECONDS = 1

DEFAULT_SETTINGS: dict[str, Any] = {
    "codename": DEFAULT_CODENAME,
    "arch": DEFAULT_ARCH,
    "iso_url": DEFAULT_ISO_URL,
    "base_image_name": "mini.iso",
    "output_image_name": "debian-13-nas-{arch}.iso",
    "volume_label": "Debian 13 NAS",
    "legacy_timeout_tenths": DEFAULT_LEGACY_TIMEOUT_TENTHS,
    "uefi_timeout_seconds": DEFAULT_UEFI_TIMEOUT_SECONDS,
    "isohybrid_mbr": "/usr/lib/ISOLINUX/isohdpfx.bin",
    "syslinux_dirs": [
        "/usr/lib/ISOLINUX",
        "/usr/lib/syslinux/modules/bios",
    ],
    "config_filename": "preseed.cfg",
    "artifacts_dirname": "custom-packages",
    "fetch_timeout_seconds": 600,
}


def resolve_settings_path(project_dir: Path, override: Path | None = None) -> Path:
    if override is not None:
        return Path(override)
    env_path = os.environ.get(SETTINGS_PATH_ENV)
    if env_path:
        return Path(env_path)
    return Path(project_dir) / SETTINGS_FILENAME


def load_settings(path: Path | None = None) -> dict[str, Any]:
    """Load settings from ``path`` merged over the defaults.

    Missing or unreadable files leave the defaults in place. Every call
    returns a new dict, so callers never share or alter the defaults.
    """
    values = copy.deepcopy(DEFAULT_SETTINGS)
    if path is None or not path.exists():
        return values
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return values
    if isinstance(data, dict):
        values.update(data)
    return values
