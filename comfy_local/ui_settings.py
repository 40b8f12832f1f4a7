"""
Comfy Local - ComfyUI Frontend Settings
========================================

Edits <install>/user/default/comfy.settings.json, the file the ComfyUI web
frontend persists its preferences to.

The file is only created by ComfyUI itself, so a missing file means ComfyUI
has never been started from this install and is reported as an error rather
than created.
"""

import json
import shutil
from pathlib import Path
from typing import Any
from urllib.parse import quote_plus

from .exceptions import (
    ConfigurationError,
    FileNotFoundResourceError,
    InvalidParameterError,
    SettingsFileNotFoundError,
)
from .logging_config import get_logger
from .models import default_install_dirs
from .validation import IMAGE_EXTENSIONS

logger = get_logger(__name__)

__all__ = [
    "BACKGROUND_IMAGE_KEY",
    "DEV_MODE_KEY",
    "settings_file_path",
    "load_ui_settings",
    "save_ui_settings",
    "set_background_image",
    "clear_background_image",
    "set_dev_mode",
    "background_image_url",
]

BACKGROUND_IMAGE_KEY = "Comfy.Canvas.BackgroundImage"
DEV_MODE_KEY = "Comfy.DevMode"
BACKGROUNDS_SUBFOLDER = "backgrounds"


def _install_dir(install_dir: str | Path | None) -> Path:
    return Path(install_dir) if install_dir else Path(default_install_dirs()[0])


def settings_file_path(install_dir: str | Path | None = None) -> Path:
    return _install_dir(install_dir) / "user" / "default" / "comfy.settings.json"


def load_ui_settings(install_dir: str | Path | None = None) -> dict[str, Any]:
    """
    Raises:
        SettingsFileNotFoundError: File does not exist yet
        ConfigurationError: File is not a JSON object
    """
    path = settings_file_path(install_dir)
    if not path.is_file():
        raise SettingsFileNotFoundError(str(path))
    try:
        data = json.loads(path.read_text(encoding="utf-8") or "{}")
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Could not read {path}: {e}", cause=e)
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} does not contain a JSON object")
    return data


def save_ui_settings(data: dict[str, Any], install_dir: str | Path | None = None) -> Path:
    path = settings_file_path(install_dir)
    path.write_text(json.dumps(data, indent=4), encoding="utf-8")
    return path


def background_image_url(file_name: str) -> str:
    """Frontend URL serving an image from input/backgrounds."""
    encoded = quote_plus(f"{BACKGROUNDS_SUBFOLDER}/{file_name}")
    return f"/api/view?filename={encoded}&type=input&subfolder={BACKGROUNDS_SUBFOLDER}"


def set_background_image(image_path: str | Path, install_dir: str | Path | None = None) -> str:
    """
    Copy an image into the install's input/backgrounds folder and make it the
    canvas background.

    Returns:
        The URL stored in the settings file

    Raises:
        FileNotFoundResourceError: Image does not exist
        InvalidParameterError: Unsupported image format
        SettingsFileNotFoundError: ComfyUI has not created its settings file yet
    """
    image_path = Path(image_path)
    if not image_path.is_file():
        raise FileNotFoundResourceError(str(image_path))
    if image_path.suffix.lower() not in IMAGE_EXTENSIONS:
        raise InvalidParameterError(
            "image", str(image_path), "unsupported image format", allowed_values=IMAGE_EXTENSIONS
        )

    data = load_ui_settings(install_dir)

    backgrounds = _install_dir(install_dir) / "input" / BACKGROUNDS_SUBFOLDER
    backgrounds.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(image_path, backgrounds / image_path.name)

    url = background_image_url(image_path.name)
    data[BACKGROUND_IMAGE_KEY] = url
    save_ui_settings(data, install_dir)
    logger.info(f"Background image set: {image_path.name}", extra={"url": url})
    return url


def clear_background_image(install_dir: str | Path | None = None) -> bool:
    """
    Remove the canvas background setting.

    Returns:
        True if a background was configured
    """
    data = load_ui_settings(install_dir)
    if data.pop(BACKGROUND_IMAGE_KEY, None) is None:
        logger.info("No background image configured")
        return False
    save_ui_settings(data, install_dir)
    logger.info("Background image cleared")
    return True


def set_dev_mode(enabled: bool, install_dir: str | Path | None = None) -> None:
    """Toggle the frontend developer mode (enables "Save (API Format)")."""
    data = load_ui_settings(install_dir)
    data[DEV_MODE_KEY] = bool(enabled)
    save_ui_settings(data, install_dir)
    logger.info(f"Dev mode {'enabled' if enabled else 'disabled'}")
