"""
Comfy Local - Models and Model Paths
=====================================

Supported model list plus on-disk model directory resolution.

Model directories are resolved per ComfyUI install dir:

    1. extra_model_paths.yaml section with base_path + <subfolder>  (explicit)
    2. extra_model_paths.yaml top-level "<subfolder>: path" mapping (explicit)
    3. <install>/models/<subfolder>                                 (default)

Explicit paths win even when missing on disk, since ComfyUI itself creates
them on first use.

Usage:
    from comfy_local.models import ModelPathResolver, find_model

    checkpoints = ModelPathResolver().resolve("checkpoints")
    sdxl = find_model("SDXL Base 1.0")
"""

import json
import os
import re
from dataclasses import dataclass
from importlib import resources
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any

import yaml

from .config import settings
from .exceptions import ConfigurationError
from .logging_config import get_logger
from .workflows import Architecture, coerce_checkpoint_name

logger = get_logger(__name__)

__all__ = [
    "ModelDescriptor",
    "ModelPathCandidate",
    "ModelPathResolver",
    "load_supported_models",
    "find_model",
    "compatible_models",
    "find_local_checkpoint",
    "default_install_dirs",
]

EXTRA_MODEL_PATHS_FILE = "extra_model_paths.yaml"
DESKTOP_INSTALL_SUBPATH = ("Programs", "@comfyorgcomfyui-electron", "resources", "ComfyUI")

_WINDOWS_PATH = re.compile(r"^[A-Za-z]:[\\/]|^\\\\")


# =============================================================================
# SUPPORTED MODELS
# =============================================================================


@dataclass(frozen=True)
class ModelDescriptor:
    """One entry of the supported model list."""

    name: str
    file_name: str
    download_url: str = ""
    hugging_face_repo: str = ""
    architecture: Architecture = Architecture.UNIVERSAL
    compatible: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ModelDescriptor":
        return cls(
            name=data["name"],
            file_name=data["file_name"],
            download_url=data.get("download_url", ""),
            hugging_face_repo=data.get("hugging_face_repo", ""),
            architecture=Architecture.parse(data.get("architecture")),
            compatible=bool(data.get("compatible", True)),
        )

    @classmethod
    def for_checkpoint(cls, file_name: str) -> "ModelDescriptor":
        """
        Descriptor for a checkpoint that is not in the supported list.

        A bare name gets the .safetensors extension, so "juggernaut" is looked
        up on disk and on the server as "juggernaut.safetensors".
        """
        file_name = coerce_checkpoint_name(file_name)
        return cls(name=PurePosixPath(file_name).stem or file_name, file_name=file_name)


def load_supported_models(path: str | Path | None = None) -> list[ModelDescriptor]:
    """
    Load the supported model list.

    Args:
        path: JSON file to read (default: settings.models.supported_models_file,
              then the list shipped with the package)

    Raises:
        ConfigurationError: If the file is unreadable or malformed
    """
    path = path or settings.models.supported_models_file
    try:
        if path:
            raw = Path(path).read_text(encoding="utf-8")
        else:
            raw = resources.files("comfy_local").joinpath("data/supported_models.json").read_text(
                encoding="utf-8"
            )
        entries = json.loads(raw)
        return [ModelDescriptor.from_dict(entry) for entry in entries]
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise ConfigurationError(
            f"Could not load supported model list: {e}",
            details={"path": str(path) if path else "<package data>"},
            cause=e,
        )


def find_model(name: str, models: list[ModelDescriptor] | None = None) -> ModelDescriptor | None:
    """Find a descriptor by display name or file name (case-insensitive)."""
    wanted = name.strip().lower()
    for descriptor in models if models is not None else load_supported_models():
        if wanted in (descriptor.name.lower(), descriptor.file_name.lower()):
            return descriptor
    return None


def compatible_models(models: list[ModelDescriptor] | None = None) -> list[ModelDescriptor]:
    return [m for m in (models if models is not None else load_supported_models()) if m.compatible]


# =============================================================================
# PATH RESOLUTION
# =============================================================================


@dataclass(frozen=True)
class ModelPathCandidate:
    path: str
    explicit: bool
    install_dir: str


def default_install_dirs() -> list[str]:
    """Install directory candidates in priority order."""
    if settings.comfyui.install_dir:
        return [settings.comfyui.install_dir]
    local_app_data = os.environ.get("LOCALAPPDATA")
    if local_app_data:
        return [_join(local_app_data, *DESKTOP_INSTALL_SUBPATH)]
    logger.debug("LOCALAPPDATA not set, falling back to ./ComfyUI")
    return [str(Path.cwd() / "ComfyUI")]


def _join(base: str, *parts: str) -> str:
    """Join path parts, keeping Windows semantics for drive-letter/UNC bases."""
    parts = tuple(p.strip().strip("/\\") for p in parts if p and p.strip())
    if _WINDOWS_PATH.match(base):
        return str(PureWindowsPath(base, *parts))
    return str(Path(base, *parts))


def _first_line(value: Any) -> str | None:
    """YAML block values may list several paths; ComfyUI uses each, we take the first."""
    if value is None:
        return None
    for line in str(value).splitlines():
        if line.strip():
            return line.strip()
    return None


class ModelPathResolver:
    """
    Resolve where ComfyUI keeps a given model type.

    Never raises: unreadable or invalid YAML is logged and skipped.
    """

    def __init__(self, install_dirs: list[str] | None = None):
        self.install_dirs = list(install_dirs) if install_dirs else default_install_dirs()

    def _read_overrides(self, install_dir: str) -> dict | None:
        yaml_path = Path(install_dir) / EXTRA_MODEL_PATHS_FILE
        if not yaml_path.is_file():
            return None
        try:
            with open(yaml_path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Ignoring unreadable {yaml_path}: {e}")
            return None
        if not isinstance(data, dict):
            logger.warning(f"Ignoring {yaml_path}: top level is not a mapping")
            return None
        return data

    def _explicit_path(self, overrides: dict, install_dir: str, subfolder: str) -> str | None:
        # "custom" first, then any other section, in file order
        sections = sorted(
            (item for item in overrides.items() if isinstance(item[1], dict)),
            key=lambda item: item[0] != "custom",
        )
        for section_name, section in sections:
            base_path = _first_line(section.get("base_path"))
            sub_path = _first_line(section.get(subfolder))
            if base_path and sub_path:
                if not _WINDOWS_PATH.match(base_path) and not os.path.isabs(base_path):
                    base_path = _join(install_dir, base_path)
                logger.debug(f"Model path from YAML section '{section_name}'")
                return _join(base_path, sub_path)

        direct = overrides.get(subfolder)
        if direct is not None and not isinstance(direct, dict):
            direct_path = _first_line(direct)
            if direct_path:
                logger.debug("Model path from YAML direct mapping")
                return direct_path
        return None

    def candidates(self, subfolder: str = "checkpoints") -> list[ModelPathCandidate]:
        """Every candidate path in priority order, without existence filtering."""
        found = []
        for install_dir in self.install_dirs:
            overrides = self._read_overrides(install_dir)
            explicit = self._explicit_path(overrides, install_dir, subfolder) if overrides else None
            if explicit:
                found.append(ModelPathCandidate(explicit, True, install_dir))
            else:
                found.append(
                    ModelPathCandidate(_join(install_dir, "models", subfolder), False, install_dir)
                )
        return found

    def resolve(self, subfolder: str = "checkpoints", return_all: bool = False) -> str | list[str]:
        """
        Resolve the model directory for a subfolder such as "checkpoints" or "loras".

        Args:
            subfolder: ComfyUI model type folder
            return_all: Return every candidate instead of the preferred one

        Returns:
            Preferred path, or list of all candidate paths
        """
        candidates = self.candidates(subfolder)
        if return_all:
            return [c.path for c in candidates]

        for candidate in candidates:
            if candidate.explicit:
                return candidate.path

        for candidate in candidates:
            if os.path.exists(candidate.path):
                return candidate.path

        for install_dir in self.install_dirs:
            if os.path.isdir(install_dir):
                return _join(install_dir, "models", subfolder)

        return candidates[0].path if candidates else _join("ComfyUI", "models", subfolder)


def find_local_checkpoint(
    file_name: str, resolver: ModelPathResolver | None = None
) -> Path | None:
    """Look for a checkpoint file under every checkpoint directory candidate."""
    resolver = resolver or ModelPathResolver()
    for directory in resolver.resolve("checkpoints", return_all=True):
        candidate = Path(directory) / file_name
        if candidate.is_file():
            return candidate
    return None
