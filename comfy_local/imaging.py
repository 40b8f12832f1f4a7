"""
Comfy Local - Output Imaging
=============================

Format conversion for downloaded images (Pillow) and the metadata sidecar
files written next to each final output.

Four sidecar documents are written per image: EXIF, description, people and
objects. On Windows they go into NTFS alternate data streams
("image.png:description.json"); elsewhere they are ordinary files
("image.png.description.json").
"""

import json
import shutil
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from PIL import Image

from .logging_config import get_logger

logger = get_logger(__name__)

__all__ = [
    "SIDECAR_STREAMS",
    "convert_image",
    "sidecar_path",
    "build_sidecars",
    "write_metadata_sidecars",
]

SIDECAR_STREAMS = ("EXIF", "description", "people", "objects")

_FORMAT_ALIASES = {".jpg": ".jpeg", ".tif": ".tiff"}


def _normalized_suffix(path: Path) -> str:
    suffix = path.suffix.lower()
    return _FORMAT_ALIASES.get(suffix, suffix)


def convert_image(src: str | Path, dest: str | Path) -> Path:
    """
    Move src to dest, converting the format when the extensions differ.

    Transparency is flattened onto white for formats without alpha (JPEG).

    Returns:
        dest as a Path
    """
    src, dest = Path(src), Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)

    if _normalized_suffix(src) == _normalized_suffix(dest):
        shutil.move(str(src), str(dest))
        return dest

    with Image.open(src) as img:
        if _normalized_suffix(dest) == ".jpeg" and img.mode in ("RGBA", "LA", "P"):
            img = img.convert("RGBA")
            background = Image.new("RGB", img.size, (255, 255, 255))
            background.paste(img, mask=img.getchannel("A"))
            img = background
        elif img.mode not in ("RGB", "RGBA", "L"):
            img = img.convert("RGB")
        img.save(dest)

    src.unlink()
    logger.debug(f"Converted {src.name} -> {dest.name}")
    return dest


def sidecar_path(image_path: str | Path, stream: str, windows: bool | None = None) -> Path:
    """Location of one metadata document for an image."""
    image_path = Path(image_path)
    windows = sys.platform == "win32" if windows is None else windows
    if windows:
        return image_path.with_name(f"{image_path.name}:{stream}.json")
    return image_path.with_name(f"{image_path.name}.{stream}.json")


def build_sidecars(request, model: str, prompt_id: str | None) -> dict[str, dict[str, Any]]:
    """The four metadata documents for one generated image."""
    created = datetime.now(timezone.utc).isoformat()
    return {
        "EXIF": {
            "Software": "ComfyUI",
            "Model": model,
            "Prompt": request.prompt,
            "NegativePrompt": request.negative_prompt,
            "Seed": request.seed,
            "Steps": request.steps,
            "CFG": request.cfg,
            "Sampler": request.sampler,
            "Scheduler": request.scheduler,
            "Width": request.width,
            "Height": request.height,
            "Strength": request.strength if request.is_img2img else None,
            "PromptId": prompt_id,
            "DateTimeOriginal": created,
        },
        "description": {
            "short_description": request.prompt[:160],
            "long_description": request.prompt,
            "keywords": [],
            "generated": True,
        },
        "people": {"count": 0, "faces": [], "predictions": []},
        "objects": {"count": 0, "objects": [], "object_counts": {}},
    }


def write_metadata_sidecars(
    image_path: str | Path, request, model: str, prompt_id: str | None = None
) -> list[Path]:
    """
    Write the metadata documents for image_path.

    Returns:
        Paths written; a stream that cannot be written is logged and skipped
    """
    written = []
    for stream, document in build_sidecars(request, model, prompt_id).items():
        path = sidecar_path(image_path, stream)
        try:
            path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not write {stream} metadata for {image_path}: {e}")
            continue
        written.append(path)
    return written
