"""
Comfy Local - Result Downloader
================================

Fetch every image a completed job produced.

Partial failure is normal here: an image with no filename is skipped with a
warning, a fetch that still fails after retries is logged and skipped, and
the caller gets the files that did arrive.
"""

from collections.abc import Iterator
from pathlib import Path, PurePath
from typing import Any, NamedTuple

from .config import settings
from .exceptions import ComfyLocalError, ComfyUIConnectionError
from .logging_config import get_logger
from .retry import retry_with_backoff

logger = get_logger(__name__)

__all__ = ["ImageRef", "ResultDownloader", "iter_images"]


class ImageRef(NamedTuple):
    filename: str
    subfolder: str = ""
    type: str = "output"


def iter_images(history: dict[str, Any]) -> Iterator[ImageRef]:
    """
    Yield an ImageRef for every image entry of every output node.

    Entries with an empty or missing filename are skipped with a warning.
    """
    outputs = history.get("outputs") if isinstance(history, dict) else None
    if not isinstance(outputs, dict):
        return
    for node_id, node_output in outputs.items():
        images = node_output.get("images") if isinstance(node_output, dict) else None
        if not isinstance(images, list):
            continue
        for image in images:
            filename = image.get("filename") if isinstance(image, dict) else None
            if not filename:
                logger.warning(f"Skipping image without filename in node {node_id}")
                continue
            yield ImageRef(
                filename=filename,
                subfolder=image.get("subfolder") or "",
                type=image.get("type") or "output",
            )


def _unique_name(filename: str, taken: set[str]) -> str:
    """Basename of a server-supplied filename, suffixed until it is not in taken."""
    # Never let a server-supplied name escape target_dir
    name = PurePath(filename.replace("\\", "/")).name
    path = PurePath(name)
    counter = 1
    while name in taken:
        name = f"{path.stem}_{counter}{path.suffix}"
        counter += 1
    taken.add(name)
    return name


class ResultDownloader:
    """Download job outputs into a directory."""

    def __init__(self, client, attempts: int | None = None):
        self.client = client
        self.attempts = attempts or settings.retry.download_attempts

    def _fetch(self, ref: ImageRef) -> bytes:
        fetch = retry_with_backoff(
            max_attempts=self.attempts,
            backoff_base=0.5,
            backoff_max=5.0,
            exceptions=(ComfyUIConnectionError,),
        )(self.client.get_image)
        return fetch(ref.filename, ref.subfolder, ref.type)

    def download(self, history: dict[str, Any], target_dir: str | Path) -> list[Path]:
        """
        Write every output image of a history record into target_dir.

        Files keep their server-side filename; when two outputs share a name
        (same file in different subfolders) the later ones get a _1, _2, ...
        suffix. target_dir is created if needed.

        Returns:
            Paths of the images written (may be shorter than the output list)
        """
        target = Path(target_dir)
        target.mkdir(parents=True, exist_ok=True)

        written = []
        taken: set[str] = set()
        for ref in iter_images(history):
            destination = target / _unique_name(ref.filename, taken)
            try:
                data = self._fetch(ref)
                destination.write_bytes(data)
            except (ComfyLocalError, OSError) as e:
                logger.warning(f"Failed to download {ref.filename}: {e}")
                continue
            logger.debug(f"Saved {destination}", extra={"bytes": len(data)})
            written.append(destination)

        logger.info(f"Downloaded {len(written)} image(s)", extra={"target": str(target)})
        return written
