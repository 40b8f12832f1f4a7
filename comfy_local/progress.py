"""
Comfy Local - Progress Sources
===============================

Advisory progress readers used while a job is being polled.

ComfyUI exposes progress in several places, none of them authoritative:
- the server log (tqdm bars such as " 45%|####      | 9/20 [00:04<00:05]")
- the desktop window title
- the queue (pending position / running)

Each source is a ProgressSource with a single read() method that returns the
latest ProgressUpdate or None. Sources never raise; completion is decided by
the poller from /history alone.

Usage:
    source = CompositeProgressSource([
        LogFileProgressSource("comfyui.log"),
        ServerStatusProgressSource(client, prompt_id),
    ])
    update = source.read()
"""

import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from .exceptions import ComfyLocalError
from .logging_config import get_logger

logger = get_logger(__name__)

__all__ = [
    "ProgressUpdate",
    "ProgressSource",
    "NullProgressSource",
    "LogFileProgressSource",
    "WindowTitleProgressSource",
    "ServerStatusProgressSource",
    "CompositeProgressSource",
    "parse_progress_text",
]

TQDM_PATTERN = re.compile(r"(\d{1,3})%\|[^|\r\n]*\|\s*(\d+)/(\d+)")
PERCENT_PATTERN = re.compile(r"(\d{1,3}(?:\.\d+)?)\s*%")
STEP_PATTERN = re.compile(r"(?:step\s*)?(\d+)\s*/\s*(\d+)", re.IGNORECASE)

# Max bytes consumed per read
MAX_READ_BYTES = 256 * 1024


@dataclass(frozen=True)
class ProgressUpdate:
    percent: float | None = None
    step: int | None = None
    total: int | None = None
    source: str = ""
    message: str = ""

    def describe(self) -> str:
        parts = []
        if self.percent is not None:
            parts.append(f"{self.percent:.0f}%")
        if self.step is not None and self.total:
            parts.append(f"step {self.step}/{self.total}")
        if self.message:
            parts.append(self.message)
        return " ".join(parts) or "working"


def parse_progress_text(text: str, source: str) -> ProgressUpdate | None:
    """Extract a percentage and/or step counter from free text."""
    if not text:
        return None

    percent = None
    step = total = None

    match = PERCENT_PATTERN.search(text)
    if match:
        percent = min(float(match.group(1)), 100.0)

    match = STEP_PATTERN.search(text)
    if match:
        step, total = int(match.group(1)), int(match.group(2))
        if total == 0 or step > total:
            step = total = None
        elif percent is None:
            percent = 100.0 * step / total

    if percent is None:
        return None
    return ProgressUpdate(percent=percent, step=step, total=total, source=source)


class ProgressSource(ABC):
    """Something that can report how far the current job has got."""

    name = "progress"

    @abstractmethod
    def read(self) -> ProgressUpdate | None:
        """Latest progress, or None when nothing new is known."""


class NullProgressSource(ProgressSource):
    name = "null"

    def read(self) -> ProgressUpdate | None:
        return None


class LogFileProgressSource(ProgressSource):
    """
    Follow the server log and report the last tqdm bar seen.

    Reads incrementally from the last consumed byte offset. When the file
    shrinks (rotation or truncation) the offset is reset to the start.
    """

    name = "log"

    def __init__(self, path: str | Path, start_at_end: bool = True):
        self.path = Path(path)
        self._offset = 0
        if start_at_end:
            try:
                self._offset = self.path.stat().st_size
            except OSError:
                self._offset = 0

    @property
    def offset(self) -> int:
        return self._offset

    def read(self) -> ProgressUpdate | None:
        try:
            size = self.path.stat().st_size
            if size < self._offset:
                logger.debug(f"{self.path} shrank, re-reading from start")
                self._offset = 0
            if size == self._offset:
                return None
            with open(self.path, "rb") as f:
                f.seek(self._offset)
                chunk = f.read(MAX_READ_BYTES)
        except OSError as e:
            logger.debug(f"Log progress unavailable: {e}")
            return None

        self._offset += len(chunk)
        text = chunk.decode("utf-8", errors="replace")

        matches = TQDM_PATTERN.findall(text)
        if not matches:
            return None
        percent, step, total = matches[-1]
        update = ProgressUpdate(
            percent=min(float(percent), 100.0),
            step=int(step),
            total=int(total),
            source=self.name,
        )
        return update


class WindowTitleProgressSource(ProgressSource):
    """Parse progress out of a window title such as "[45%] ComfyUI"."""

    name = "title"

    def __init__(self, title_provider: Callable[[], str | None]):
        self.title_provider = title_provider

    def read(self) -> ProgressUpdate | None:
        try:
            title = self.title_provider()
        except (OSError, ComfyLocalError) as e:
            logger.debug(f"Window title unavailable: {e}")
            return None
        if not title:
            return None
        return parse_progress_text(title, self.name)


class ServerStatusProgressSource(ProgressSource):
    """Report queue position / running state of one prompt."""

    name = "queue"

    def __init__(self, client, prompt_id: str):
        self.client = client
        self.prompt_id = prompt_id

    def read(self) -> ProgressUpdate | None:
        try:
            queue = self.client.get_queue()
        except ComfyLocalError as e:
            logger.debug(f"Queue status unavailable: {e}")
            return None

        # Queue entries are [number, prompt_id, prompt, extra_data, outputs]
        def ids(entries) -> list:
            return [e[1] for e in entries or [] if isinstance(e, (list, tuple)) and len(e) > 1]

        if self.prompt_id in ids(queue.get("queue_running")):
            return ProgressUpdate(source=self.name, message="running")

        pending = ids(queue.get("queue_pending"))
        if self.prompt_id in pending:
            position = pending.index(self.prompt_id) + 1
            return ProgressUpdate(source=self.name, message=f"queued (position {position})")
        return None


class CompositeProgressSource(ProgressSource):
    """First non-None answer of several sources, in order."""

    name = "composite"

    def __init__(self, sources: Iterable[ProgressSource]):
        self.sources = list(sources)

    def read(self) -> ProgressUpdate | None:
        for source in self.sources:
            update = source.read()
            if update is not None:
                return update
        return None
