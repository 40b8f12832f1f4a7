"""
Comfy Local - Completion Poller
================================

Waits for a submitted prompt to show up in /history.

State machine:

    SUBMITTED -> POLLING -> COMPLETED
                         -> TIMED_OUT   (deadline passed)
                         -> CANCELLED   (cancellation token set)

Completion is decided only by the presence of the prompt id in the history
payload. Progress sources are advisory and only feed on_progress; an exception
raised by on_progress is logged and does not end the wait.

Transport errors during a single poll are logged at debug level and the loop
carries on; the deadline is what eventually ends a wait on a dead server.
Each history request is sent once, with its timeout clamped to the time
left, and the last sleep is cut short at the deadline.

Usage:
    poller = CompletionPoller(client, progress=LogFileProgressSource(log_path))
    token = CancellationToken()
    record = poller.wait(prompt_id, deadline=600, cancel=token)
"""

import threading
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

from .config import settings
from .exceptions import (
    ComfyLocalError,
    GenerationCancelledError,
    GenerationFailedError,
    GenerationTimeoutError,
)
from .logging_config import get_logger
from .progress import NullProgressSource, ProgressSource, ProgressUpdate
from .validation import validate_in_range

logger = get_logger(__name__)

__all__ = ["PollState", "CancellationToken", "CompletionPoller"]

ProgressCallback = Callable[[ProgressUpdate], None]

# Floor for the per-poll request timeout near the deadline
MIN_POLL_TIMEOUT = 0.5


class PollState(str, Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class CancellationToken:
    """Thread-safe cancellation flag shared between a caller and a wait."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def _execution_error(record: dict) -> str | None:
    """Server-side error text when the history entry reports a failed run."""
    status = record.get("status")
    if not isinstance(status, dict) or status.get("status_str") != "error":
        return None
    messages = []
    for entry in status.get("messages") or []:
        if isinstance(entry, (list, tuple)) and len(entry) == 2 and entry[0] == "execution_error":
            data = entry[1] if isinstance(entry[1], dict) else {}
            node = data.get("node_type") or data.get("node_id") or "?"
            messages.append(f"{node}: {data.get('exception_message', '').strip()}")
    return "; ".join(messages) or "execution error"


class CompletionPoller:
    """
    Poll /history/{prompt_id} at a fixed interval until the job is recorded.

    Args:
        client: ComfyClient (anything with get_history/interrupt)
        interval: Seconds between polls (default from settings)
        progress: Advisory progress source
        clock: Monotonic clock, injectable for tests
        sleep: Sleep function, injectable for tests
    """

    def __init__(
        self,
        client,
        interval: float | None = None,
        progress: ProgressSource | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        interrupt_on_cancel: bool | None = None,
    ):
        self.client = client
        self.interval = validate_in_range(
            interval if interval is not None else settings.polling.interval, "interval", min_val=0
        )
        self.progress = progress or NullProgressSource()
        self.clock = clock
        self.sleep = sleep
        self.interrupt_on_cancel = (
            interrupt_on_cancel
            if interrupt_on_cancel is not None
            else settings.polling.interrupt_on_cancel
        )
        self.state = PollState.SUBMITTED
        self.polls = 0

    def _remaining(self, expires_at: float | None) -> float | None:
        if expires_at is None:
            return None
        return max(expires_at - self.clock(), 0.0)

    def _poll_once(self, prompt_id: str, expires_at: float | None) -> dict[str, Any] | None:
        remaining = self._remaining(expires_at)
        try:
            if remaining is None:
                history = self.client.get_history(prompt_id)
            else:
                # Single requests must not outlive the deadline
                timeout = max(min(remaining, settings.comfyui.timeout_read), MIN_POLL_TIMEOUT)
                history = self.client.get_history(prompt_id, timeout=timeout)
        except ComfyLocalError as e:
            logger.debug(f"History poll failed, retrying: {e}", extra={"prompt_id": prompt_id})
            return None
        record = history.get(prompt_id) if isinstance(history, dict) else None
        return record if isinstance(record, dict) else None

    @staticmethod
    def _notify(on_progress: ProgressCallback, update: ProgressUpdate, prompt_id: str):
        try:
            on_progress(update)
        except Exception as e:
            logger.debug(
                f"Progress callback failed: {e}",
                extra={"prompt_id": prompt_id, "error_type": type(e).__name__},
            )

    def _cancelled(self, prompt_id: str):
        self.state = PollState.CANCELLED
        logger.info("Wait cancelled", extra={"prompt_id": prompt_id})
        if self.interrupt_on_cancel:
            self.client.interrupt()
        raise GenerationCancelledError(prompt_id=prompt_id)

    def wait(
        self,
        prompt_id: str,
        deadline: float | None = None,
        cancel: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        """
        Block until prompt_id appears in history.

        Args:
            prompt_id: Id returned by queue_prompt
            deadline: Seconds to wait; None uses the configured default,
                      0 or negative waits without limit
            cancel: Token checked before every poll
            on_progress: Called with each changed ProgressUpdate

        Returns:
            The history record for prompt_id

        Raises:
            GenerationTimeoutError: Deadline passed
            GenerationCancelledError: Token was cancelled
            GenerationFailedError: Server recorded an execution error
        """
        if deadline is None:
            deadline = settings.polling.completion_timeout
        expires_at = self.clock() + deadline if deadline and deadline > 0 else None

        self.state = PollState.POLLING
        self.polls = 0
        last_update: ProgressUpdate | None = None
        logger.debug(
            "Waiting for completion",
            extra={"prompt_id": prompt_id, "deadline": deadline, "interval": self.interval},
        )

        while True:
            if cancel is not None and cancel.cancelled:
                self._cancelled(prompt_id)

            self.polls += 1
            record = self._poll_once(prompt_id, expires_at)
            if record is not None:
                error = _execution_error(record)
                if error:
                    self.state = PollState.COMPLETED
                    raise GenerationFailedError(
                        f"ComfyUI reported an execution error: {error}",
                        comfy_error=error,
                        prompt_id=prompt_id,
                    )
                self.state = PollState.COMPLETED
                logger.info("Job completed", extra={"prompt_id": prompt_id, "polls": self.polls})
                return record

            update = self.progress.read()
            if update is not None and update != last_update:
                last_update = update
                logger.debug(f"Progress: {update.describe()}", extra={"prompt_id": prompt_id})
                if on_progress:
                    self._notify(on_progress, update, prompt_id)

            if expires_at is not None and self.clock() >= expires_at:
                self.state = PollState.TIMED_OUT
                logger.warning(
                    f"No result after {deadline}s", extra={"prompt_id": prompt_id, "polls": self.polls}
                )
                raise GenerationTimeoutError(
                    f"Job {prompt_id} did not complete within {deadline}s",
                    timeout=deadline,
                    prompt_id=prompt_id,
                )

            remaining = self._remaining(expires_at)
            self.sleep(self.interval if remaining is None else min(self.interval, remaining))
