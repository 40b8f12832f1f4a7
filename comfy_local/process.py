"""
Comfy Local - Process Supervision
==================================

Detect, start, stop and re-prioritize the ComfyUI server process.

The desktop build reports progress in its main window title, so on Windows
the supervisor can also read that title for the progress sources.

Usage:
    from comfy_local.process import ProcessSupervisor

    supervisor = ProcessSupervisor()
    base_url = supervisor.ensure_server(client)
    ...
    supervisor.stop()
"""

import os
import subprocess
import sys
import time
from collections.abc import Sequence
from pathlib import Path

import psutil

from .config import settings
from .exceptions import ComfyUIOfflineError, InstallationNotFoundError, ProcessError
from .logging_config import get_logger
from .retry import RetryExhaustedError, wait_until
from .validation import validate_choice

logger = get_logger(__name__)

__all__ = ["ProcessSupervisor", "PRIORITY_LEVELS", "default_executable"]

DESKTOP_EXECUTABLE_SUBPATH = ("Programs", "@comfyorgcomfyui-electron", "ComfyUI.exe")

if sys.platform == "win32":
    PRIORITY_LEVELS = {
        "idle": psutil.IDLE_PRIORITY_CLASS,
        "below_normal": psutil.BELOW_NORMAL_PRIORITY_CLASS,
        "normal": psutil.NORMAL_PRIORITY_CLASS,
        "above_normal": psutil.ABOVE_NORMAL_PRIORITY_CLASS,
        "high": psutil.HIGH_PRIORITY_CLASS,
    }
else:
    # nice values; negative values need elevated privileges
    PRIORITY_LEVELS = {
        "idle": 19,
        "below_normal": 10,
        "normal": 0,
        "above_normal": -5,
        "high": -10,
    }


def default_executable() -> str | None:
    """Configured executable, else the desktop build location when known."""
    if settings.comfyui.executable:
        return settings.comfyui.executable
    local_app_data = os.environ.get("LOCALAPPDATA")
    if local_app_data:
        return str(Path(local_app_data, *DESKTOP_EXECUTABLE_SUBPATH))
    return None


class ProcessSupervisor:
    """Lifecycle control for the external ComfyUI process."""

    def __init__(
        self,
        process_names: Sequence[str] | None = None,
        executable: str | None = None,
        log_file: str | None = None,
    ):
        names = process_names or settings.comfyui.process_names
        self.process_names = {self._normalize(n) for n in names}
        self.executable = executable or default_executable()
        self.log_file = log_file or settings.comfyui.log_file
        self._started: subprocess.Popen | None = None

    @staticmethod
    def _normalize(name: str) -> str:
        name = name.lower()
        return name[:-4] if name.endswith(".exe") else name

    def find_processes(self) -> list[psutil.Process]:
        """All running processes whose name matches a configured process name."""
        matches = []
        for proc in psutil.process_iter(["name"]):
            try:
                name = proc.info.get("name") or ""
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if self._normalize(name) in self.process_names:
                matches.append(proc)
        return matches

    def is_running(self) -> bool:
        return bool(self.find_processes())

    def start(self, executable: str | None = None, args: Sequence[str] = ()) -> int:
        """
        Launch ComfyUI detached from this process.

        Output goes to the configured log file when one is set so that
        LogFileProgressSource can follow it.

        Returns:
            PID of the started process

        Raises:
            InstallationNotFoundError: If no executable is configured or it is missing
            ProcessError: If the OS refuses to start it
        """
        executable = executable or self.executable
        if not executable or not Path(executable).is_file():
            raise InstallationNotFoundError(
                "ComfyUI executable not found", path=str(executable) if executable else None
            )

        kwargs = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        stdout = subprocess.DEVNULL
        if self.log_file:
            Path(self.log_file).parent.mkdir(parents=True, exist_ok=True)
            stdout = open(self.log_file, "ab")

        try:
            self._started = subprocess.Popen(
                [executable, *args],
                cwd=str(Path(executable).parent),
                stdout=stdout,
                stderr=subprocess.STDOUT,
                **kwargs,
            )
        except OSError as e:
            raise ProcessError(f"Failed to start ComfyUI: {e}", cause=e)
        finally:
            if stdout is not subprocess.DEVNULL:
                stdout.close()

        logger.info(f"Started ComfyUI (pid {self._started.pid})", extra={"executable": executable})
        return self._started.pid

    def stop(self, grace: float = 0.5) -> int:
        """
        Kill every matching process.

        Never raises; failures are logged as warnings.

        Returns:
            Number of processes that were signalled
        """
        killed = 0
        try:
            for proc in self.find_processes():
                try:
                    proc.kill()
                    killed += 1
                    logger.debug(f"Killed ComfyUI process {proc.pid}")
                except psutil.NoSuchProcess:
                    continue
                except psutil.AccessDenied as e:
                    logger.warning(f"Could not stop ComfyUI process {proc.pid}: {e}")

            time.sleep(grace)

            survivors = self.find_processes()
            if survivors:
                logger.warning(
                    f"{len(survivors)} ComfyUI process(es) still running after stop",
                    extra={"pids": [p.pid for p in survivors]},
                )
            else:
                logger.info("ComfyUI stopped", extra={"killed": killed})
        except Exception as e:
            logger.warning(f"Error while stopping ComfyUI: {e}")
        return killed

    def set_priority(self, level: str) -> int:
        """
        Set the scheduling priority of every matching process.

        Returns:
            Number of processes updated
        """
        validate_choice(level, "priority", list(PRIORITY_LEVELS))

        updated = 0
        for proc in self.find_processes():
            try:
                proc.nice(PRIORITY_LEVELS[level])
                updated += 1
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                logger.warning(f"Could not set priority of process {proc.pid}: {e}")
        return updated

    def get_window_title(self) -> str | None:
        """Title of the first visible top-level window owned by ComfyUI (Windows only)."""
        if sys.platform != "win32":
            return None
        pids = {p.pid for p in self.find_processes()}
        if not pids:
            return None
        try:
            return _find_window_title(pids)
        except OSError as e:
            logger.debug(f"Window title lookup failed: {e}")
            return None

    def ensure_server(self, client, timeout: float | None = None) -> str:
        """
        Make sure a ComfyUI server answers, starting one if needed.

        The timeout bounds only the wait for the server to become reachable.

        Returns:
            The base URL that answered (also set on the client)

        Raises:
            ComfyUIOfflineError: If no candidate URL answers within the timeout
            InstallationNotFoundError: If the server must be started but cannot be found
        """
        if client.is_online():
            return client.base_url

        found = client.discover_base_url()
        if found:
            return found

        if not self.is_running():
            self.start()
        else:
            logger.info("ComfyUI process found but not answering yet, waiting")

        timeout = timeout if timeout is not None else settings.comfyui.startup_timeout
        try:
            return wait_until(client.discover_base_url, timeout=timeout, interval=1.0)
        except RetryExhaustedError as e:
            raise ComfyUIOfflineError(
                f"ComfyUI did not become reachable within {timeout}s",
                url=client.base_url,
                cause=e,
            )


def _find_window_title(pids: set[int]) -> str | None:
    import ctypes
    from ctypes import wintypes

    user32 = ctypes.windll.user32
    titles: list[str] = []

    @ctypes.WINFUNCTYPE(wintypes.BOOL, wintypes.HWND, wintypes.LPARAM)
    def callback(hwnd, _lparam):
        if not user32.IsWindowVisible(hwnd):
            return True
        pid = wintypes.DWORD()
        user32.GetWindowThreadProcessId(hwnd, ctypes.byref(pid))
        if pid.value not in pids:
            return True
        length = user32.GetWindowTextLengthW(hwnd)
        if length:
            buffer = ctypes.create_unicode_buffer(length + 1)
            user32.GetWindowTextW(hwnd, buffer, length + 1)
            titles.append(buffer.value)
            return False
        return True

    user32.EnumWindows(callback, 0)
    return titles[0] if titles else None
