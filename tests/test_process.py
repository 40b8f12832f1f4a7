"""
Tests for comfy_local/process.py

psutil and subprocess are patched; no real processes are touched.
"""

import sys
from unittest.mock import MagicMock, patch

import psutil
import pytest

from comfy_local.exceptions import (
    ComfyUIOfflineError,
    InstallationNotFoundError,
    InvalidParameterError,
    ProcessError,
)
from comfy_local.process import PRIORITY_LEVELS, ProcessSupervisor


def fake_proc(name, pid):
    proc = MagicMock()
    proc.info = {"name": name}
    proc.pid = pid
    return proc


@pytest.fixture
def supervisor():
    return ProcessSupervisor(process_names=["ComfyUI"], executable=None, log_file=None)


class TestFindProcesses:
    def test_matches_names_case_insensitively(self, supervisor):
        procs = [fake_proc("ComfyUI.exe", 1), fake_proc("comfyui", 2), fake_proc("python", 3)]
        with patch("comfy_local.process.psutil.process_iter", return_value=procs):
            found = supervisor.find_processes()

        assert [p.pid for p in found] == [1, 2]

    def test_not_running(self, supervisor):
        with patch("comfy_local.process.psutil.process_iter", return_value=[]):
            assert supervisor.is_running() is False


class TestStop:
    def test_kills_every_match(self, supervisor):
        procs = [fake_proc("ComfyUI", 1), fake_proc("ComfyUI", 2)]
        with patch(
            "comfy_local.process.psutil.process_iter", side_effect=[procs, []]
        ), patch("comfy_local.process.time.sleep"):
            killed = supervisor.stop()

        assert killed == 2
        for proc in procs:
            proc.kill.assert_called_once()

    def test_access_denied_is_not_counted(self, supervisor):
        denied = fake_proc("ComfyUI", 1)
        denied.kill.side_effect = psutil.AccessDenied(1)
        with patch(
            "comfy_local.process.psutil.process_iter", side_effect=[[denied], [denied]]
        ), patch("comfy_local.process.time.sleep"):
            assert supervisor.stop() == 0

    def test_never_raises(self, supervisor):
        with patch(
            "comfy_local.process.psutil.process_iter", side_effect=RuntimeError("boom")
        ), patch("comfy_local.process.time.sleep"):
            assert supervisor.stop() == 0

    def test_nothing_running(self, supervisor):
        with patch("comfy_local.process.psutil.process_iter", return_value=[]), patch(
            "comfy_local.process.time.sleep"
        ):
            assert supervisor.stop() == 0


class TestStart:
    def test_missing_executable(self, supervisor, tmp_path):
        with pytest.raises(InstallationNotFoundError):
            supervisor.start(str(tmp_path / "ComfyUI.exe"))

    def test_no_executable_configured(self, supervisor):
        supervisor.executable = None
        with pytest.raises(InstallationNotFoundError):
            supervisor.start()

    def test_launches_detached(self, supervisor, tmp_path):
        exe = tmp_path / "ComfyUI.exe"
        exe.write_bytes(b"")
        with patch("comfy_local.process.subprocess.Popen") as popen:
            popen.return_value.pid = 4321
            pid = supervisor.start(str(exe), ["--port", "8188"])

        assert pid == 4321
        args, kwargs = popen.call_args
        assert args[0] == [str(exe), "--port", "8188"]
        assert kwargs["cwd"] == str(tmp_path)
        if sys.platform != "win32":
            assert kwargs["start_new_session"] is True

    def test_output_goes_to_log_file(self, tmp_path):
        exe = tmp_path / "ComfyUI.exe"
        exe.write_bytes(b"")
        log_file = tmp_path / "logs" / "comfyui.log"
        supervisor = ProcessSupervisor(process_names=["ComfyUI"], log_file=str(log_file))

        with patch("comfy_local.process.subprocess.Popen") as popen:
            popen.return_value.pid = 1
            supervisor.start(str(exe))

        assert log_file.exists()
        assert popen.call_args.kwargs["stdout"].name == str(log_file)

    def test_os_error(self, supervisor, tmp_path):
        exe = tmp_path / "ComfyUI.exe"
        exe.write_bytes(b"")
        with patch("comfy_local.process.subprocess.Popen", side_effect=PermissionError("denied")):
            with pytest.raises(ProcessError):
                supervisor.start(str(exe))


class TestPriority:
    def test_sets_every_match(self, supervisor):
        procs = [fake_proc("ComfyUI", 1), fake_proc("ComfyUI", 2)]
        with patch("comfy_local.process.psutil.process_iter", return_value=procs):
            assert supervisor.set_priority("below_normal") == 2

        procs[0].nice.assert_called_once_with(PRIORITY_LEVELS["below_normal"])

    def test_unknown_level(self, supervisor):
        with pytest.raises(InvalidParameterError):
            supervisor.set_priority("turbo")


@pytest.mark.skipif(sys.platform == "win32", reason="title lookup is Windows only")
def test_window_title_off_windows(supervisor):
    assert supervisor.get_window_title() is None


class TestEnsureServer:
    def test_already_online(self, supervisor):
        client = MagicMock(base_url="http://127.0.0.1:8188")
        client.is_online.return_value = True

        assert supervisor.ensure_server(client) == "http://127.0.0.1:8188"
        client.discover_base_url.assert_not_called()

    def test_found_on_other_port(self, supervisor):
        client = MagicMock()
        client.is_online.return_value = False
        client.discover_base_url.return_value = "http://127.0.0.1:8000"

        assert supervisor.ensure_server(client) == "http://127.0.0.1:8000"

    def test_starts_process_and_waits(self, supervisor):
        client = MagicMock()
        client.is_online.return_value = False
        client.discover_base_url.side_effect = [None, None, "http://127.0.0.1:8000"]

        with patch.object(supervisor, "is_running", return_value=False), patch.object(
            supervisor, "start"
        ) as start, patch("comfy_local.retry.wait_fixed", return_value=lambda rs: 0):
            assert supervisor.ensure_server(client, timeout=10) == "http://127.0.0.1:8000"

        start.assert_called_once()

    def test_gives_up(self, supervisor):
        client = MagicMock()
        client.is_online.return_value = False
        client.discover_base_url.return_value = None

        with patch.object(supervisor, "is_running", return_value=True):
            with pytest.raises(ComfyUIOfflineError):
                supervisor.ensure_server(client, timeout=0)
