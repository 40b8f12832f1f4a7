"""
Tests for comfy_local/poller.py

A fake clock advances only when the poller sleeps, so deadlines are exact
and the tests never wait.
"""

import socket
import time
from unittest.mock import MagicMock

import pytest

from comfy_local.client import ComfyClient
from comfy_local.exceptions import (
    ComfyUIConnectionError,
    GenerationCancelledError,
    GenerationFailedError,
    GenerationTimeoutError,
    InvalidParameterError,
)
from comfy_local.poller import MIN_POLL_TIMEOUT, CancellationToken, CompletionPoller, PollState
from comfy_local.progress import ProgressUpdate


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def make_poller(client, clock, **kwargs):
    kwargs.setdefault("interrupt_on_cancel", False)
    return CompletionPoller(client, interval=1.0, clock=clock, sleep=clock.sleep, **kwargs)


class TestCompletion:
    """Completion is the presence of the prompt id in history."""

    def test_completes_when_history_has_prompt(self, clock):
        client = MagicMock()
        record = {"outputs": {"9": {"images": []}}}
        client.get_history.side_effect = [{}, {}, {"p1": record}]
        poller = make_poller(client, clock)

        assert poller.wait("p1", deadline=60) is record
        assert poller.state is PollState.COMPLETED
        assert clock.sleeps == [1.0, 1.0]

    def test_status_field_not_required(self, clock):
        client = MagicMock()
        client.get_history.return_value = {"p1": {}}

        assert make_poller(client, clock).wait("p1", deadline=60) == {}

    def test_transport_errors_are_retried(self, clock):
        client = MagicMock()
        client.get_history.side_effect = [
            ComfyUIConnectionError(),
            ComfyUIConnectionError(),
            {"p1": {"outputs": {}}},
        ]
        poller = make_poller(client, clock)

        poller.wait("p1", deadline=60)

        assert poller.polls == 3
        assert poller.state is PollState.COMPLETED

    def test_execution_error_raises(self, clock):
        client = MagicMock()
        client.get_history.return_value = {
            "p1": {
                "outputs": {},
                "status": {
                    "status_str": "error",
                    "completed": False,
                    "messages": [
                        ["execution_start", {"prompt_id": "p1"}],
                        [
                            "execution_error",
                            {"node_type": "KSampler", "exception_message": "CUDA out of memory"},
                        ],
                    ],
                },
            }
        }

        with pytest.raises(GenerationFailedError) as exc_info:
            make_poller(client, clock).wait("p1", deadline=60)

        assert "CUDA out of memory" in exc_info.value.details["comfy_error"]


class TestDeadline:
    def test_times_out(self, clock):
        client = MagicMock()
        client.get_history.return_value = {}
        poller = make_poller(client, clock)

        with pytest.raises(GenerationTimeoutError) as exc_info:
            poller.wait("p1", deadline=3)

        assert poller.state is PollState.TIMED_OUT
        assert poller.polls == 4
        assert exc_info.value.details["prompt_id"] == "p1"

    def test_request_timeout_clamped_to_time_left(self, clock):
        client = MagicMock()
        client.get_history.return_value = {}

        with pytest.raises(GenerationTimeoutError):
            make_poller(client, clock).wait("p1", deadline=3)

        timeouts = [call.kwargs["timeout"] for call in client.get_history.call_args_list]
        assert timeouts == [3.0, 2.0, 1.0, MIN_POLL_TIMEOUT]

    def test_last_sleep_stops_at_deadline(self, clock):
        client = MagicMock()
        client.get_history.return_value = {}

        with pytest.raises(GenerationTimeoutError):
            make_poller(client, clock).wait("p1", deadline=2.5)

        assert clock.sleeps == [1.0, 1.0, 0.5]
        assert clock.now == 2.5

    def test_zero_deadline_waits_without_limit(self, clock):
        client = MagicMock()
        client.get_history.side_effect = [{}] * 50 + [{"p1": {"outputs": {}}}]
        poller = make_poller(client, clock)

        poller.wait("p1", deadline=0)

        assert poller.polls == 51
        assert client.get_history.call_args.kwargs == {}

    def test_none_uses_configured_deadline(self, clock, monkeypatch):
        from comfy_local import poller as poller_module

        monkeypatch.setattr(poller_module.settings.polling, "completion_timeout", 2.0)
        client = MagicMock()
        client.get_history.return_value = {}

        with pytest.raises(GenerationTimeoutError):
            make_poller(client, clock).wait("p1")

        assert clock.now == 2.0


class TestCancellation:
    def test_cancel_before_first_poll(self, clock):
        client = MagicMock()
        token = CancellationToken()
        token.cancel()
        poller = make_poller(client, clock)

        with pytest.raises(GenerationCancelledError):
            poller.wait("p1", deadline=60, cancel=token)

        assert poller.state is PollState.CANCELLED
        client.get_history.assert_not_called()
        client.interrupt.assert_not_called()

    def test_cancel_during_wait_interrupts(self, clock):
        client = MagicMock()
        client.get_history.return_value = {}
        token = CancellationToken()

        def sleep(seconds):
            clock.sleep(seconds)
            token.cancel()

        poller = CompletionPoller(
            client, interval=1.0, clock=clock, sleep=sleep, interrupt_on_cancel=True
        )

        with pytest.raises(GenerationCancelledError):
            poller.wait("p1", deadline=60, cancel=token)

        assert poller.polls == 1
        client.interrupt.assert_called_once()

    def test_token(self):
        token = CancellationToken()
        assert token.cancelled is False
        token.cancel()
        assert token.cancelled is True


class TestProgress:
    def test_changed_updates_forwarded(self, clock):
        client = MagicMock()
        client.get_history.side_effect = [{}, {}, {}, {"p1": {"outputs": {}}}]
        first = ProgressUpdate(percent=10.0, source="log")
        second = ProgressUpdate(percent=20.0, source="log")
        progress = MagicMock()
        progress.read.side_effect = [first, first, second]
        received = []

        make_poller(client, clock, progress=progress).wait(
            "p1", deadline=60, on_progress=received.append
        )

        assert received == [first, second]

    def test_progress_does_not_decide_completion(self, clock):
        client = MagicMock()
        client.get_history.side_effect = [{}, {"p1": {"outputs": {}}}]
        progress = MagicMock()
        progress.read.return_value = ProgressUpdate(percent=100.0, source="log")
        poller = make_poller(client, clock, progress=progress)

        poller.wait("p1", deadline=60)

        assert poller.polls == 2

    def test_callback_error_does_not_end_wait(self, clock):
        client = MagicMock()
        client.get_history.side_effect = [{}, {}, {"p1": {"outputs": {}}}]
        progress = MagicMock()
        progress.read.side_effect = [
            ProgressUpdate(percent=10.0, source="log"),
            ProgressUpdate(percent=50.0, source="log"),
        ]
        on_progress = MagicMock(side_effect=RuntimeError("display closed"))
        poller = make_poller(client, clock, progress=progress)

        record = poller.wait("p1", deadline=60, on_progress=on_progress)

        assert record == {"outputs": {}}
        assert poller.state is PollState.COMPLETED
        assert on_progress.call_count == 2


def test_dead_server_wait_ends_at_deadline():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    client = ComfyClient(f"http://127.0.0.1:{port}")
    poller = CompletionPoller(client, interval=0.2, interrupt_on_cancel=False)

    start = time.monotonic()
    with pytest.raises(GenerationTimeoutError):
        poller.wait("abc", deadline=1.0)
    elapsed = time.monotonic() - start
    client.close()

    assert elapsed < 3.0
    assert poller.polls >= 3


def test_negative_interval_rejected():
    with pytest.raises(InvalidParameterError):
        CompletionPoller(MagicMock(), interval=-1)
