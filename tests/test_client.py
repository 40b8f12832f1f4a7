"""
Tests for comfy_local/client.py

The pooled requests session is replaced with a MagicMock, so no server is needed.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from comfy_local.client import ComfyClient
from comfy_local.exceptions import (
    ComfyUIConnectionError,
    ComfyUIOfflineError,
    FileNotFoundResourceError,
    InvalidParameterError,
    QueueError,
)
from comfy_local.workflows import build_workflow


def make_response(status=200, json_data=None, text="", content=b"", url="http://test/x"):
    response = MagicMock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.text = text
    response.content = content
    response.url = url
    if json_data is None:
        response.json.side_effect = ValueError("No JSON")
    else:
        response.json.return_value = json_data
    return response


@pytest.fixture
def client():
    c = ComfyClient("http://127.0.0.1:8188", client_id="test-client")
    c._session = c._poll_session = MagicMock()
    return c


class TestQueuePrompt:
    """POST /prompt handling."""

    def test_returns_prompt_id(self, client, make_request):
        client.session.request.return_value = make_response(json_data={"prompt_id": "abc", "number": 1})
        graph = build_workflow(make_request())

        assert client.queue_prompt(graph) == "abc"

        method, url = client.session.request.call_args.args
        payload = client.session.request.call_args.kwargs["json"]
        assert method == "POST"
        assert url == "http://127.0.0.1:8188/prompt"
        assert payload == {"prompt": graph.to_dict(), "client_id": "test-client"}

    def test_accepts_plain_dict(self, client):
        client.session.request.return_value = make_response(json_data={"prompt_id": "abc"})

        assert client.queue_prompt({"1": {"class_type": "SaveImage", "inputs": {}}}) == "abc"

    def test_rejection_carries_node_errors(self, client, make_request):
        body = {
            "error": {"type": "prompt_outputs_failed_validation", "message": "Prompt outputs failed validation"},
            "node_errors": {"4": {"errors": [{"message": "Value not in list"}]}},
        }
        client.session.request.return_value = make_response(status=400, json_data=body)

        with pytest.raises(QueueError) as exc_info:
            client.queue_prompt(build_workflow(make_request()))

        assert exc_info.value.status_code == 400
        assert exc_info.value.response_body == body

    def test_rejection_with_text_body(self, client, make_request):
        client.session.request.return_value = make_response(status=500, text="Internal Server Error")

        with pytest.raises(QueueError) as exc_info:
            client.queue_prompt(build_workflow(make_request()))

        assert exc_info.value.response_body == "Internal Server Error"

    def test_missing_prompt_id(self, client, make_request):
        client.session.request.return_value = make_response(json_data={"number": 3})

        with pytest.raises(QueueError, match="missing prompt_id"):
            client.queue_prompt(build_workflow(make_request()))

    def test_connection_failure(self, client, make_request):
        client.session.request.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(ComfyUIConnectionError):
            client.queue_prompt(build_workflow(make_request()))


class TestQueue:
    """Queue inspection."""

    def test_empty_queue(self, client):
        client.session.request.return_value = make_response(
            json_data={"queue_running": [], "queue_pending": []}
        )

        assert client.is_queue_empty() is True

    def test_busy_queue(self, client):
        client.session.request.return_value = make_response(
            json_data={"queue_running": [[0, "abc", {}, {}, []]], "queue_pending": []}
        )

        assert client.is_queue_empty() is False

    def test_unreachable_counts_as_empty(self, client):
        client.session.request.side_effect = requests.exceptions.ConnectionError("refused")

        assert client.is_queue_empty() is True

    def test_queue_counts(self, client):
        client.session.request.return_value = make_response(
            json_data={"queue_running": [[0, "a"]], "queue_pending": [[1, "b"], [2, "c"]]}
        )

        assert client.queue_counts() == (1, 2)

    def test_clear_and_interrupt(self, client):
        client.session.request.return_value = make_response(json_data={})

        assert client.clear_queue() is True
        assert client.interrupt() is True
        urls = [c.args[1] for c in client.session.request.call_args_list]
        assert urls == ["http://127.0.0.1:8188/queue", "http://127.0.0.1:8188/interrupt"]

    def test_interrupt_failure_is_reported(self, client):
        client.session.request.side_effect = requests.exceptions.Timeout()

        assert client.interrupt() is False


class TestHistory:
    def test_history_for_prompt(self, client):
        client.session.request.return_value = make_response(json_data={"abc": {"outputs": {}}})

        assert client.get_history("abc") == {"abc": {"outputs": {}}}
        assert client.session.request.call_args.args[1].endswith("/history/abc")

    def test_transport_error_raises(self, client):
        client.session.request.side_effect = requests.exceptions.Timeout()

        with pytest.raises(ComfyUIConnectionError):
            client.get_history("abc")

    def test_invalid_json_raises(self, client):
        client.session.request.return_value = make_response(text="<html>")

        with pytest.raises(ComfyUIConnectionError):
            client.get_history("abc")

    def test_history_bypasses_retrying_session(self):
        c = ComfyClient("http://127.0.0.1:8188")
        c._session = MagicMock()
        c._poll_session = MagicMock()
        c._poll_session.request.return_value = make_response(json_data={})

        c.get_history("abc", timeout=2.0)

        c._session.request.assert_not_called()
        assert c._poll_session.request.call_args.kwargs["timeout"] == (2.0, 2.0)

    def test_poll_session_has_no_transport_retries(self):
        c = ComfyClient("http://127.0.0.1:8188")

        adapter = c.poll_session.get_adapter("http://127.0.0.1:8188/history")

        assert adapter.max_retries.total == 0
        assert c.session.get_adapter("http://127.0.0.1:8188/queue").max_retries.total > 0
        c.close()
        assert c._poll_session is None


class TestModelsInfo:
    def test_get_checkpoints(self, client):
        info = {
            "CheckpointLoaderSimple": {
                "input": {"required": {"ckpt_name": [["a.safetensors", "b.ckpt"]]}}
            }
        }
        client.session.request.return_value = make_response(json_data=info)

        assert client.get_checkpoints() == ["a.safetensors", "b.ckpt"]

    def test_get_checkpoints_unavailable(self, client):
        client.session.request.side_effect = requests.exceptions.ConnectionError()

        assert client.get_checkpoints() == []

    def test_system_stats_unavailable(self, client):
        client.session.request.return_value = make_response(status=500, text="boom")

        assert client.get_system_stats() is None


class TestConnection:
    def test_discover_switches_base_url(self, client):
        with patch("comfy_local.client.requests.get") as mock_get:
            mock_get.side_effect = [
                requests.exceptions.ConnectionError(),
                make_response(json_data={}),
            ]
            found = client.discover_base_url(["http://127.0.0.1:8188", "http://127.0.0.1:8000/"])

        assert found == "http://127.0.0.1:8000"
        assert client.base_url == "http://127.0.0.1:8000"

    def test_discover_nothing_answers(self, client):
        with patch("comfy_local.client.requests.get", side_effect=requests.exceptions.ConnectionError()):
            assert client.discover_base_url(["http://127.0.0.1:1"]) is None
        assert client.base_url == "http://127.0.0.1:8188"

    def test_ensure_online_raises_when_offline(self, client):
        with patch("comfy_local.client.requests.get", side_effect=requests.exceptions.ConnectionError()):
            with pytest.raises(ComfyUIOfflineError):
                client.ensure_online()

    def test_context_manager_closes_session(self):
        session = MagicMock()
        with ComfyClient("http://x") as c:
            c._session = session

        session.close.assert_called_once()
        assert c._session is None


class TestFiles:
    def test_upload_image(self, client, tmp_path):
        image = tmp_path / "source.png"
        image.write_bytes(b"png")
        client.session.request.return_value = make_response(
            json_data={"name": "source.png", "subfolder": "", "type": "input"}
        )

        assert client.upload_image(image) == "source.png"

        kwargs = client.session.request.call_args.kwargs
        assert kwargs["files"]["image"][0] == "source.png"
        assert kwargs["data"]["overwrite"] == "true"

    def test_upload_image_with_subfolder(self, client, tmp_path):
        image = tmp_path / "source.png"
        image.write_bytes(b"png")
        client.session.request.return_value = make_response(
            json_data={"name": "source (1).png", "subfolder": "jobs", "type": "input"}
        )

        assert client.upload_image(image, subfolder="jobs") == "jobs/source (1).png"

    def test_upload_missing_file(self, client, tmp_path):
        with pytest.raises(FileNotFoundResourceError):
            client.upload_image(tmp_path / "nope.png")

    def test_upload_rejects_non_image(self, client, tmp_path):
        doc = tmp_path / "notes.txt"
        doc.write_text("hello")

        with pytest.raises(InvalidParameterError):
            client.upload_image(doc)
        client.session.request.assert_not_called()

    def test_get_image(self, client):
        client.session.request.return_value = make_response(content=b"\x89PNG")

        assert client.get_image("a.png", "sub", "output") == b"\x89PNG"
        assert client.session.request.call_args.kwargs["params"] == {
            "filename": "a.png",
            "subfolder": "sub",
            "type": "output",
        }

    def test_get_image_not_found(self, client):
        client.session.request.return_value = make_response(status=404, text="missing")

        with pytest.raises(ComfyUIConnectionError):
            client.get_image("a.png")
