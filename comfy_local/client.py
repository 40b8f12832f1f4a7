"""
Comfy Local - ComfyUI API Client
=================================

HTTP client for the ComfyUI REST endpoints with:
- Connection pooling via requests.Session
- Transport-level retry for idempotent requests (urllib3 Retry)
- Structured logging
- Domain errors instead of raw requests exceptions

The client carries its own base_url, so several servers (or a server that
moved from :8188 to :8000) can be handled without global state.

Usage:
    from comfy_local import ComfyClient

    with ComfyClient() as client:
        client.ensure_online()
        prompt_id = client.queue_prompt(graph)
        history = client.get_history(prompt_id)
"""

import mimetypes
import uuid
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import settings
from .exceptions import (
    ComfyUIConnectionError,
    ComfyUIOfflineError,
    FileNotFoundResourceError,
    QueueError,
)
from .logging_config import get_logger
from .validation import validate_image_path

logger = get_logger(__name__)

__all__ = ["ComfyClient"]

# GET /queue probe used by is_queue_empty()
QUEUE_PROBE_TIMEOUT = 3.0


def _safe_json_parse(response: "requests.Response", context: str = "") -> Any:
    """
    Parse JSON from a response.

    Raises:
        ComfyUIConnectionError: If the body is not valid JSON
    """
    try:
        return response.json()
    except ValueError as e:
        logger.error(
            f"Invalid JSON response{f' ({context})' if context else ''}",
            extra={"error": str(e), "response_text": response.text[:200] if response.text else ""},
        )
        raise ComfyUIConnectionError(
            message=f"Invalid JSON response from ComfyUI{f' while {context}' if context else ''}",
            url=response.url,
            cause=e,
        )


def _error_body(response: "requests.Response") -> Any:
    """Server error payload: the JSON error/node_errors when parseable, raw text otherwise."""
    try:
        data = response.json()
    except ValueError:
        return response.text
    if isinstance(data, dict) and ("error" in data or "node_errors" in data):
        return {key: data[key] for key in ("error", "node_errors") if key in data}
    return data


class ComfyClient:
    """
    HTTP client for the ComfyUI API.

    Attributes:
        base_url: ComfyUI server URL
        client_id: Unique identifier sent with every submitted prompt
    """

    def __init__(self, base_url: str | None = None, client_id: str | None = None):
        self.base_url = (base_url or settings.comfyui.url).rstrip("/")
        self.client_id = client_id or str(uuid.uuid4())
        self._session: requests.Session | None = None
        self._poll_session: requests.Session | None = None

        logger.debug(
            "ComfyClient initialized",
            extra={"base_url": self.base_url, "client_id": self.client_id[:8]},
        )

    @property
    def session(self) -> requests.Session:
        """Get or create the HTTP session with connection pooling."""
        if self._session is None:
            self._session = self._create_session()
        return self._session

    @property
    def poll_session(self) -> requests.Session:
        """Session for /history polling: pooled, but without transport retries."""
        if self._poll_session is None:
            self._poll_session = self._create_session(retry=False)
        return self._poll_session

    def _create_session(self, retry: bool = True) -> requests.Session:
        session = requests.Session()

        if not retry:
            # One attempt per request
            adapter = HTTPAdapter(max_retries=0, pool_connections=1, pool_maxsize=2)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
            return session

        # POST /prompt must never be resent
        retry_strategy = Retry(
            total=settings.retry.max_retries,
            backoff_factor=settings.retry.backoff_base,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["HEAD", "GET", "OPTIONS"],
            raise_on_status=False,
        )

        adapter = HTTPAdapter(max_retries=retry_strategy, pool_connections=4, pool_maxsize=8)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def close(self):
        """Close the HTTP session."""
        for name in ("_session", "_poll_session"):
            session = getattr(self, name)
            if session is not None:
                session.close()
                setattr(self, name, None)
        logger.debug("HTTP sessions closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # =========================================================================
    # INTERNAL REQUEST METHODS
    # =========================================================================

    def _request(
        self,
        method: str,
        endpoint: str,
        timeout: float | None = None,
        retry: bool = True,
        **kwargs,
    ) -> requests.Response:
        """
        Make an HTTP request against base_url.

        The connect timeout never exceeds the read timeout. With retry=False the
        request goes through poll_session and is attempted exactly once.

        Raises:
            ComfyUIConnectionError: On connection failure or timeout
        """
        url = f"{self.base_url}{endpoint}"
        timeout = timeout or settings.comfyui.timeout_read
        session = self.session if retry else self.poll_session

        try:
            return session.request(
                method,
                url,
                timeout=(min(settings.comfyui.timeout_connect, timeout), timeout),
                **kwargs,
            )
        except requests.exceptions.ConnectionError as e:
            logger.debug(f"Connection error: {endpoint}", extra={"error": str(e)})
            raise ComfyUIConnectionError(
                message=f"Failed to connect to ComfyUI at {self.base_url}",
                url=self.base_url,
                cause=e,
            )
        except requests.exceptions.Timeout as e:
            logger.debug(f"Request timeout: {endpoint}", extra={"timeout": timeout})
            raise ComfyUIConnectionError(
                message=f"Request timed out after {timeout}s", url=url, cause=e
            )
        except requests.exceptions.RequestException as e:
            logger.warning(f"Request failed: {endpoint}", extra={"error": str(e)})
            raise ComfyUIConnectionError(message=f"Request failed: {e}", url=url, cause=e)

    def _get(self, endpoint: str, **kwargs) -> requests.Response:
        return self._request("GET", endpoint, **kwargs)

    def _post(self, endpoint: str, **kwargs) -> requests.Response:
        return self._request("POST", endpoint, **kwargs)

    def _get_json(self, endpoint: str, context: str, **kwargs) -> Any:
        response = self._get(endpoint, **kwargs)
        if not response.ok:
            raise ComfyUIConnectionError(
                message=f"ComfyUI returned HTTP {response.status_code} while {context}",
                url=response.url,
            )
        return _safe_json_parse(response, context)

    # =========================================================================
    # CONNECTION
    # =========================================================================

    @staticmethod
    def _probe(base_url: str) -> bool:
        # Outside the pooled session and its retry adapter
        try:
            response = requests.get(f"{base_url}/system_stats", timeout=(1.0, 1.0))
            return response.status_code == 200
        except requests.exceptions.RequestException:
            return False

    def is_online(self) -> bool:
        """Check whether the server at base_url answers."""
        return self._probe(self.base_url)

    def ensure_online(self):
        """
        Raises:
            ComfyUIOfflineError: If the server does not answer
        """
        if not self.is_online():
            raise ComfyUIOfflineError(url=self.base_url)

    def discover_base_url(self, candidates: Iterable[str] | None = None) -> str | None:
        """
        Probe candidate base URLs and switch to the first that answers.

        Returns:
            The answering base URL, or None
        """
        for candidate in candidates or settings.comfyui.candidate_urls:
            candidate = candidate.rstrip("/")
            if self._probe(candidate):
                if candidate != self.base_url:
                    logger.info(f"ComfyUI found at {candidate}")
                self.base_url = candidate
                return candidate
        return None

    def get_system_stats(self) -> dict | None:
        """System stats (devices, VRAM) or None when unavailable."""
        try:
            return self._get_json("/system_stats", "getting system stats")
        except ComfyUIConnectionError as e:
            logger.debug(f"Failed to get system stats: {e}")
            return None

    # =========================================================================
    # MODELS & INFO
    # =========================================================================

    def get_object_info(self, node_type: str | None = None) -> dict:
        """Node definitions from /object_info; empty dict when unavailable."""
        endpoint = f"/object_info/{node_type}" if node_type else "/object_info"
        try:
            data = self._get_json(endpoint, f"getting object info for {node_type or 'all nodes'}")
        except ComfyUIConnectionError as e:
            logger.debug(f"Failed to get object info: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def get_checkpoints(self) -> list[str]:
        """Checkpoint filenames known to the server."""
        data = self.get_object_info("CheckpointLoaderSimple")
        try:
            options = data["CheckpointLoaderSimple"]["input"]["required"]["ckpt_name"][0]
        except (KeyError, IndexError, TypeError):
            return []
        return list(options) if isinstance(options, list) else []

    # =========================================================================
    # QUEUE MANAGEMENT
    # =========================================================================

    def get_queue(self) -> dict:
        """
        Raw /queue payload.

        Raises:
            ComfyUIConnectionError: If the server cannot be reached
        """
        data = self._get_json("/queue", "getting queue status", timeout=settings.comfyui.timeout_queue)
        return data if isinstance(data, dict) else {}

    def queue_counts(self) -> tuple[int, int]:
        """(running, pending) job counts."""
        data = self.get_queue()
        running = data.get("queue_running") or []
        pending = data.get("queue_pending") or []
        return len(running), len(pending)

    def is_queue_empty(self) -> bool:
        """
        True when nothing is running or pending.

        An unreachable server counts as empty.
        """
        try:
            data = self._get_json("/queue", "checking queue", timeout=QUEUE_PROBE_TIMEOUT)
        except ComfyUIConnectionError as e:
            logger.debug(f"Queue check failed, treating as empty: {e}")
            return True
        if not isinstance(data, dict):
            return True
        return not data.get("queue_running") and not data.get("queue_pending")

    def get_history(self, prompt_id: str | None = None, timeout: float | None = None) -> dict:
        """
        Execution history, optionally for a single prompt.

        Sent once, without transport retries; connect and read are each
        bounded by timeout (default: settings.comfyui.timeout_read).

        Raises:
            ComfyUIConnectionError: On transport errors (callers decide whether to retry)
        """
        endpoint = f"/history/{prompt_id}" if prompt_id else "/history"
        data = self._get_json(endpoint, "getting history", timeout=timeout, retry=False)
        return data if isinstance(data, dict) else {}

    def interrupt(self) -> bool:
        """Interrupt the currently running job."""
        try:
            response = self._post("/interrupt")
        except ComfyUIConnectionError as e:
            logger.warning(f"Failed to interrupt job: {e}")
            return False
        if response.ok:
            logger.info("Interrupted current job")
        return response.ok

    def clear_queue(self) -> bool:
        """Remove all pending jobs."""
        try:
            response = self._post("/queue", json={"clear": True})
        except ComfyUIConnectionError as e:
            logger.warning(f"Failed to clear queue: {e}")
            return False
        if response.ok:
            logger.info("Cleared queue")
        return response.ok

    # =========================================================================
    # PROMPT EXECUTION
    # =========================================================================

    def queue_prompt(self, graph: Mapping) -> str:
        """
        Submit a workflow graph.

        Args:
            graph: WorkflowGraph or plain API-format dict

        Returns:
            The server-assigned prompt_id

        Raises:
            QueueError: Server rejected the graph (carries the response body)
            ComfyUIConnectionError: Server unreachable
        """
        workflow = graph.to_dict() if hasattr(graph, "to_dict") else dict(graph)
        payload = {"prompt": workflow, "client_id": self.client_id}
        response = self._post("/prompt", json=payload, timeout=settings.comfyui.timeout_queue)

        if not response.ok:
            body = _error_body(response)
            logger.warning(
                f"Queue failed with status {response.status_code}",
                extra={"status": response.status_code},
            )
            raise QueueError(
                f"ComfyUI rejected the workflow (HTTP {response.status_code})",
                status_code=response.status_code,
                response_body=body,
            )

        try:
            data = response.json()
        except ValueError:
            raise QueueError(
                "Queue response is not JSON",
                status_code=response.status_code,
                response_body=response.text,
            )

        prompt_id = data.get("prompt_id") if isinstance(data, dict) else None
        if not isinstance(prompt_id, str) or not prompt_id:
            raise QueueError(
                "Queue response missing prompt_id",
                status_code=response.status_code,
                response_body=data,
            )

        logger.info("Queued prompt", extra={"prompt_id": prompt_id, "nodes": len(workflow)})
        return prompt_id

    # =========================================================================
    # FILE TRANSFER
    # =========================================================================

    def upload_image(self, path: str | Path, subfolder: str = "", overwrite: bool = True) -> str:
        """
        Upload a local image to the server's input folder.

        Returns:
            Server-side name usable by LoadImage ("subfolder/name" when a subfolder is used)

        Raises:
            FileNotFoundResourceError: Local file missing
            InvalidParameterError: Not an image extension ComfyUI accepts
            ComfyUIConnectionError: Upload failed
        """
        path = validate_image_path(path, must_exist=False)
        if not path.is_file():
            raise FileNotFoundResourceError(str(path))

        mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        data = {"overwrite": "true" if overwrite else "false", "type": "input"}
        if subfolder:
            data["subfolder"] = subfolder

        with open(path, "rb") as f:
            response = self._post(
                "/upload/image",
                files={"image": (path.name, f, mime)},
                data=data,
                timeout=settings.comfyui.timeout_upload,
            )

        if not response.ok:
            raise ComfyUIConnectionError(
                f"Image upload failed with HTTP {response.status_code}", url=response.url
            )

        result = _safe_json_parse(response, "uploading image")
        name = result.get("name") or path.name
        server_subfolder = result.get("subfolder") or ""
        server_name = f"{server_subfolder}/{name}" if server_subfolder else name
        logger.info(f"Uploaded source image as {server_name}")
        return server_name

    def get_image(self, filename: str, subfolder: str = "", folder_type: str = "output") -> bytes:
        """
        Download an image through /view.

        Raises:
            ComfyUIConnectionError: On transport errors or a non-2xx answer
        """
        params = {"filename": filename, "subfolder": subfolder, "type": folder_type}
        response = self._get("/view", params=params, timeout=settings.comfyui.timeout_image)
        if not response.ok:
            raise ComfyUIConnectionError(
                f"Fetching {filename} failed with HTTP {response.status_code}", url=response.url
            )
        logger.debug(f"Downloaded image: {filename}", extra={"bytes": len(response.content)})
        return response.content
