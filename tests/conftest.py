"""Shared fixtures for comfy_local tests."""

import io

import pytest
from PIL import Image


@pytest.fixture
def png_bytes():
    """A tiny valid PNG."""
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), (10, 20, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def make_request():
    """Factory for GenerationRequests with small, valid defaults."""
    from comfy_local.validation import GenerationRequest

    def _make(**overrides):
        fields = {
            "prompt": "a red fox in snow",
            "negative_prompt": "blurry",
            "width": 512,
            "height": 512,
            "seed": 42,
            "model": "sd15.safetensors",
        }
        fields.update(overrides)
        return GenerationRequest(**fields)

    return _make


@pytest.fixture
def history_record():
    """History entry for a finished job with a single SaveImage output."""

    def _record(*filenames, status="success"):
        return {
            "outputs": {
                "9": {
                    "images": [
                        {"filename": name, "subfolder": "", "type": "output"} for name in filenames
                    ]
                }
            },
            "status": {"status_str": status, "completed": status == "success", "messages": []},
        }

    return _record


@pytest.fixture
def package_caplog(caplog):
    """caplog wired to the comfy_local logger, which does not propagate to root."""
    from comfy_local.logging_config import ROOT_LOGGER_NAME, get_logger

    logger = get_logger(ROOT_LOGGER_NAME)
    logger.addHandler(caplog.handler)
    caplog.set_level("DEBUG", logger=ROOT_LOGGER_NAME)
    yield caplog
    logger.removeHandler(caplog.handler)
