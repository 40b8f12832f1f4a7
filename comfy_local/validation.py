"""
Comfy Local - Input Validation
===============================

Parameter validation for generation requests using Pydantic.

Range checks live here so the workflow builder can stay total: anything that
reaches build_workflow() has already been validated.

Usage:
    from comfy_local.validation import GenerationRequest, validate_dimensions

    request = GenerationRequest(prompt="a lighthouse at dusk", width=768, height=512)
"""

import random
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from .config import settings
from .exceptions import (
    DimensionError,
    InvalidParameterError,
    InvalidPromptError,
    ValidationError,
)
from .logging_config import get_logger

logger = get_logger(__name__)

__all__ = [
    "validate_prompt",
    "validate_dimensions",
    "validate_in_range",
    "validate_choice",
    "validate_image_path",
    "GenerationRequest",
    "KNOWN_SAMPLERS",
    "KNOWN_SCHEDULERS",
    "IMAGE_EXTENSIONS",
]

# Characters that must never reach the server inside a prompt
DANGEROUS_CHARS = [
    "\x00",
    "\x1b",
]

KNOWN_SAMPLERS = [
    "euler",
    "euler_ancestral",
    "heun",
    "dpm_2",
    "dpm_2_ancestral",
    "lms",
    "dpm_fast",
    "dpm_adaptive",
    "dpmpp_2s_ancestral",
    "dpmpp_sde",
    "dpmpp_2m",
    "dpmpp_2m_sde",
    "dpmpp_3m_sde",
    "ddim",
    "uni_pc",
    "lcm",
]

KNOWN_SCHEDULERS = [
    "normal",
    "karras",
    "exponential",
    "sgm_uniform",
    "simple",
    "ddim_uniform",
    "beta",
]

IMAGE_EXTENSIONS = [".png", ".jpg", ".jpeg", ".gif", ".bmp", ".webp"]

PATH_TRAVERSAL_PATTERN = re.compile(r"\.\.[/\\]")

MAX_SEED = 2**32 - 1


# =============================================================================
# PLAIN VALIDATORS
# =============================================================================


def validate_prompt(prompt: str, *, max_length: int = 10000, allow_empty: bool = False) -> str:
    """
    Validate and clean a prompt.

    Raises:
        InvalidPromptError: If the prompt is empty (unless allowed) or too long
    """
    prompt = (prompt or "").strip()
    for char in DANGEROUS_CHARS:
        prompt = prompt.replace(char, "")

    if not prompt and not allow_empty:
        raise InvalidPromptError("Prompt cannot be empty")
    if len(prompt) > max_length:
        raise InvalidPromptError(f"Prompt too long (maximum {max_length} characters)")
    return prompt


def validate_dimensions(
    width: int,
    height: int,
    *,
    min_size: int = 64,
    max_size: int | None = None,
    must_be_divisible_by: int = 8,
) -> tuple[int, int]:
    """
    Validate image dimensions.

    Raises:
        DimensionError: If dimensions are out of range or not divisible
    """
    max_size = max_size or max(settings.generation.max_width, settings.generation.max_height)

    if width < min_size or height < min_size:
        raise DimensionError(width, height, f"Minimum size is {min_size}x{min_size}")

    if width > max_size or height > max_size:
        raise DimensionError(width, height, f"Maximum size is {max_size}x{max_size}")

    if must_be_divisible_by > 0:
        if width % must_be_divisible_by != 0 or height % must_be_divisible_by != 0:
            raise DimensionError(
                width, height, f"Dimensions must be divisible by {must_be_divisible_by}"
            )

    return (width, height)


def validate_in_range(
    value: int | float,
    name: str,
    *,
    min_val: int | float | None = None,
    max_val: int | float | None = None,
) -> int | float:
    """
    Validate that a numeric value is within range.

    Raises:
        InvalidParameterError: If out of range
    """
    if min_val is not None and value < min_val:
        raise InvalidParameterError(name, value, f"must be at least {min_val}")

    if max_val is not None and value > max_val:
        raise InvalidParameterError(name, value, f"must be at most {max_val}")

    return value


def validate_choice(value: Any, name: str, choices: list[Any]) -> Any:
    """
    Validate that a value is one of the allowed choices.

    Raises:
        InvalidParameterError: If not in choices
    """
    if value not in choices:
        raise InvalidParameterError(name, value, "not a valid choice", allowed_values=choices)
    return value


def validate_image_path(path: str | Path, *, must_exist: bool = True) -> Path:
    """
    Validate a local image path by extension and (optionally) existence.

    Raises:
        InvalidParameterError: Unsupported extension
        ValidationError: Missing file
    """
    filepath = Path(path)
    ext = filepath.suffix.lower()
    if ext not in IMAGE_EXTENSIONS:
        raise InvalidParameterError(
            "image", str(path), "unsupported image format", allowed_values=IMAGE_EXTENSIONS
        )
    if must_exist and not filepath.is_file():
        raise ValidationError(f"Image file does not exist: {filepath}")
    return filepath


# =============================================================================
# PYDANTIC MODELS
# =============================================================================


class GenerationRequest(BaseModel):
    """
    Validated parameter set used to build one workflow graph.

    source_image is the server-side filename returned by /upload/image (or a
    local path, which the orchestrator uploads first). When it is set the
    image-to-image topology is built and strength controls denoising.
    """

    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_default=True,
        extra="forbid",
        frozen=True,
    )

    prompt: str = Field(..., min_length=1, max_length=10000)
    negative_prompt: str = Field(
        default_factory=lambda: settings.generation.default_negative_prompt, max_length=5000
    )
    width: int = Field(default_factory=lambda: settings.generation.default_width, ge=64, le=8192)
    height: int = Field(default_factory=lambda: settings.generation.default_height, ge=64, le=8192)
    steps: int = Field(default_factory=lambda: settings.generation.default_steps, ge=1, le=150)
    cfg: float = Field(default_factory=lambda: settings.generation.default_cfg, ge=1.0, le=30.0)
    seed: int = Field(default=-1, ge=-1, le=MAX_SEED, description="-1 picks a random seed")
    sampler: str = Field(default_factory=lambda: settings.generation.default_sampler)
    scheduler: str = Field(default_factory=lambda: settings.generation.default_scheduler)
    model: str = Field(default="", max_length=500, description="Checkpoint filename")
    batch_size: int = Field(default=1, ge=1, le=16)
    source_image: str | None = None
    strength: float = Field(
        default_factory=lambda: settings.generation.default_strength, ge=0.0, le=1.0
    )
    filename_prefix: str | None = None
    output_file: str | None = None

    @field_validator("prompt", "negative_prompt")
    @classmethod
    def clean_prompt(cls, v: str, info: ValidationInfo) -> str:
        try:
            return validate_prompt(v, allow_empty=info.field_name == "negative_prompt")
        except InvalidPromptError as e:
            raise ValueError(e.message)

    @field_validator("sampler")
    @classmethod
    def check_sampler(cls, v: str) -> str:
        if v not in KNOWN_SAMPLERS:
            raise ValueError(f"unknown sampler '{v}'")
        return v

    @field_validator("scheduler")
    @classmethod
    def check_scheduler(cls, v: str) -> str:
        if v not in KNOWN_SCHEDULERS:
            raise ValueError(f"unknown scheduler '{v}'")
        return v

    @field_validator("model", "filename_prefix")
    @classmethod
    def reject_traversal(cls, v: str | None) -> str | None:
        if v and PATH_TRAVERSAL_PATTERN.search(v):
            raise ValueError("path traversal is not allowed")
        return v

    @model_validator(mode="after")
    def check_dimensions(self) -> "GenerationRequest":
        try:
            validate_dimensions(self.width, self.height)
        except DimensionError as e:
            raise ValueError(e.message)
        return self

    @property
    def is_img2img(self) -> bool:
        return bool(self.source_image)

    def resolve_seed(self, rng: random.Random | None = None) -> "GenerationRequest":
        """Return a copy with a concrete seed (replaces -1 with a random value)."""
        if self.seed != -1:
            return self
        rng = rng or random.Random()
        return self.model_copy(update={"seed": rng.randint(0, MAX_SEED)})
