"""
Tests for comfy_local/validation.py

Covers:
- GenerationRequest field constraints and defaults
- Seed resolution
- Plain validator helpers
"""

import random

import pytest
from pydantic import ValidationError as PydanticValidationError

from comfy_local.exceptions import (
    DimensionError,
    InvalidParameterError,
    InvalidPromptError,
    ValidationError,
)
from comfy_local.validation import (
    MAX_SEED,
    GenerationRequest,
    validate_choice,
    validate_dimensions,
    validate_image_path,
    validate_in_range,
    validate_prompt,
)


class TestGenerationRequest:
    """Request model constraints."""

    def test_defaults_from_settings(self):
        from comfy_local.config import settings

        request = GenerationRequest(prompt="a cat")

        assert request.width == settings.generation.default_width
        assert request.steps == settings.generation.default_steps
        assert request.sampler == settings.generation.default_sampler
        assert request.seed == -1
        assert request.is_img2img is False

    def test_prompt_is_stripped(self):
        assert GenerationRequest(prompt="  a cat  ").prompt == "a cat"

    def test_dangerous_chars_removed(self):
        assert GenerationRequest(prompt="a\x00cat\x1b").prompt == "acat"

    @pytest.mark.parametrize("prompt", ["", "   "])
    def test_empty_prompt_rejected(self, prompt):
        with pytest.raises(PydanticValidationError):
            GenerationRequest(prompt=prompt)

    @pytest.mark.parametrize("width,height", [(513, 512), (512, 500)])
    def test_dimensions_must_be_divisible_by_8(self, width, height):
        with pytest.raises(PydanticValidationError, match="divisible by 8"):
            GenerationRequest(prompt="x", width=width, height=height)

    def test_dimension_bounds(self):
        with pytest.raises(PydanticValidationError):
            GenerationRequest(prompt="x", width=32, height=512)

    def test_unknown_sampler_rejected(self):
        with pytest.raises(PydanticValidationError, match="unknown sampler"):
            GenerationRequest(prompt="x", sampler="warp_drive")

    def test_unknown_scheduler_rejected(self):
        with pytest.raises(PydanticValidationError, match="unknown scheduler"):
            GenerationRequest(prompt="x", scheduler="sometimes")

    def test_strength_range(self):
        with pytest.raises(PydanticValidationError):
            GenerationRequest(prompt="x", strength=1.5)

    def test_extra_fields_forbidden(self):
        with pytest.raises(PydanticValidationError):
            GenerationRequest(prompt="x", denoise=0.3)

    @pytest.mark.parametrize("field", ["model", "filename_prefix"])
    def test_path_traversal_rejected(self, field):
        with pytest.raises(PydanticValidationError, match="traversal"):
            GenerationRequest(prompt="x", **{field: "../../etc/passwd"})

    def test_is_frozen(self):
        request = GenerationRequest(prompt="x")
        with pytest.raises(PydanticValidationError):
            request.prompt = "y"

    def test_img2img_flag(self):
        assert GenerationRequest(prompt="x", source_image="in.png").is_img2img


class TestResolveSeed:
    def test_random_seed_picked(self):
        resolved = GenerationRequest(prompt="x").resolve_seed(random.Random(1))

        assert 0 <= resolved.seed <= MAX_SEED

    def test_same_rng_same_seed(self):
        request = GenerationRequest(prompt="x")

        first = request.resolve_seed(random.Random(7)).seed
        second = request.resolve_seed(random.Random(7)).seed
        assert first == second

    def test_explicit_seed_kept(self):
        request = GenerationRequest(prompt="x", seed=1234)

        assert request.resolve_seed() is request


class TestValidators:
    """Plain validator helpers."""

    def test_validate_prompt(self):
        assert validate_prompt("  hello ") == "hello"

    def test_validate_prompt_empty(self):
        with pytest.raises(InvalidPromptError):
            validate_prompt("   ")
        assert validate_prompt("", allow_empty=True) == ""

    def test_validate_prompt_too_long(self):
        with pytest.raises(InvalidPromptError):
            validate_prompt("x" * 11, max_length=10)

    def test_validate_dimensions(self):
        assert validate_dimensions(512, 768) == (512, 768)

    @pytest.mark.parametrize("width,height", [(32, 512), (512, 100000), (513, 512)])
    def test_validate_dimensions_errors(self, width, height):
        with pytest.raises(DimensionError):
            validate_dimensions(width, height)

    def test_validate_in_range(self):
        assert validate_in_range(5, "steps", min_val=1, max_val=10) == 5
        with pytest.raises(InvalidParameterError):
            validate_in_range(0, "steps", min_val=1)

    def test_validate_choice(self):
        assert validate_choice("a", "letter", ["a", "b"]) == "a"
        with pytest.raises(InvalidParameterError) as exc_info:
            validate_choice("c", "letter", ["a", "b"])
        assert exc_info.value.details["allowed_values"] == ["a", "b"]

    def test_validate_image_path(self, tmp_path):
        image = tmp_path / "in.PNG"
        image.write_bytes(b"x")

        assert validate_image_path(image) == image

    def test_validate_image_path_bad_extension(self, tmp_path):
        with pytest.raises(InvalidParameterError):
            validate_image_path(tmp_path / "notes.txt", must_exist=False)

    def test_validate_image_path_missing(self, tmp_path):
        with pytest.raises(ValidationError):
            validate_image_path(tmp_path / "missing.png")
