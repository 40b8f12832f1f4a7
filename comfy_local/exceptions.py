"""
Comfy Local - Errors
=====================

Every error raised by the package derives from ComfyLocalError and carries
three renderings of the same problem:

    user_message       short text for the CLI ("ComfyUI is not running")
    eli5_message       plain-language text for non-technical users
    developer_message  "[CODE] message (key=value, ...) [caused by: ...]"

plus a stable code, structured details and recovery suggestions. Which text
str(error) and format_error_for_user() show depends on COMFY_LOCAL_ENV and
COMFY_LOCAL_VERBOSITY (or set_verbosity()).

How the package treats each family:

    ConfigurationError       bad install or settings; raised at once, never retried
    ConnectionError          transport trouble; swallowed only inside the poll loop
    QueueError               /prompt rejected; carries the server's response body
    GenerationError          timeout, cancel, server-side failure, no output
    ValidationError          caller input
    ResourceError            missing model or file
    ProcessError             the OS refused to start or signal ComfyUI

Inside multi-model batches a failure becomes Result.failure(error) instead of
propagating, so one bad model does not abort the rest.
"""

import os
from enum import Enum
from typing import Any

__all__ = [
    "ErrorLevel",
    "VerbosityLevel",
    "set_verbosity",
    "get_verbosity",
    "Result",
    "ComfyLocalError",
    "ConfigurationError",
    "InstallationNotFoundError",
    "SettingsFileNotFoundError",
    "ComfyUIConnectionError",
    "ComfyUIOfflineError",
    "GenerationError",
    "QueueError",
    "GenerationTimeoutError",
    "GenerationCancelledError",
    "GenerationFailedError",
    "NoOutputError",
    "ValidationError",
    "InvalidPromptError",
    "InvalidParameterError",
    "DimensionError",
    "ResourceError",
    "ModelNotFoundError",
    "FileNotFoundResourceError",
    "ProcessError",
    "format_error_for_user",
]


class ErrorLevel(Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class VerbosityLevel(Enum):
    """Audience for error text: ELI5 < CASUAL < DEVELOPER."""

    ELI5 = "eli5"
    CASUAL = "casual"
    DEVELOPER = "developer"


_verbosity_override: VerbosityLevel | None = None


def set_verbosity(level: VerbosityLevel | None):
    """Force a verbosity level; None goes back to COMFY_LOCAL_VERBOSITY."""
    global _verbosity_override
    _verbosity_override = level


def get_verbosity() -> VerbosityLevel:
    if _verbosity_override is not None:
        return _verbosity_override
    try:
        return VerbosityLevel(os.environ.get("COMFY_LOCAL_VERBOSITY", "casual").lower())
    except ValueError:
        return VerbosityLevel.CASUAL


def _is_production() -> bool:
    return os.environ.get("COMFY_LOCAL_ENV", "development").lower() == "production"


# =============================================================================
# BASE
# =============================================================================


class ComfyLocalError(Exception):
    """
    Base class for all package errors.

    Subclasses set the class attributes below; keyword arguments that are not
    recognized by __init__ land in details (None values are dropped), so
    ``GenerationTimeoutError(timeout=30, prompt_id="p1")`` needs no
    constructor of its own.
    """

    code = "COMFY_LOCAL_ERROR"
    default_message = "An error occurred"
    default_user_message = "An error occurred"
    default_eli5_message = "Something went wrong"
    default_suggestions: tuple[str, ...] = ()
    level = ErrorLevel.ERROR

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        user_message: str | None = None,
        eli5_message: str | None = None,
        suggestions: list[str] | None = None,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
        level: ErrorLevel | None = None,
        request_id: str | None = None,
        **fields: Any,
    ):
        self.message = message or self.default_message
        super().__init__(self.message)
        if code:
            self.code = code
        if level:
            self.level = level
        self._user_message = user_message
        self._eli5_message = eli5_message
        self._suggestions = suggestions
        self.details = dict(details or {})
        self.details.update({k: v for k, v in fields.items() if v is not None})
        self.request_id = request_id
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    @property
    def user_message(self) -> str:
        return self._user_message or self.default_user_message

    @property
    def eli5_message(self) -> str:
        return self._eli5_message or self.default_eli5_message

    @property
    def suggestions(self) -> list[str]:
        return list(self._suggestions or self.default_suggestions)

    @property
    def developer_message(self) -> str:
        tag = f"{self.code}:{self.request_id}" if self.request_id else self.code
        text = f"[{tag}] {self.message}"
        if self.details:
            text += " (" + ", ".join(f"{k}={v}" for k, v in self.details.items()) + ")"
        if self.cause is not None:
            text += f" [caused by: {type(self.cause).__name__}: {self.cause}]"
        return text

    def get_message(self, verbosity: VerbosityLevel | None = None) -> str:
        verbosity = verbosity or get_verbosity()
        if verbosity is VerbosityLevel.ELI5:
            return self.eli5_message
        if verbosity is VerbosityLevel.CASUAL:
            return self.user_message
        return self.developer_message

    def add_context(self, key: str, value: Any) -> "ComfyLocalError":
        self.details[key] = value
        return self

    def to_dict(self, include_internal: bool = False) -> dict[str, Any]:
        """JSON-ready form; internals are hidden in production unless asked for."""
        data: dict[str, Any] = {
            "error": True,
            "code": self.code,
            "message": self.user_message,
            "suggestions": self.suggestions,
        }
        if self.request_id:
            data["request_id"] = self.request_id
        if include_internal or not _is_production():
            data["details"] = self.details
            data["developer_message"] = self.developer_message
            if self.cause is not None:
                data["cause"] = str(self.cause)
        return data

    def __str__(self) -> str:
        return self.user_message if _is_production() else self.developer_message


# =============================================================================
# CONFIGURATION
# =============================================================================


class ConfigurationError(ComfyLocalError):
    code = "CONFIGURATION_ERROR"
    default_message = "Invalid configuration"
    default_user_message = "ComfyUI is not configured correctly"
    default_eli5_message = "The image generator isn't set up yet"


class InstallationNotFoundError(ConfigurationError):
    """No ComfyUI installation or executable could be located."""

    code = "INSTALLATION_NOT_FOUND"
    default_message = "ComfyUI installation not found"
    default_user_message = "ComfyUI installation not found"
    default_eli5_message = "Can't find the image generator on this computer"
    default_suggestions = (
        "Install the ComfyUI desktop application",
        "Set COMFY_LOCAL_COMFYUI__INSTALL_DIR to your ComfyUI folder",
    )


class SettingsFileNotFoundError(ConfigurationError):
    """comfy.settings.json does not exist (ComfyUI was never started)."""

    code = "SETTINGS_FILE_NOT_FOUND"
    default_user_message = "ComfyUI settings file not found"
    default_eli5_message = "The image generator hasn't saved its settings yet"
    default_suggestions = ("Run ComfyUI at least once so it creates its settings file",)

    def __init__(self, path: str, message: str | None = None, **kwargs):
        super().__init__(message or f"ComfyUI settings file not found at: {path}", path=path, **kwargs)


# =============================================================================
# CONNECTION
# =============================================================================


class ConnectionError(ComfyLocalError):
    code = "CONNECTION_ERROR"
    default_message = "Connection failed"
    default_user_message = "Connection failed"
    default_eli5_message = "Can't connect to the service"


class ComfyUIConnectionError(ConnectionError):
    """A request to the server failed at the transport or HTTP level."""

    code = "COMFYUI_CONNECTION_ERROR"
    default_message = "Failed to connect to ComfyUI"
    default_user_message = "Unable to connect to ComfyUI"
    default_eli5_message = "The image generator isn't responding"
    default_suggestions = ("Check if ComfyUI is running", "Verify the URL in settings")


class ComfyUIOfflineError(ConnectionError):
    code = "COMFYUI_OFFLINE"
    default_message = "ComfyUI is offline"
    default_user_message = "ComfyUI is not running"
    default_eli5_message = "The image generator is turned off"
    default_suggestions = ("Start ComfyUI", "Wait a few seconds and try again")


# =============================================================================
# GENERATION
# =============================================================================


class GenerationError(ComfyLocalError):
    code = "GENERATION_ERROR"
    default_message = "Generation failed"
    default_user_message = "Generation failed"
    default_eli5_message = "Couldn't create the image"


class QueueError(GenerationError):
    """
    POST /prompt was rejected or answered with something unusable.

    response_body holds the server's error payload: the parsed JSON
    ``error``/``node_errors`` when available, else the raw text.
    """

    code = "QUEUE_ERROR"
    default_message = "Failed to queue prompt"
    default_user_message = "Unable to start generation"
    default_eli5_message = "Couldn't start making the image"
    default_suggestions = (
        "Check that the model file exists in ComfyUI",
        "Check the server response for node errors",
    )

    def __init__(
        self,
        message: str | None = None,
        status_code: int | None = None,
        response_body: Any = None,
        **kwargs,
    ):
        super().__init__(
            message, status_code=status_code, response=response_body or None, **kwargs
        )
        self.status_code = status_code
        self.response_body = response_body


class GenerationTimeoutError(GenerationError):
    code = "GENERATION_TIMEOUT"
    default_message = "Generation timed out"
    default_user_message = "Generation took too long"
    default_eli5_message = "Making the image took too long"
    default_suggestions = (
        "Try a smaller image size",
        "Reduce the number of steps",
        "Raise COMFY_LOCAL_POLLING__COMPLETION_TIMEOUT",
    )


class GenerationCancelledError(GenerationError):
    code = "GENERATION_CANCELLED"
    default_message = "Generation cancelled"
    default_user_message = "Generation was cancelled"
    default_eli5_message = "You stopped the image before it was done"
    level = ErrorLevel.WARNING


class GenerationFailedError(GenerationError):
    """History recorded an execution error; comfy_error holds the server text."""

    code = "GENERATION_FAILED"
    default_eli5_message = "Something went wrong while making the image"
    default_suggestions = ("Try a different prompt", "Check your model and settings")


class NoOutputError(GenerationError):
    code = "NO_OUTPUT"
    default_message = "Generation produced no output"
    default_user_message = "No image was generated"
    default_eli5_message = "The image generator finished but didn't make anything"


# =============================================================================
# VALIDATION
# =============================================================================


class ValidationError(ComfyLocalError):
    code = "VALIDATION_ERROR"
    default_message = "Invalid input"
    default_user_message = "Invalid input"
    default_eli5_message = "Something you entered isn't quite right"


class InvalidPromptError(ValidationError):
    code = "INVALID_PROMPT"
    default_message = "Invalid or empty prompt"
    default_user_message = "Please enter a valid prompt"
    default_eli5_message = "You need to describe what image you want"
    default_suggestions = ("Enter a description of the image you want",)


class InvalidParameterError(ValidationError):
    code = "INVALID_PARAMETER"

    def __init__(
        self,
        parameter: str,
        value: Any,
        reason: str | None = None,
        allowed_values: list | None = None,
        **kwargs,
    ):
        message = f"Invalid value for '{parameter}': {value}" + (f" ({reason})" if reason else "")
        user_message = f"Invalid {parameter}"
        if allowed_values:
            user_message += f". Choose from: {', '.join(str(v) for v in allowed_values[:6])}"
        kwargs.setdefault("user_message", user_message)
        super().__init__(
            message,
            parameter=parameter,
            value=str(value),
            reason=reason,
            allowed_values=list(allowed_values) if allowed_values else None,
            **kwargs,
        )


class DimensionError(ValidationError):
    code = "DIMENSION_ERROR"
    default_user_message = "Invalid image size"
    default_eli5_message = "The image size isn't right"
    default_suggestions = ("Use dimensions divisible by 8", "Try standard sizes: 512x512, 1024x1024")

    def __init__(self, width: int, height: int, reason: str | None = None, **kwargs):
        message = f"Invalid dimensions: {width}x{height}" + (f" ({reason})" if reason else "")
        super().__init__(message, width=width, height=height, reason=reason, **kwargs)


# =============================================================================
# RESOURCES AND PROCESS
# =============================================================================


class ResourceError(ComfyLocalError):
    code = "RESOURCE_ERROR"
    default_message = "Resource unavailable"
    default_user_message = "Resource unavailable"
    default_eli5_message = "Something we need isn't available"


class ModelNotFoundError(ResourceError):
    """Checkpoint is neither on disk nor listed by the server."""

    code = "MODEL_NOT_FOUND"
    default_user_message = "Model not available"
    default_eli5_message = "The AI model we need isn't installed"
    default_suggestions = (
        "Place the model file in the ComfyUI checkpoints folder",
        "Check extra_model_paths.yaml",
    )

    def __init__(self, model_name: str, model_type: str = "checkpoint", **kwargs):
        super().__init__(
            f"{model_type.capitalize()} not found: {model_name}",
            model_name=model_name,
            model_type=model_type,
            **kwargs,
        )


class FileNotFoundResourceError(ResourceError):
    """Local file is missing (not named FileNotFoundError to keep the builtin usable)."""

    code = "FILE_NOT_FOUND"
    default_user_message = "File not found"
    default_eli5_message = "Can't find that file"

    def __init__(self, filepath: str, **kwargs):
        super().__init__(f"File not found: {filepath}", filepath=filepath, **kwargs)


class ProcessError(ComfyLocalError):
    code = "PROCESS_ERROR"
    default_message = "Process operation failed"
    default_user_message = "Could not control the ComfyUI process"
    default_eli5_message = "Couldn't start or stop the image generator"


# =============================================================================
# RESULT
# =============================================================================


class Result:
    """
    Success value or ComfyLocalError, for loops that must keep going.

    Usage:
        result = Result.from_exception(run_one_model, descriptor)
        if result.failed:
            logger.warning(result.error.developer_message)
    """

    __slots__ = ("_value", "_error")

    def __init__(self, value: Any = None, error: ComfyLocalError | None = None):
        self._value = value
        self._error = error

    @classmethod
    def success(cls, value: Any) -> "Result":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ComfyLocalError) -> "Result":
        return cls(error=error)

    @classmethod
    def from_exception(cls, fn, *args, **kwargs) -> "Result":
        """Call fn; any exception becomes a failure (foreign ones wrapped)."""
        try:
            return cls.success(fn(*args, **kwargs))
        except ComfyLocalError as e:
            return cls.failure(e)
        except Exception as e:
            return cls.failure(ComfyLocalError(str(e), cause=e))

    @property
    def ok(self) -> bool:
        return self._error is None

    @property
    def failed(self) -> bool:
        return self._error is not None

    @property
    def value(self) -> Any:
        """The value; re-raises the error of a failed result."""
        if self._error is not None:
            raise self._error
        return self._value

    @property
    def error(self) -> ComfyLocalError | None:
        return self._error

    def value_or(self, default: Any) -> Any:
        return self._value if self.ok else default

    def map(self, fn) -> "Result":
        return Result.success(fn(self._value)) if self.ok else self

    def to_dict(self, include_internal: bool = False) -> dict[str, Any]:
        if self.ok:
            return {"success": True, "value": self._value}
        return {"success": False, **self._error.to_dict(include_internal)}

    def __repr__(self) -> str:
        if self.ok:
            return f"Result.success({self._value!r})"
        return f"Result.failure({self._error!r})"


def format_error_for_user(error: BaseException, verbosity: VerbosityLevel | None = None) -> str:
    """Text for any exception at the requested (or configured) verbosity."""
    verbosity = verbosity or get_verbosity()
    if isinstance(error, ComfyLocalError):
        return error.get_message(verbosity)
    if verbosity is VerbosityLevel.ELI5:
        return "Something went wrong"
    if verbosity is VerbosityLevel.CASUAL:
        return f"Error: {type(error).__name__}"
    return f"{type(error).__name__}: {error}"
