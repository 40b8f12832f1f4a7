"""
Comfy Local - Local ComfyUI Orchestration
==========================================

Drive a ComfyUI server running on this machine: start and stop it, build
text-to-image and image-to-image workflows, submit them, wait for the result
with a deadline and cancellation, and collect the images with metadata.

Features:
- Workflow graphs for universal (SD1.5-style) and SDXL checkpoints
- Model directory resolution honoring extra_model_paths.yaml
- Process supervision (start, stop, priority, readiness wait)
- Completion polling with advisory progress from log, window title and queue
- Multi-model batches with per-model results
- Structured logging and user-friendly errors

Usage:
    from comfy_local import GenerationOrchestrator, GenerationRequest

    batch = GenerationOrchestrator().generate(
        GenerationRequest(prompt="a lighthouse at dusk", width=768, height=512)
    )
    print(batch.images)
"""

# Configuration (import first - other modules depend on it)
from .config import (
    Settings,
    settings,
    get_settings,
    reload_settings,
    get_temp_dir,
)

from .exceptions import (
    ErrorLevel,
    VerbosityLevel,
    set_verbosity,
    get_verbosity,
    Result,
    ComfyLocalError,
    ConfigurationError,
    InstallationNotFoundError,
    SettingsFileNotFoundError,
    ComfyUIConnectionError,
    ComfyUIOfflineError,
    GenerationError,
    QueueError,
    GenerationTimeoutError,
    GenerationCancelledError,
    GenerationFailedError,
    NoOutputError,
    ValidationError,
    InvalidPromptError,
    InvalidParameterError,
    DimensionError,
    ResourceError,
    ModelNotFoundError,
    FileNotFoundResourceError,
    ProcessError,
    format_error_for_user,
)

from .logging_config import get_logger, set_log_level, LogContext

from .validation import GenerationRequest

from .workflows import (
    Architecture,
    NodeRef,
    WorkflowNode,
    WorkflowGraph,
    build_workflow,
)

from .models import (
    ModelDescriptor,
    ModelPathResolver,
    load_supported_models,
    find_model,
    compatible_models,
    find_local_checkpoint,
)

from .client import ComfyClient
from .process import ProcessSupervisor
from .progress import (
    ProgressUpdate,
    ProgressSource,
    NullProgressSource,
    LogFileProgressSource,
    WindowTitleProgressSource,
    ServerStatusProgressSource,
    CompositeProgressSource,
)
from .poller import PollState, CancellationToken, CompletionPoller
from .downloader import ImageRef, ResultDownloader
from .imaging import convert_image, write_metadata_sidecars, sidecar_path
from .orchestrator import (
    ALL_MODELS,
    BatchResult,
    GenerationOutput,
    GenerationOrchestrator,
)
from .ui_settings import set_background_image, clear_background_image, set_dev_mode

__version__ = "1.0.0"

__all__ = [
    "__version__",
    # Config
    "Settings",
    "settings",
    "get_settings",
    "reload_settings",
    "get_temp_dir",
    # Errors
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
    # Logging
    "get_logger",
    "set_log_level",
    "LogContext",
    # Requests and workflows
    "GenerationRequest",
    "Architecture",
    "NodeRef",
    "WorkflowNode",
    "WorkflowGraph",
    "build_workflow",
    # Models
    "ModelDescriptor",
    "ModelPathResolver",
    "load_supported_models",
    "find_model",
    "compatible_models",
    "find_local_checkpoint",
    # Server
    "ComfyClient",
    "ProcessSupervisor",
    # Progress and polling
    "ProgressUpdate",
    "ProgressSource",
    "NullProgressSource",
    "LogFileProgressSource",
    "WindowTitleProgressSource",
    "ServerStatusProgressSource",
    "CompositeProgressSource",
    "PollState",
    "CancellationToken",
    "CompletionPoller",
    # Results
    "ImageRef",
    "ResultDownloader",
    "convert_image",
    "write_metadata_sidecars",
    "sidecar_path",
    "ALL_MODELS",
    "BatchResult",
    "GenerationOutput",
    "GenerationOrchestrator",
    # UI settings
    "set_background_image",
    "clear_background_image",
    "set_dev_mode",
]
