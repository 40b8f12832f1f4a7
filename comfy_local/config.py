"""
Comfy Local - Settings
=======================

Every tunable lives in one pydantic-settings tree, one BaseSettings class per
concern. Values come from the environment (COMFY_LOCAL_ prefix, "__" between
section and field) or a local .env file:

    COMFY_LOCAL_COMFYUI__URL=http://127.0.0.1:8000
    COMFY_LOCAL_COMFYUI__INSTALL_DIR=D:\\ComfyUI
    COMFY_LOCAL_POLLING__COMPLETION_TIMEOUT=600
    COMFY_LOCAL_LOGGING__LEVEL=DEBUG

Modules import the shared `settings` instance at import time; call
reload_settings() before importing them if the environment changes.
"""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = [
    "Settings",
    "settings",
    "get_settings",
    "reload_settings",
    "get_temp_dir",
    # Sub-configs
    "ComfyUIConfig",
    "PollingConfig",
    "RetryConfig",
    "LoggingConfig",
    "GenerationConfig",
    "ModelsConfig",
]


# =============================================================================
# CONFIGURATION CLASSES
# =============================================================================


class ComfyUIConfig(BaseSettings):
    """ComfyUI server and installation configuration."""

    model_config = SettingsConfigDict(
        env_prefix="COMFY_LOCAL_COMFYUI__",
        env_ignore_empty=True,
    )

    url: str = "http://127.0.0.1:8188"
    # Desktop builds listen on 8000, source installs on 8188
    candidate_urls: list[str] = ["http://127.0.0.1:8188", "http://127.0.0.1:8000"]

    install_dir: str | None = None
    executable: str | None = None
    process_names: list[str] = ["comfyui", "ComfyUI"]
    log_file: str | None = None

    timeout_connect: float = 5.0
    timeout_read: float = 30.0
    timeout_queue: float = 10.0
    timeout_image: float = 60.0
    timeout_upload: float = 60.0
    startup_timeout: float = 120.0


class PollingConfig(BaseSettings):
    """Completion polling configuration."""

    model_config = SettingsConfigDict(
        env_prefix="COMFY_LOCAL_POLLING__",
        env_ignore_empty=True,
    )

    interval: float = 1.0
    # 0 disables the deadline
    completion_timeout: float = 1800.0
    log_progress: bool = True
    title_progress: bool = True
    interrupt_on_cancel: bool = True


class RetryConfig(BaseSettings):
    """Retry configuration for idempotent requests (image fetches, readiness)."""

    model_config = SettingsConfigDict(
        env_prefix="COMFY_LOCAL_RETRY__",
        env_ignore_empty=True,
    )

    max_retries: int = 3
    backoff_base: float = 1.5
    backoff_max: float = 30.0
    download_attempts: int = 3


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="COMFY_LOCAL_LOGGING__",
        env_ignore_empty=True,
    )

    level: str = "INFO"
    format: str = "%(asctime)s | %(levelname)-8s | %(name)s | %(request_id)s | %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"
    file: str | None = None
    json_output: bool = False


class GenerationConfig(BaseSettings):
    """Default generation settings."""

    model_config = SettingsConfigDict(
        env_prefix="COMFY_LOCAL_GENERATION__",
        env_ignore_empty=True,
    )

    default_width: int = 1024
    default_height: int = 1024
    default_steps: int = 20
    default_cfg: float = 7.0
    default_sampler: str = "euler"
    default_scheduler: str = "normal"
    default_strength: float = 0.75
    default_negative_prompt: str = "blurry, low quality, distorted, deformed, watermark, text"
    max_width: int = 4096
    max_height: int = 4096
    max_steps: int = 150
    output_dir: str | None = None
    output_extension: str = ".png"


class ModelsConfig(BaseSettings):
    """Supported model list configuration."""

    model_config = SettingsConfigDict(
        env_prefix="COMFY_LOCAL_MODELS__",
        env_ignore_empty=True,
    )

    # None uses the list shipped with the package
    supported_models_file: str | None = None
    default_model: str = "Stable Diffusion 1.5"


class Settings(BaseSettings):
    """
    Root of the settings tree.

    Usage:
        from comfy_local.config import get_settings

        timeout = get_settings().polling.completion_timeout
    """

    model_config = SettingsConfigDict(
        env_prefix="COMFY_LOCAL_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        env_nested_delimiter="__",
        extra="ignore",
    )

    comfyui: ComfyUIConfig = ComfyUIConfig()
    polling: PollingConfig = PollingConfig()
    retry: RetryConfig = RetryConfig()
    logging: LoggingConfig = LoggingConfig()
    generation: GenerationConfig = GenerationConfig()
    models: ModelsConfig = ModelsConfig()

    version: str = "1.0.0"
    name: str = "comfy_local"

    def to_dict(self) -> dict:
        """Plain-dict snapshot of the values worth showing in diagnostics."""
        return {
            "version": self.version,
            "comfyui": {
                "url": self.comfyui.url,
                "candidate_urls": list(self.comfyui.candidate_urls),
                "install_dir": self.comfyui.install_dir,
                "startup_timeout": self.comfyui.startup_timeout,
            },
            "polling": {
                "interval": self.polling.interval,
                "completion_timeout": self.polling.completion_timeout,
            },
            "retry": {
                "max_retries": self.retry.max_retries,
                "download_attempts": self.retry.download_attempts,
            },
            "logging": {
                "level": self.logging.level,
                "json_output": self.logging.json_output,
            },
            "generation": {
                "default_width": self.generation.default_width,
                "default_height": self.generation.default_height,
                "output_extension": self.generation.output_extension,
            },
        }


# =============================================================================
# CACHED SETTINGS INSTANCE
# =============================================================================


@lru_cache
def get_settings() -> Settings:
    """The process-wide Settings, built on first call."""
    return Settings()


settings = get_settings()


def reload_settings() -> Settings:
    """Re-read the environment and replace the module-level instance."""
    get_settings.cache_clear()
    global settings
    settings = get_settings()
    return settings


def get_temp_dir() -> Path:
    """Scratch directory for downloads before they are moved into place."""
    import tempfile

    temp_dir = Path(tempfile.gettempdir()) / "comfy_local"
    temp_dir.mkdir(exist_ok=True)
    return temp_dir
