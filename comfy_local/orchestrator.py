"""
Comfy Local - Generation Orchestrator
======================================

End-to-end generation across one or more models:

    resolve model -> check availability -> upload source image -> build graph
    -> submit -> wait -> download -> convert/move -> write sidecars

Models run strictly one after another. A failure for one model becomes a
Result.failure in the BatchResult and the batch continues; a cancellation
stops the remaining models.

Usage:
    from comfy_local import GenerationOrchestrator, GenerationRequest

    orchestrator = GenerationOrchestrator()
    batch = orchestrator.generate(
        GenerationRequest(prompt="a red fox in snow", output_file="fox.jpg"),
        models=["SDXL Base 1.0", "DreamShaper 8"],
    )
    for output in batch.outputs:
        print(output.images)
"""

import re
import tempfile
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .client import ComfyClient
from .config import Settings, get_settings, get_temp_dir
from .downloader import ResultDownloader
from .exceptions import (
    ComfyLocalError,
    ComfyUIOfflineError,
    GenerationCancelledError,
    ModelNotFoundError,
    NoOutputError,
    Result,
)
from .imaging import convert_image, write_metadata_sidecars
from .logging_config import LogContext, get_logger, log_timing
from .models import (
    ModelDescriptor,
    ModelPathResolver,
    compatible_models,
    find_local_checkpoint,
    find_model,
    load_supported_models,
)
from .poller import CancellationToken, CompletionPoller
from .process import ProcessSupervisor
from .progress import (
    CompositeProgressSource,
    LogFileProgressSource,
    ProgressSource,
    ProgressUpdate,
    ServerStatusProgressSource,
    WindowTitleProgressSource,
)
from .validation import GenerationRequest
from .workflows import build_workflow

logger = get_logger(__name__)

__all__ = ["GenerationOutput", "BatchResult", "GenerationOrchestrator", "ALL_MODELS"]

ALL_MODELS = "all"

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class GenerationOutput:
    """Files produced for one model."""

    model: str
    prompt_id: str
    seed: int
    images: list[Path] = field(default_factory=list)
    sidecars: list[Path] = field(default_factory=list)


@dataclass
class BatchResult:
    """Per-model results of one generate() call, in execution order."""

    results: list[tuple[str, Result]] = field(default_factory=list)

    def add(self, model: str, result: Result):
        self.results.append((model, result))

    @property
    def outputs(self) -> list[GenerationOutput]:
        return [r.value for _, r in self.results if r.ok]

    @property
    def errors(self) -> list[tuple[str, ComfyLocalError]]:
        return [(model, r.error) for model, r in self.results if r.failed]

    @property
    def succeeded(self) -> int:
        return sum(1 for _, r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for _, r in self.results if r.failed)

    @property
    def ok(self) -> bool:
        return bool(self.results) and self.failed == 0

    @property
    def images(self) -> list[Path]:
        return [path for output in self.outputs for path in output.images]


def _slug(name: str) -> str:
    return _UNSAFE_NAME_CHARS.sub("_", name).strip("_") or "model"


class GenerationOrchestrator:
    """
    Runs GenerationRequests against a local ComfyUI server.

    Every collaborator is optional and defaults to the configured instance,
    so tests can inject fakes for any of them.
    """

    def __init__(
        self,
        client: ComfyClient | None = None,
        resolver: ModelPathResolver | None = None,
        poller: CompletionPoller | None = None,
        downloader: ResultDownloader | None = None,
        settings: Settings | None = None,
        supervisor: ProcessSupervisor | None = None,
        models: list[ModelDescriptor] | None = None,
        ensure_server: bool = True,
    ):
        self.settings = settings or get_settings()
        self.client = client or ComfyClient()
        self.resolver = resolver or ModelPathResolver()
        self.poller = poller
        self.downloader = downloader or ResultDownloader(self.client)
        self.supervisor = supervisor
        self._models = models
        self.ensure_server = ensure_server

    @property
    def models(self) -> list[ModelDescriptor]:
        if self._models is None:
            self._models = load_supported_models()
        return self._models

    # =========================================================================
    # MODEL SELECTION
    # =========================================================================

    def resolve_models(
        self, request: GenerationRequest, models: str | Sequence[str] | None
    ) -> list[ModelDescriptor]:
        """
        Map the models argument to descriptors.

        Names that are not in the supported list are treated as checkpoint
        filenames of the universal architecture.
        """
        if models == ALL_MODELS:
            return compatible_models(self.models)
        if models is None:
            names = [request.model or self.settings.models.default_model]
        elif isinstance(models, str):
            names = [models]
        else:
            names = list(models)

        descriptors = []
        for name in names:
            descriptor = find_model(name, self.models)
            if descriptor is None:
                logger.debug(f"'{name}' is not a known model, using it as a checkpoint filename")
                descriptor = ModelDescriptor.for_checkpoint(name)
            descriptors.append(descriptor)
        return descriptors

    def check_available(self, descriptor: ModelDescriptor):
        """
        Raises:
            ModelNotFoundError: Checkpoint neither on disk nor known to the server
        """
        if find_local_checkpoint(descriptor.file_name, self.resolver):
            return
        if descriptor.file_name in self.client.get_checkpoints():
            return
        raise ModelNotFoundError(descriptor.file_name)

    # =========================================================================
    # GENERATION
    # =========================================================================

    def _progress_for(self, prompt_id: str) -> ProgressSource:
        sources: list[ProgressSource] = []
        polling = self.settings.polling
        if polling.log_progress and self.settings.comfyui.log_file:
            sources.append(LogFileProgressSource(self.settings.comfyui.log_file))
        if polling.title_progress and self.supervisor is not None:
            sources.append(WindowTitleProgressSource(self.supervisor.get_window_title))
        sources.append(ServerStatusProgressSource(self.client, prompt_id))
        return CompositeProgressSource(sources)

    def _poller_for(self, prompt_id: str) -> CompletionPoller:
        if self.poller is not None:
            return self.poller
        return CompletionPoller(
            self.client,
            interval=self.settings.polling.interval,
            progress=self._progress_for(prompt_id),
            interrupt_on_cancel=self.settings.polling.interrupt_on_cancel,
        )

    def _output_path(
        self,
        request: GenerationRequest,
        descriptor: ModelDescriptor,
        downloaded: Path,
        output_dir: Path,
        index: int,
        count: int,
        multi_model: bool,
    ) -> Path:
        if request.output_file:
            target = Path(request.output_file)
            if not target.is_absolute():
                target = output_dir / target
            stem = target.stem
            if multi_model:
                stem = f"{stem}_{_slug(descriptor.name)}"
            if count > 1:
                stem = f"{stem}_{index + 1}"
            return target.with_name(f"{stem}{target.suffix or self.settings.generation.output_extension}")
        return output_dir / f"{downloaded.stem}{self.settings.generation.output_extension}"

    def _upload_source(self, request: GenerationRequest, uploaded: dict[str, str]) -> str | None:
        source = request.source_image
        if not source:
            return None
        if source in uploaded:
            return uploaded[source]
        if Path(source).is_file():
            uploaded[source] = self.client.upload_image(source)
        else:
            # Already a server-side name
            uploaded[source] = source
        return uploaded[source]

    def _generate_one(
        self,
        request: GenerationRequest,
        descriptor: ModelDescriptor,
        output_dir: Path,
        deadline: float | None,
        cancel: CancellationToken | None,
        on_progress: Callable[[ProgressUpdate], None] | None,
        multi_model: bool,
        uploaded: dict[str, str],
    ) -> GenerationOutput:
        self.check_available(descriptor)

        job = request.model_copy(
            update={
                "model": descriptor.file_name,
                "source_image": self._upload_source(request, uploaded),
            }
        )
        graph = build_workflow(job, descriptor.architecture)
        prompt_id = self.client.queue_prompt(graph)

        with log_timing(logger, "wait", model=descriptor.name, prompt_id=prompt_id):
            record = self._poller_for(prompt_id).wait(
                prompt_id, deadline=deadline, cancel=cancel, on_progress=on_progress
            )

        output = GenerationOutput(model=descriptor.name, prompt_id=prompt_id, seed=job.seed)
        with tempfile.TemporaryDirectory(dir=get_temp_dir()) as work_dir:
            downloaded = self.downloader.download(record, work_dir)
            if not downloaded:
                raise NoOutputError(prompt_id=prompt_id)

            for index, path in enumerate(downloaded):
                final = self._output_path(
                    job, descriptor, path, output_dir, index, len(downloaded), multi_model
                )
                final = convert_image(path, final)
                output.images.append(final)
                output.sidecars.extend(
                    write_metadata_sidecars(final, job, descriptor.file_name, prompt_id)
                )

        logger.info(
            f"{descriptor.name}: {len(output.images)} image(s) written",
            extra={"prompt_id": prompt_id, "seed": job.seed},
        )
        return output

    def generate(
        self,
        request: GenerationRequest,
        models: str | Sequence[str] | None = None,
        output_dir: str | Path | None = None,
        deadline: float | None = None,
        cancel: CancellationToken | None = None,
        on_progress: Callable[[ProgressUpdate], None] | None = None,
    ) -> BatchResult:
        """
        Generate request once per model.

        Args:
            request: Validated request; a seed of -1 is resolved once for all models
            models: None (request.model or the configured default), a name,
                    a list of names, or "all" for every compatible model
            output_dir: Where outputs go (default: configured output_dir, else cwd)
            deadline: Completion deadline per job in seconds (see CompletionPoller.wait)
            cancel: Token that stops the current wait and the remaining models
            on_progress: Receives ProgressUpdates while waiting

        Returns:
            BatchResult with one Result per model

        Raises:
            ComfyUIOfflineError: Server unreachable at base_url and every candidate URL
                                 (and could not be started)
        """
        request_id = str(uuid.uuid4())[:8]
        output_dir = Path(output_dir or self.settings.generation.output_dir or Path.cwd())

        with LogContext(request_id):
            if self.ensure_server:
                if self.supervisor is not None:
                    self.supervisor.ensure_server(self.client)
                elif not self.client.is_online() and self.client.discover_base_url() is None:
                    raise ComfyUIOfflineError(url=self.client.base_url)

            request = request.resolve_seed()
            descriptors = self.resolve_models(request, models)
            multi_model = len(descriptors) > 1
            logger.info(
                f"Generating with {len(descriptors)} model(s)",
                extra={"models": [d.name for d in descriptors], "seed": request.seed},
            )

            batch = BatchResult()
            uploaded: dict[str, str] = {}
            for descriptor in descriptors:
                if cancel is not None and cancel.cancelled:
                    batch.add(descriptor.name, Result.failure(GenerationCancelledError()))
                    continue
                result = Result.from_exception(
                    self._generate_one,
                    request,
                    descriptor,
                    output_dir,
                    deadline,
                    cancel,
                    on_progress,
                    multi_model,
                    uploaded,
                )
                batch.add(descriptor.name, result)

            if batch.failed:
                summary = "; ".join(f"{model}: {error.message}" for model, error in batch.errors)
                logger.warning(
                    f"{batch.failed} of {len(batch.results)} model(s) failed: {summary}",
                    extra={"failed": batch.failed, "succeeded": batch.succeeded},
                )
            else:
                logger.info("Generation complete", extra={"succeeded": batch.succeeded})
            return batch
