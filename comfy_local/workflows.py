"""
Comfy Local - Workflow Graph Builder
=====================================

Builds ComfyUI API-format workflow graphs for the two fixed topologies:

    text-to-image:
        CheckpointLoaderSimple -> CLIPTextEncode (+/-) -> EmptyLatentImage
        -> KSampler -> VAEDecode -> SaveImage

    image-to-image:
        CheckpointLoaderSimple -> CLIPTextEncode (+/-) -> LoadImage -> VAEEncode
        -> KSampler -> VAEDecode -> SaveImage

Two architectures are supported. They share the topology and differ in how
img2img strength maps to the sampler's denoise value.

The builder is pure: no I/O, no randomness, no failure modes. Requests are
validated upstream (see validation.GenerationRequest) and seeds resolved
before building, so identical requests give byte-identical JSON.

Usage:
    from comfy_local.workflows import Architecture, build_workflow

    graph = build_workflow(request.resolve_seed(), Architecture.SDXL)
    client.queue_prompt(graph)
"""

import json
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import PurePath
from types import MappingProxyType
from typing import Any, NamedTuple

from .logging_config import get_logger
from .validation import GenerationRequest

logger = get_logger(__name__)

__all__ = [
    "Architecture",
    "NodeRef",
    "WorkflowNode",
    "WorkflowGraph",
    "NODE_OUTPUTS",
    "CHECKPOINT_EXTENSIONS",
    "build_workflow",
    "build_txt2img",
    "build_img2img",
    "img2img_denoise",
    "resolve_filename_prefix",
    "coerce_checkpoint_name",
]


class Architecture(str, Enum):
    UNIVERSAL = "universal"
    SDXL = "sdxl"

    @classmethod
    def parse(cls, value: "str | Architecture | None") -> "Architecture":
        """Map a model-list tag to an architecture; unknown tags are universal."""
        if isinstance(value, Architecture):
            return value
        tag = (value or "").strip().lower()
        if tag in ("sdxl", "xl", "sdxl-turbo", "sdxl_turbo"):
            return cls.SDXL
        return cls.UNIVERSAL


# Number of output slots per node type; 0 means the node is a sink
NODE_OUTPUTS: dict[str, int] = {
    "CheckpointLoaderSimple": 3,  # MODEL, CLIP, VAE
    "CLIPTextEncode": 1,
    "EmptyLatentImage": 1,
    "LoadImage": 2,  # IMAGE, MASK
    "VAEEncode": 1,
    "KSampler": 1,
    "VAEDecode": 1,
    "SaveImage": 0,
}

CHECKPOINT_EXTENSIONS = (".safetensors", ".ckpt", ".pt")

PRESERVE_PREFIX = (
    "Keep the original composition, subjects and colors unchanged except where described. "
)
ANTI_DRIFT_SUFFIX = (
    ", different composition, changed layout, altered subject, extra objects, style drift"
)

MAX_UNIVERSAL_DENOISE = 0.5
UNIVERSAL_STRENGTH_FACTOR = 0.6


# =============================================================================
# DATA CLASSES
# =============================================================================


class NodeRef(NamedTuple):
    """Reference to output slot `slot` of node `node_id`."""

    node_id: str
    slot: int

    def to_json(self) -> list:
        return [self.node_id, self.slot]


@dataclass(frozen=True)
class WorkflowNode:
    """One node of the graph: a class_type plus its inputs."""

    class_type: str
    inputs: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "inputs", MappingProxyType(dict(self.inputs)))

    def refs(self) -> Iterator[tuple[str, NodeRef]]:
        """Yield (input_name, NodeRef) for every linked input."""
        for name, value in self.inputs.items():
            if isinstance(value, NodeRef):
                yield name, value

    def to_dict(self) -> dict[str, Any]:
        return {
            "class_type": self.class_type,
            "inputs": {
                name: value.to_json() if isinstance(value, NodeRef) else value
                for name, value in self.inputs.items()
            },
        }


class WorkflowGraph(Mapping):
    """
    Immutable node-id keyed workflow graph.

    Behaves as a read-only mapping of node id -> WorkflowNode and serializes
    to the /prompt wire format with to_dict()/to_json().
    """

    def __init__(self, nodes: Mapping[str, WorkflowNode]):
        self._nodes = MappingProxyType(dict(nodes))

    def __getitem__(self, node_id: str) -> WorkflowNode:
        return self._nodes[node_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __repr__(self) -> str:
        types = ", ".join(f"{k}:{n.class_type}" for k, n in self._nodes.items())
        return f"WorkflowGraph({types})"

    def nodes_of_type(self, class_type: str) -> list[str]:
        return [node_id for node_id, node in self._nodes.items() if node.class_type == class_type]

    def terminal_nodes(self) -> list[str]:
        """Node ids that no other node references."""
        referenced = {ref.node_id for node in self._nodes.values() for _, ref in node.refs()}
        return [node_id for node_id in self._nodes if node_id not in referenced]

    def validate(self) -> list[str]:
        """
        Check that every NodeRef targets a node in this graph and a valid slot.

        Returns:
            List of violation messages (empty when the graph is well formed)
        """
        errors = []
        for node_id, node in self._nodes.items():
            for input_name, ref in node.refs():
                target = self._nodes.get(ref.node_id)
                if target is None:
                    errors.append(
                        f"Node {node_id}.{input_name} references missing node {ref.node_id}"
                    )
                    continue
                outputs = NODE_OUTPUTS.get(target.class_type)
                if outputs is not None and not 0 <= ref.slot < outputs:
                    errors.append(
                        f"Node {node_id}.{input_name} references slot {ref.slot} of "
                        f"{target.class_type} (has {outputs} outputs)"
                    )
        return errors

    def to_dict(self) -> dict[str, Any]:
        return {node_id: node.to_dict() for node_id, node in self._nodes.items()}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))


# =============================================================================
# HELPERS
# =============================================================================


def coerce_checkpoint_name(name: str) -> str:
    """Append .safetensors unless the name already carries a checkpoint extension."""
    if name.lower().endswith(CHECKPOINT_EXTENSIONS):
        return name
    return f"{name}.safetensors"


def resolve_filename_prefix(request: GenerationRequest, now: datetime | None = None) -> str:
    """
    Pick the SaveImage filename prefix.

    Priority: explicit filename_prefix -> stem of output_file -> timestamp.
    """
    if request.filename_prefix:
        return request.filename_prefix
    if request.output_file:
        # PurePath handles both separators regardless of platform
        stem = PurePath(request.output_file.replace("\\", "/")).stem
        if stem:
            return stem
    now = now or datetime.now()
    return f"comfy_{now.strftime('%Y%m%d_%H%M%S')}"


def img2img_denoise(strength: float, architecture: Architecture) -> float:
    """Denoise applied to the source latent for the given architecture."""
    if architecture == Architecture.SDXL:
        return strength
    return min(strength * UNIVERSAL_STRENGTH_FACTOR, MAX_UNIVERSAL_DENOISE)


def _sampler_inputs(request: GenerationRequest, latent: NodeRef, denoise: float) -> dict:
    return {
        "seed": request.seed,
        "steps": request.steps,
        "cfg": request.cfg,
        "sampler_name": request.sampler,
        "scheduler": request.scheduler,
        "denoise": denoise,
        "model": NodeRef("4", 0),
        "positive": NodeRef("6", 0),
        "negative": NodeRef("7", 0),
        "latent_image": latent,
    }


# =============================================================================
# BUILDERS
# =============================================================================


def build_txt2img(request: GenerationRequest, prefix: str) -> WorkflowGraph:
    """Text-to-image topology. Denoise is always 1.0."""
    checkpoint = coerce_checkpoint_name(request.model)
    return WorkflowGraph(
        {
            "4": WorkflowNode("CheckpointLoaderSimple", {"ckpt_name": checkpoint}),
            "6": WorkflowNode("CLIPTextEncode", {"text": request.prompt, "clip": NodeRef("4", 1)}),
            "7": WorkflowNode(
                "CLIPTextEncode", {"text": request.negative_prompt, "clip": NodeRef("4", 1)}
            ),
            "5": WorkflowNode(
                "EmptyLatentImage",
                {
                    "width": request.width,
                    "height": request.height,
                    "batch_size": request.batch_size,
                },
            ),
            "3": WorkflowNode("KSampler", _sampler_inputs(request, NodeRef("5", 0), 1.0)),
            "8": WorkflowNode("VAEDecode", {"samples": NodeRef("3", 0), "vae": NodeRef("4", 2)}),
            "9": WorkflowNode("SaveImage", {"filename_prefix": prefix, "images": NodeRef("8", 0)}),
        }
    )


def build_img2img(
    request: GenerationRequest, prefix: str, architecture: Architecture
) -> WorkflowGraph:
    """Image-to-image topology seeded from the server-side source image."""
    checkpoint = coerce_checkpoint_name(request.model)
    negative = f"{request.negative_prompt}{ANTI_DRIFT_SUFFIX}" if request.negative_prompt else (
        ANTI_DRIFT_SUFFIX.lstrip(", ")
    )
    denoise = img2img_denoise(request.strength, architecture)
    return WorkflowGraph(
        {
            "4": WorkflowNode("CheckpointLoaderSimple", {"ckpt_name": checkpoint}),
            "6": WorkflowNode(
                "CLIPTextEncode",
                {"text": f"{PRESERVE_PREFIX}{request.prompt}", "clip": NodeRef("4", 1)},
            ),
            "7": WorkflowNode("CLIPTextEncode", {"text": negative, "clip": NodeRef("4", 1)}),
            "10": WorkflowNode("LoadImage", {"image": request.source_image}),
            "11": WorkflowNode("VAEEncode", {"pixels": NodeRef("10", 0), "vae": NodeRef("4", 2)}),
            "3": WorkflowNode("KSampler", _sampler_inputs(request, NodeRef("11", 0), denoise)),
            "8": WorkflowNode("VAEDecode", {"samples": NodeRef("3", 0), "vae": NodeRef("4", 2)}),
            "9": WorkflowNode("SaveImage", {"filename_prefix": prefix, "images": NodeRef("8", 0)}),
        }
    )


def build_workflow(
    request: GenerationRequest,
    architecture: Architecture | str = Architecture.UNIVERSAL,
    *,
    now: datetime | None = None,
) -> WorkflowGraph:
    """
    Build the workflow graph for a request.

    The image-to-image topology is used when request.source_image is set,
    text-to-image otherwise.

    Args:
        request: Validated request; seed should already be resolved
        architecture: Model architecture tag
        now: Clock override for timestamp-derived filename prefixes

    Returns:
        Immutable WorkflowGraph
    """
    architecture = Architecture.parse(architecture)
    prefix = resolve_filename_prefix(request, now)

    if request.is_img2img:
        graph = build_img2img(request, prefix, architecture)
    else:
        graph = build_txt2img(request, prefix)

    logger.debug(
        "Built workflow",
        extra={
            "topology": "img2img" if request.is_img2img else "txt2img",
            "architecture": architecture.value,
            "nodes": len(graph),
            "prefix": prefix,
        },
    )
    return graph
