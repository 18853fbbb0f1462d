"""
Node executors: one async strategy per node kind.

Each executor receives the node, its resolved inputs (role -> upstream
results, already checked against the node's input roles) and the Generation
Service. Parameters are parsed before any service call so bad values fail as
InvalidParameterError without side effects. Executors never touch the result
cache; the engine stores whatever they return.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, TypeVar

from pydantic import ValidationError

from flowforge.agents.generation import Adapter, GenerationParams, GenerationService, Guide
from flowforge.models.graph import Node, NodeKind, NodeResult
from flowforge.models.node_params import (
    ControlNetParams,
    EngineParams,
    GearParams,
    ImageInputParams,
    NodeParams,
    OutputParams,
    RerenderingParams,
    TextInputParams,
    ToolParams,
)
from flowforge.services.errors import InvalidParameterError, MissingInputError

logger = logging.getLogger(__name__)

ResolvedInputs = dict[str, list[NodeResult]]
ExecutorFn = Callable[[Node, ResolvedInputs, GenerationService], Awaitable[NodeResult]]
P = TypeVar("P", bound=NodeParams)

# ---------------------------------------------------------------------------
# Executor registry
# ---------------------------------------------------------------------------

# Maps node kinds to their async executor functions.
_registry: dict[NodeKind, ExecutorFn] = {}


def executor(kind: NodeKind):
    """
    Decorator that registers an async executor function for a node kind.

    Usage:
        @executor(NodeKind.TOOL)
        async def _exec_tool(node: Node, inputs: ResolvedInputs, service: GenerationService) -> NodeResult:
            ...
    """
    def decorator(fn: ExecutorFn) -> ExecutorFn:
        _registry[kind] = fn
        return fn
    return decorator


def get_executor(kind: NodeKind) -> ExecutorFn:
    return _registry[kind]


def missing_executors() -> list[NodeKind]:
    """Node kinds without a registered executor (should always be empty)."""
    return [kind for kind in NodeKind if kind not in _registry]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_params(model: type[P], node: Node) -> P:
    """Validate a node's data bag against its parameter model."""
    try:
        return model.model_validate(node.data)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or None
        raise InvalidParameterError(
            f"Invalid parameter '{field}': {first['msg']}",
            node_id=node.id,
            field=field,
        ) from e


def merge_text(results: list[NodeResult]) -> str:
    """Blank-line join of non-empty text results, in edge order."""
    parts = [r.text.strip() for r in results if r.text and r.text.strip()]
    return "\n\n".join(parts)


def _urls(results: list[NodeResult]) -> list[str]:
    return [r.url for r in results if r.url]


# Display size of the output node per aspect ratio
OUTPUT_DIMENSIONS: dict[str, tuple[int, int]] = {
    "1:1": (320, 320),
    "16:9": (480, 270),
    "9:16": (270, 480),
    "4:3": (400, 300),
    "3:4": (300, 400),
}


# ---------------------------------------------------------------------------
# Source nodes
# ---------------------------------------------------------------------------


@executor(NodeKind.TEXT_INPUT)
async def _exec_text_input(node: Node, inputs: ResolvedInputs, service: GenerationService) -> NodeResult:
    params = parse_params(TextInputParams, node)
    return NodeResult.text_value(node.id, params.prompt)


@executor(NodeKind.IMAGE_INPUT)
async def _exec_image_input(node: Node, inputs: ResolvedInputs, service: GenerationService) -> NodeResult:
    params = parse_params(ImageInputParams, node)
    if not params.image_url or not params.image_url.strip():
        raise MissingInputError("No image attached", node_id=node.id, role="image")
    return NodeResult.image(node.id, params.image_url.strip())


@executor(NodeKind.GEAR)
async def _exec_gear(node: Node, inputs: ResolvedInputs, service: GenerationService) -> NodeResult:
    """Configuration contribution for an engine; never calls the service."""
    params = parse_params(GearParams, node)
    if not params.lora_model.strip():
        raise InvalidParameterError("No LoRA model selected", node_id=node.id, field="loraModel")
    return NodeResult.adapter(node.id, params.lora_model.strip(), params.weight)


# ---------------------------------------------------------------------------
# Image operators
# ---------------------------------------------------------------------------


@executor(NodeKind.CONTROL_NET)
async def _exec_control_net(node: Node, inputs: ResolvedInputs, service: GenerationService) -> NodeResult:
    """
    Preprocess the upstream image into a ControlNet guide.

    The guide settings travel in the result metadata so the engine node can
    build its guide list without looking back at this node.
    """
    params = parse_params(ControlNetParams, node)
    if params.end_step is not None and params.end_step <= params.start_step:
        raise InvalidParameterError(
            f"endStep ({params.end_step}) must be greater than startStep ({params.start_step})",
            node_id=node.id,
            field="endStep",
        )

    source = inputs["image"][0]
    url = await service.preprocess(source.url, params.preprocessor, params.strength)
    return NodeResult.image(
        node.id,
        url,
        preprocessor=params.preprocessor,
        weight=params.weight if params.weight is not None else params.strength,
        start_step=params.start_step,
        end_step=params.end_step,
        control_mode=params.control_mode,
    )


@executor(NodeKind.RERENDERING)
async def _exec_rerendering(node: Node, inputs: ResolvedInputs, service: GenerationService) -> NodeResult:
    params = parse_params(RerenderingParams, node)
    if params.rerendering_type == "reference" and not (params.reference_type or "").strip():
        raise InvalidParameterError(
            "Reference rerendering requires a referenceType",
            node_id=node.id,
            field="referenceType",
        )

    images = _urls(inputs.get("image", []))
    prompt = merge_text(inputs.get("prompt", [])) or (params.prompt or "")

    url = await service.transform(
        params.rerendering_type,
        images,
        {
            "prompt": prompt,
            "model": params.model,
            "size_ratio": params.size_ratio,
            "reference_type": params.reference_type,
            "degrees": params.degrees,
            "direction": params.direction,
            "creativity": params.creativity,
        },
    )
    return NodeResult.image(node.id, url, rerendering_type=params.rerendering_type)


@executor(NodeKind.TOOL)
async def _exec_tool(node: Node, inputs: ResolvedInputs, service: GenerationService) -> NodeResult:
    params = parse_params(ToolParams, node)
    image = inputs["image"][0].url

    tool_params: dict = {}
    if params.tool_type == "upscale":
        tool_params = {"upscale_factor": params.upscale_factor}
    elif params.tool_type == "inpaint":
        mask_urls = _urls(inputs.get("mask", []))
        mask = mask_urls[0] if mask_urls else params.mask_image
        if not mask:
            raise MissingInputError("Inpaint requires a mask image", node_id=node.id, role="mask")
        tool_params = {"mask_image": mask, "prompt": params.inpaint_prompt}
    elif params.tool_type == "outpaint":
        tool_params = {
            "prompt": params.outpaint_prompt,
            "direction": params.outpaint_direction,
            "amount": params.outpaint_amount,
        }

    url = await service.transform(params.tool_type, [image], tool_params)
    return NodeResult.image(node.id, url, tool_type=params.tool_type)


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


@executor(NodeKind.ENGINE)
async def _exec_engine(node: Node, inputs: ResolvedInputs, service: GenerationService) -> NodeResult:
    """
    Terminal generative step.

    Aggregates the prompt from connected text inputs, ControlNet guides, gear
    adapters (plus any LoRAs listed on the node itself), rerendered reference
    images and an optional seed image, then makes one generate call.
    """
    params = parse_params(EngineParams, node)

    prompt = merge_text(inputs.get("prompt", []))
    if not prompt:
        raise MissingInputError("Engine requires a non-empty text prompt", node_id=node.id, role="prompt")

    guides: list[Guide] = []
    for result in inputs.get("guide", []):
        meta = result.metadata
        start_step = meta.get("start_step", 1)
        end_step = meta.get("end_step") or max(1, params.steps - 1)
        if end_step > params.steps:
            raise InvalidParameterError(
                f"Guide from {result.node_id} ends at step {end_step} but engine runs {params.steps} steps",
                node_id=node.id,
                field="steps",
            )
        if start_step >= end_step:
            raise InvalidParameterError(
                f"Guide from {result.node_id} starts at step {start_step} but ends at step {end_step}",
                node_id=node.id,
                field="steps",
            )
        guides.append(Guide(
            image=result.url,
            weight=meta.get("weight", 1.0),
            start_step=start_step,
            end_step=end_step,
            control_mode=meta.get("control_mode", "balanced"),
        ))

    adapters = [Adapter(model_id=r.model_id, weight=r.weight) for r in inputs.get("adapter", [])]
    connected = {a.model_id for a in adapters}
    adapters.extend(Adapter(model_id=lora) for lora in params.loras if lora and lora not in connected)

    seed_image = _pick_seed(node, inputs.get("seed", []))

    generation_params = GenerationParams(
        model=params.model,
        width=params.width,
        height=params.height,
        steps=params.steps,
        cfg_scale=params.cfg_scale,
        seed_image=seed_image,
        strength=params.strength if seed_image else None,
        reference_images=_urls(inputs.get("reference", [])),
    )

    url = await service.generate(prompt, guides, adapters, generation_params)
    return NodeResult.image(node.id, url, model=params.model, width=params.width, height=params.height)


def _pick_seed(node: Node, seeds: list[NodeResult]) -> str | None:
    """Image inputs win over processed images; first connection wins within each."""
    if not seeds:
        return None
    if len(seeds) > 1:
        logger.warning(
            "Engine %s received %d seed images. Using one.", node.id, len(seeds)
        )
    preferred = [r for r in seeds if r.kind == NodeKind.IMAGE_INPUT] or seeds
    return preferred[0].url


# ---------------------------------------------------------------------------
# Presentation
# ---------------------------------------------------------------------------


@executor(NodeKind.OUTPUT)
async def _exec_output(node: Node, inputs: ResolvedInputs, service: GenerationService) -> NodeResult:
    """Pass the upstream image through, annotated for display."""
    params = parse_params(OutputParams, node)
    source = inputs["image"][0]
    width, height = OUTPUT_DIMENSIONS[params.aspect_ratio]
    return NodeResult.image(
        node.id,
        source.url,
        source_node_id=source.node_id,
        aspect_ratio=params.aspect_ratio,
        display_width=width,
        display_height=height,
    )
