"""
Generation Service backed by the Runware REST API.

Each call posts a single-task JSON array to the API and returns the image URL
of the matching result. Transport failures, HTTP errors and `errors` payloads
all surface as ServiceError so the engine can attribute them to a node.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import httpx

from flowforge.services.errors import ServiceError

from .config import GenerationConfig
from .generation_types import Adapter, GenerationParams, Guide

logger = logging.getLogger(__name__)

RERENDERING_TYPES = {"reimagine", "reference", "rescene", "reangle", "remix"}
TOOL_TYPES = {"removebg", "upscale", "inpaint", "outpaint"}


class RunwareGenerationService:
    def __init__(
        self,
        api_key: str | None = None,
        api_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        defaults = GenerationConfig.get_default_config()
        self.api_key = api_key or defaults["api_key"]
        self.api_url = api_url or defaults["api_url"]
        self.timeout = timeout or defaults["timeout"]
        self._client = client

        if not self.api_key:
            raise ValueError("RUNWARE_API_KEY environment variable is required")

    # -----------------------------------------------------------------------
    # GenerationService protocol
    # -----------------------------------------------------------------------

    async def preprocess(self, image: str, preprocessor_id: str, strength: float) -> str:
        # Runware preprocessors take no strength; it is applied as the guide weight downstream
        data = await self._run_task({
            "taskType": "imageControlNetPreProcess",
            "inputImage": image,
            "preProcessorType": preprocessor_id,
            "outputType": ["URL"],
            "outputFormat": "PNG",
        })
        return _image_url(data, "guideImageURL")

    async def transform(self, sub_type: str, images: list[str], params: dict[str, Any]) -> str:
        if sub_type in RERENDERING_TYPES:
            task = build_kontext_task(sub_type, images, params)
        elif sub_type in TOOL_TYPES:
            task = build_tool_task(sub_type, images[0], params)
        else:
            raise ServiceError(f"Unsupported transform type '{sub_type}'")
        data = await self._run_task(task)
        return _image_url(data)

    async def generate(
        self,
        prompt: str,
        guides: list[Guide],
        adapters: list[Adapter],
        params: GenerationParams,
    ) -> str:
        data = await self._run_task(build_inference_task(prompt, guides, adapters, params))
        return _image_url(data)

    # -----------------------------------------------------------------------
    # Transport
    # -----------------------------------------------------------------------

    async def _run_task(self, task: dict[str, Any]) -> dict[str, Any]:
        task_uuid = str(uuid.uuid4())
        message = [{"taskUUID": task_uuid, **task}]
        headers = {"Authorization": f"Bearer {self.api_key}"}

        logger.debug("Sending %s task %s", task["taskType"], task_uuid)
        try:
            if self._client is not None:
                response = await self._client.post(self.api_url, json=message, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.api_url, json=message, headers=headers)
        except httpx.HTTPError as e:
            raise ServiceError(f"Generation service unreachable: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        errors = payload.get("errors") if isinstance(payload, dict) else None
        if response.status_code >= 400 or errors:
            message_text = _error_message(errors) or f"HTTP {response.status_code}"
            raise ServiceError(
                f"{task['taskType']} failed: {message_text}",
                status_code=response.status_code,
                details=errors,
            )

        for item in payload.get("data", []):
            if item.get("taskUUID") == task_uuid:
                return item
        raise ServiceError(
            f"{task['taskType']} returned no result for task {task_uuid}",
            status_code=response.status_code,
        )


# ---------------------------------------------------------------------------
# Task builders
# ---------------------------------------------------------------------------


def build_kontext_task(sub_type: str, images: list[str], params: dict[str, Any]) -> dict[str, Any]:
    """Flux Kontext image-to-image task for a rerendering sub-type."""
    prompt = params.get("prompt") or ""
    if sub_type == "reimagine":
        prompt = prompt or GenerationConfig.REIMAGINE_PROMPT
    elif sub_type == "reference":
        prompt = f"Apply {params.get('reference_type') or 'style'} reference: {prompt}"
    elif sub_type == "rescene":
        prompt = GenerationConfig.RESCENE_PROMPT
    elif sub_type == "reangle":
        prompt = (
            f"Change camera angle of this image by {params.get('degrees', 15)} degrees "
            f"to {params.get('direction', 'right')} direction"
        )
    elif sub_type == "remix":
        prompt = GenerationConfig.REMIX_PROMPT

    task: dict[str, Any] = {
        "taskType": "imageInference",
        "numberResults": 1,
        "outputFormat": "JPEG",
        "includeCost": True,
        "outputType": ["URL"],
        "positivePrompt": prompt,
        "referenceImages": list(images),
        "outputQuality": GenerationConfig.OUTPUT_QUALITY,
        "advancedFeatures": {
            "guidanceEndStepPercentage": GenerationConfig.KONTEXT_GUIDANCE_END_PERCENT,
        },
    }

    if params.get("model") == "flux-kontext-pro":
        size = GenerationConfig.SIZE_RATIOS.get(params.get("size_ratio") or "1:1", GenerationConfig.SIZE_RATIOS["1:1"])
        task.update(model=GenerationConfig.FLUX_KONTEXT_PRO_MODEL, **size)
    else:
        task.update(
            model=GenerationConfig.FLUX_KONTEXT_MODEL,
            steps=GenerationConfig.KONTEXT_STEPS,
            CFGScale=GenerationConfig.KONTEXT_CFG_SCALE,
            scheduler="Default",
        )

    loras = [lora for lora in params.get("lora", []) if lora.get("model", "").strip()]
    if loras:
        task["lora"] = loras
    return task


def build_tool_task(tool_type: str, image: str, params: dict[str, Any]) -> dict[str, Any]:
    if tool_type == "removebg":
        return {
            "taskType": "imageBackgroundRemoval",
            "model": GenerationConfig.BACKGROUND_REMOVAL_MODEL,
            "inputImage": image,
            "outputFormat": "PNG",
            "outputType": ["URL"],
        }
    if tool_type == "upscale":
        return {
            "taskType": "imageUpscale",
            "inputImage": image,
            "upscaleFactor": params.get("upscale_factor", 2),
            "outputFormat": "JPG",
            "outputType": ["URL"],
        }
    if tool_type == "inpaint":
        return {
            "taskType": "imageInference",
            "model": GenerationConfig.INPAINT_MODEL,
            "outputFormat": "JPEG",
            "width": 1024,
            "height": 1024,
            "steps": 28,
            "CFGScale": 3.5,
            "includeCost": True,
            "outputType": ["URL"],
            "positivePrompt": params.get("prompt"),
            "seedImage": image,
            "maskImage": params.get("mask_image"),
        }
    # outpaint
    direction = params.get("direction", "all")
    amount = params.get("amount", 50)
    sides = ("top", "bottom", "left", "right")
    if direction == "all":
        extents = {side: amount for side in sides}
    else:
        side = {"up": "top", "down": "bottom"}.get(direction, direction)
        extents = {s: (amount if s == side else 0) for s in sides}
    return {
        "taskType": "imageInference",
        "model": GenerationConfig.OUTPAINT_MODEL,
        "outputFormat": "JPEG",
        "steps": 40,
        "CFGScale": 3.5,
        "includeCost": True,
        "outputType": ["URL"],
        "positivePrompt": params.get("prompt") or "__BLANK__",
        "seedImage": image,
        "strength": 0.9,
        "outpaint": extents,
    }


def build_inference_task(
    prompt: str,
    guides: list[Guide],
    adapters: list[Adapter],
    params: GenerationParams,
) -> dict[str, Any]:
    task: dict[str, Any] = {
        "taskType": "imageInference",
        "model": params.model,
        "width": params.width,
        "height": params.height,
        "numberResults": 1,
        "outputFormat": "WEBP",
        "includeCost": True,
        "outputType": ["URL"],
        "positivePrompt": prompt,
        "steps": params.steps,
        "CFGScale": params.cfg_scale,
    }
    if guides:
        task["controlNet"] = [
            {
                "model": GenerationConfig.CONTROLNET_MODEL,
                "guideImage": guide.image,
                "weight": guide.weight,
                "startStep": guide.start_step,
                "endStep": guide.end_step or max(1, params.steps - 1),
                "controlMode": guide.control_mode,
            }
            for guide in guides
        ]
    if adapters:
        task["lora"] = [{"model": a.model_id, "weight": a.weight} for a in adapters]
    if params.reference_images:
        task["ipAdapters"] = [
            {"model": GenerationConfig.IP_ADAPTER_MODEL, "guideImage": image, "weight": 1.0}
            for image in params.reference_images
        ]
    if params.seed_image:
        task["seedImage"] = params.seed_image
        task["strength"] = params.strength if params.strength is not None else 0.8
    return task


def _image_url(data: dict[str, Any], key: str = "imageURL") -> str:
    url = data.get(key) or data.get("imageURL")
    if not url:
        raise ServiceError(f"Result for task {data.get('taskUUID')} has no image URL", details=data)
    return url


def _error_message(errors: Any) -> str | None:
    if isinstance(errors, list) and errors:
        first = errors[0]
        if isinstance(first, dict):
            return first.get("message") or first.get("code")
        return str(first)
    return None
