"""
Typed parameter models for each node kind.

Node data arrives as an untyped attribute bag from the editor (camelCase
keys). Executors parse it through these models before doing anything with
side effects, so out-of-range values fail as InvalidParameterError instead of
reaching the Generation Service.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class NodeParams(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


ControlMode = Literal["balanced", "prompt", "controlnet"]
RerenderingType = Literal["reimagine", "reference", "rescene", "reangle", "remix"]
ToolType = Literal["removebg", "upscale", "inpaint", "outpaint"]
SizeRatio = Literal["1:1", "21:9", "16:9", "4:3", "3:2"]
AspectRatio = Literal["1:1", "16:9", "9:16", "4:3", "3:4"]


class TextInputParams(NodeParams):
    prompt: str = ""


class ImageInputParams(NodeParams):
    image_url: str | None = None


class ControlNetParams(NodeParams):
    preprocessor: str = Field(min_length=1)
    strength: float = Field(default=1.0, ge=0.0, le=1.0)
    # Guide weight defaults to strength when unset
    weight: float | None = Field(default=None, ge=0.0, le=2.0)
    start_step: int = Field(default=1, ge=0)
    end_step: int | None = Field(default=None, ge=1)
    control_mode: ControlMode = "balanced"


class RerenderingParams(NodeParams):
    rerendering_type: RerenderingType
    model: Literal["flux-kontext", "flux-kontext-pro"] = "flux-kontext"
    size_ratio: SizeRatio | None = None
    reference_type: str | None = None
    degrees: int = Field(default=15, ge=-360, le=360)
    direction: Literal["left", "right", "up", "down"] = "right"
    creativity: float | None = Field(default=None, ge=0.0, le=1.0)
    prompt: str | None = None


class ToolParams(NodeParams):
    tool_type: ToolType
    upscale_factor: Literal[2, 3, 4] = 2
    mask_image: str | None = None
    inpaint_prompt: str = "fill the masked area naturally"
    outpaint_prompt: str = "extend the image naturally"
    outpaint_direction: Literal["up", "down", "left", "right", "all"] = "all"
    outpaint_amount: int = Field(default=50, ge=1, le=2048)


class GearParams(NodeParams):
    lora_model: str = ""
    weight: float = Field(default=1.0, ge=-4.0, le=4.0)


class EngineParams(NodeParams):
    model: str = "runware:101@1"
    loras: list[str] = Field(default_factory=list)
    width: int = Field(default=1024, ge=128, le=2048, multiple_of=64)
    height: int = Field(default=1024, ge=128, le=2048, multiple_of=64)
    steps: int = Field(default=28, ge=1, le=100)
    cfg_scale: float = Field(default=3.5, ge=0.0, le=50.0)
    strength: float = Field(default=0.8, ge=0.0, le=1.0)


class OutputParams(NodeParams):
    aspect_ratio: AspectRatio = "1:1"
