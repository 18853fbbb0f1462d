"""
Configuration for the Generation Service adapter

"""

import os
from typing import Any, Dict

from dotenv import load_dotenv

load_dotenv()


class GenerationConfig:
    """Configuration for RunwareGenerationService"""

    # Endpoint settings
    DEFAULT_API_URL = "https://api.runware.ai/v1"
    DEFAULT_TIMEOUT_SECONDS = 120.0

    # Model identifiers
    FLUX_KONTEXT_MODEL = "runware:106@1"
    FLUX_KONTEXT_PRO_MODEL = "bfl:3@1"
    CONTROLNET_MODEL = "runware:29@1"
    IP_ADAPTER_MODEL = "runware:105@1"
    BACKGROUND_REMOVAL_MODEL = "runware:110@1"
    INPAINT_MODEL = "runware:100@1"
    OUTPAINT_MODEL = "runware:102@1"

    # Flux Kontext defaults
    KONTEXT_STEPS = 28
    KONTEXT_CFG_SCALE = 2.5
    KONTEXT_GUIDANCE_END_PERCENT = 75
    OUTPUT_QUALITY = 85

    # Kontext Pro size ratios -> dimensions
    SIZE_RATIOS: Dict[str, Dict[str, int]] = {
        "1:1": {"width": 1024, "height": 1024},
        "21:9": {"width": 1568, "height": 672},
        "16:9": {"width": 1344, "height": 768},
        "4:3": {"width": 1152, "height": 896},
        "3:2": {"width": 1216, "height": 832},
    }

    # Sub-type prompts for rerendering
    RESCENE_PROMPT = "Blend this object into this scene while maintaining all details and realistic lighting"
    REMIX_PROMPT = "Creatively blend and remix these images into a cohesive composition"
    REIMAGINE_PROMPT = "reimagine this image"

    @classmethod
    def get_default_config(cls) -> Dict[str, Any]:
        return {
            "api_url": os.getenv("RUNWARE_API_URL") or cls.DEFAULT_API_URL,
            "api_key": os.getenv("RUNWARE_API_KEY"),
            "timeout": _float_env("RUNWARE_TIMEOUT_SECONDS", cls.DEFAULT_TIMEOUT_SECONDS),
        }


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        parsed = float(raw)
    except ValueError:
        return default
    return parsed if parsed > 0 else default
