"""
Generation Service Module

Image preprocessing, image-to-image transforms and text-to-image generation
behind a single protocol, with a Runware-backed implementation.
"""

from .generation_types import Adapter, GenerationParams, Guide
from .service import GenerationService
from .runware import RunwareGenerationService
from .config import GenerationConfig

__all__ = [
    'Adapter',
    'GenerationParams',
    'Guide',
    'GenerationService',
    'RunwareGenerationService',
    'GenerationConfig',
]
