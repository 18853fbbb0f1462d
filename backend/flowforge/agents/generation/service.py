"""
Generation Service contract.

The workflow core only ever talks to this protocol; the Runware adapter in
runware.py is the production implementation and tests plug in a recording fake.
All methods return the URL of the produced image and raise ServiceError on failure.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from .generation_types import Adapter, GenerationParams, Guide


@runtime_checkable
class GenerationService(Protocol):
    async def preprocess(self, image: str, preprocessor_id: str, strength: float) -> str:
        """Run a ControlNet preprocessor over an image."""
        ...

    async def transform(self, sub_type: str, images: list[str], params: dict[str, Any]) -> str:
        """Image-to-image operation: rerendering sub-types and tools."""
        ...

    async def generate(
        self,
        prompt: str,
        guides: list[Guide],
        adapters: list[Adapter],
        params: GenerationParams,
    ) -> str:
        """Text-to-image generation with optional guides and adapters."""
        ...
