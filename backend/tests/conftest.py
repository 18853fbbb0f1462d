"""
Shared fixtures: a recording fake Generation Service and graph builders.
"""

import asyncio
import sys
from pathlib import Path
from typing import Any

import pytest

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from flowforge.agents.generation import Adapter, GenerationParams, Guide
from flowforge.services.errors import ServiceError


class FakeGenerationService:
    """
    In-memory Generation Service.

    Every call is appended to `calls` as (method, args) and returns a
    deterministic URL. `delay` slows every call down; `fail_on` maps a
    method name to the message of the ServiceError it should raise.
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.fail_on: dict[str, str] = {}
        self.in_flight = 0
        self.max_in_flight = 0

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def methods(self) -> list[str]:
        return [name for name, _ in self.calls]

    async def _record(self, method: str, **args: Any) -> str:
        self.calls.append((method, args))
        index = len(self.calls)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if method in self.fail_on:
                raise ServiceError(self.fail_on[method], status_code=500)
        finally:
            self.in_flight -= 1
        return f"https://img.test/{method}/{index}.png"

    async def preprocess(self, image: str, preprocessor_id: str, strength: float) -> str:
        return await self._record("preprocess", image=image, preprocessor_id=preprocessor_id, strength=strength)

    async def transform(self, sub_type: str, images: list[str], params: dict[str, Any]) -> str:
        return await self._record("transform", sub_type=sub_type, images=list(images), params=dict(params))

    async def generate(
        self,
        prompt: str,
        guides: list[Guide],
        adapters: list[Adapter],
        params: GenerationParams,
    ) -> str:
        return await self._record("generate", prompt=prompt, guides=list(guides), adapters=list(adapters), params=params)


def node(node_id: str, kind: str, **data: Any) -> dict[str, Any]:
    """Editor-style node dict."""
    return {"id": node_id, "type": kind, "position": {"x": 0, "y": 0}, "data": data}


def edge(source: str, target: str, target_handle: str | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"id": f"{source}->{target}", "source": source, "target": target}
    if target_handle is not None:
        payload["targetHandle"] = target_handle
    return payload


@pytest.fixture
def fake_service() -> FakeGenerationService:
    return FakeGenerationService()
