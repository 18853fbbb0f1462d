"""
Per-engine result cache with single-flight semantics.

Entries are asyncio futures keyed by node id. The first caller to claim a
node owns its execution; everyone else awaits the same future. Claims never
await between the lookup and the insert, so they are race-free on a single
event loop.

clear() starts a new generation. Work still in flight from an older
generation may finish, but its put() is discarded.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

from flowforge.models.graph import NodeResult
from flowforge.services.errors import WorkflowError

logger = logging.getLogger(__name__)


class NodeOutcome(BaseModel):
    """Terminal state of one node within a run."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    node_id: str
    status: Literal["succeeded", "failed"]
    result: NodeResult | None = None
    error: WorkflowError | None = None
    execution_time_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


class ResultCache:
    def __init__(self) -> None:
        self._entries: dict[str, asyncio.Future[NodeOutcome]] = {}
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._entries

    def get(self, node_id: str) -> NodeOutcome | None:
        """Completed outcome for a node, or None if absent or still in flight."""
        future = self._entries.get(node_id)
        if future is None or not future.done() or future.cancelled():
            return None
        return future.result()

    def claim(self, node_id: str) -> tuple[asyncio.Future[NodeOutcome], bool]:
        """
        Return the future for a node and whether the caller owns it.

        The owner must eventually call put() (or release() if it gives up).
        """
        future = self._entries.get(node_id)
        if future is not None and not future.cancelled():
            return future, False
        future = asyncio.get_running_loop().create_future()
        self._entries[node_id] = future
        return future, True

    def put(self, node_id: str, outcome: NodeOutcome, generation: int | None = None) -> bool:
        """
        Store an outcome, resolving any waiters.

        Returns False when the write was stamped with a superseded generation
        and has been dropped.
        """
        if generation is not None and generation != self._generation:
            logger.debug(
                "Dropping result for %s from superseded cache generation %d (current %d)",
                node_id, generation, self._generation,
            )
            return False

        future = self._entries.get(node_id)
        if future is None or future.done():
            future = asyncio.get_running_loop().create_future()
            self._entries[node_id] = future
        future.set_result(outcome)
        return True

    def release(self, node_id: str, future: asyncio.Future[Any]) -> None:
        """Drop an unfinished claim, e.g. when its owner was cancelled."""
        if self._entries.get(node_id) is future:
            del self._entries[node_id]
        if not future.done():
            future.cancel()

    def evict_failures(self) -> list[str]:
        """Remove failed outcomes so the next run re-attempts those nodes."""
        failed = [
            node_id
            for node_id, future in self._entries.items()
            if future.done() and (future.cancelled() or not future.result().succeeded)
        ]
        for node_id in failed:
            del self._entries[node_id]
        return failed

    def clear(self) -> int:
        """Drop every entry and start a new generation."""
        dropped = len(self._entries)
        self._entries = {}
        self._generation += 1
        logger.info("Result cache cleared (%d entries, generation %d)", dropped, self._generation)
        return self._generation
