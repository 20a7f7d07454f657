"""
Batch Expander - runs batch-image nodes.

Independent mode fans out: one generation call per item, all concurrent,
each item settling on its own. Merged mode fans in: every item source plus
the upstream inputs go into a single call whose image is appended as a new
item.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from flowcanvas.errors import GenerationError
from flowcanvas.graph.models import BatchItem, BatchMode, Node, NodeStatus
from flowcanvas.graph.store import GraphStore
from flowcanvas.runner.port import (
    Credentials,
    GenerationOptions,
    Input,
    NodeRunnerPort,
    PayloadKind,
)
from flowcanvas.runtime.event_bus import EventBus

logger = logging.getLogger(__name__)

# (node, instruction, inputs, image) -> None
ImageCallback = Callable[[Node, str, list[Input], str], Awaitable[None]]


@dataclass
class BatchOutcome:
    """Per-item results of one batch execution."""

    calls: int = 0
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    appended: BatchItem | None = None


class BatchExpander:
    """
    Expands a batch-image node into generation calls.

    ``node`` is the scheduler's execution copy: item results are written
    into it (so downstream consumers read them) and mirrored to the live
    store and the event bus.
    """

    def __init__(
        self,
        runner: NodeRunnerPort,
        store: GraphStore,
        event_bus: EventBus | None = None,
        credentials: Credentials | None = None,
    ):
        self.runner = runner
        self.store = store
        self.event_bus = event_bus
        self.credentials = credentials

    async def run(
        self,
        node: Node,
        instruction: str,
        inputs: list[Input],
        on_image: ImageCallback,
        run_id: str | None = None,
    ) -> BatchOutcome:
        if node.batch_mode == BatchMode.MERGED:
            return await self.run_merged(node, instruction, inputs, on_image, run_id)
        return await self.run_independent(node, instruction, inputs, on_image, run_id)

    async def run_merged(
        self,
        node: Node,
        instruction: str,
        inputs: list[Input],
        on_image: ImageCallback,
        run_id: str | None = None,
    ) -> BatchOutcome:
        """
        Fold every item source and upstream input into one call.

        Raises whatever the runner raises; the node as a whole fails.
        """
        merged_inputs = [
            *inputs,
            *(Input(PayloadKind.IMAGE, item.source) for item in node.batch_items if item.source),
        ]
        logger.info(
            f"Batch {node.id}: merging {len(node.batch_items)} item(s) "
            f"and {len(inputs)} input(s) into one call"
        )
        result = await self.runner.run(
            instruction,
            node.kind,
            merged_inputs,
            model=node.model,
            credentials=self.credentials,
            options=node_options(node),
        )
        if result.kind != PayloadKind.IMAGE:
            raise GenerationError("Merged batch generation returned text instead of an image.")

        item = BatchItem(result=result.content, status=NodeStatus.SUCCESS)
        node.batch_items = [*node.batch_items, item]
        self.store.append_batch_item(node.id, item)
        await self._emit_item(run_id, node.id, item)
        await on_image(node, instruction, merged_inputs, result.content)

        return BatchOutcome(calls=1, succeeded=[item.id], appended=item)

    async def run_independent(
        self,
        node: Node,
        instruction: str,
        inputs: list[Input],
        on_image: ImageCallback,
        run_id: str | None = None,
        item_ids: list[str] | None = None,
    ) -> BatchOutcome:
        """Run one call per item concurrently; item failures stay on the item."""
        items = [i for i in node.batch_items if item_ids is None or i.id in item_ids]
        outcome = BatchOutcome(calls=len(items))
        logger.info(f"Batch {node.id}: fanning out {len(items)} item call(s)")

        await asyncio.gather(
            *(
                self._run_item(node, item, instruction, inputs, on_image, run_id, outcome)
                for item in items
            )
        )

        logger.info(
            f"Batch {node.id}: {len(outcome.succeeded)}/{len(items)} item(s) succeeded"
        )
        return outcome

    async def _run_item(
        self,
        node: Node,
        item: BatchItem,
        instruction: str,
        inputs: list[Input],
        on_image: ImageCallback,
        run_id: str | None,
        outcome: BatchOutcome,
    ) -> None:
        await self._set_item(run_id, node, item, status=NodeStatus.RUNNING, result=None)
        item_inputs = [*inputs, Input(PayloadKind.IMAGE, item.source)]

        try:
            result = await self.runner.run(
                instruction,
                node.kind,
                item_inputs,
                model=node.model,
                credentials=self.credentials,
                options=node_options(node),
            )
            if result.kind != PayloadKind.IMAGE:
                raise GenerationError("Batch item generation returned text instead of an image.")
        except Exception as e:
            logger.warning(f"Batch {node.id}: item {item.id} failed: {e}")
            outcome.failed[item.id] = str(e)
            await self._set_item(run_id, node, item, status=NodeStatus.ERROR)
            return

        outcome.succeeded.append(item.id)
        await self._set_item(run_id, node, item, status=NodeStatus.SUCCESS, result=result.content)
        await on_image(node, instruction, item_inputs, result.content)

    async def _set_item(
        self,
        run_id: str | None,
        node: Node,
        item: BatchItem,
        **changes,
    ) -> None:
        for key, value in changes.items():
            setattr(item, key, value)
        self.store.update_batch_item(node.id, item.id, **changes)
        await self._emit_item(run_id, node.id, item)

    async def _emit_item(self, run_id: str | None, node_id: str, item: BatchItem) -> None:
        if self.event_bus:
            await self.event_bus.emit_batch_item_updated(
                run_id=run_id,
                node_id=node_id,
                item_id=item.id,
                status=item.status.value,
                result=item.result,
            )


def node_options(node: Node) -> GenerationOptions:
    """Generation options carried by a node's settings."""
    return GenerationOptions(
        aspect_ratio=node.settings.aspect_ratio,
        resolution=node.settings.resolution,
        google_search=node.settings.google_search,
    )
