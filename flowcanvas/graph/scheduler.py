"""
Execution Scheduler - runs a group (or a single node) of the graph.

The scheduler:
1. Snapshots the whole store into per-run execution data
2. Cleans stale outputs so generated nodes regenerate
3. Builds in-degrees from the connections inside the group
4. Starts every in-degree-zero member concurrently
5. Starts each child the moment its last in-group producer succeeds

A failed node never releases its children; they simply stay idle for the
run. The run is complete when the count of in-flight node tasks drops to
zero. Cycles are not detected: nodes on a cycle never reach in-degree zero.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import StrEnum

from flowcanvas.config import RuntimeConfig
from flowcanvas.graph.batch import BatchExpander, node_options
from flowcanvas.graph.models import (
    GENERATED_IMAGE_LABEL,
    Actor,
    BatchMode,
    Group,
    Node,
    NodeKind,
    NodeStatus,
)
from flowcanvas.graph.provenance import ProvenanceLog, ProvenanceRecord
from flowcanvas.graph.store import GraphSnapshot, GraphStore
from flowcanvas.observability import reset_trace_context, set_trace_context
from flowcanvas.runner.port import Credentials, Input, NodeRunnerPort, PayloadKind, RunResult
from flowcanvas.runtime.event_bus import EventBus

logger = logging.getLogger(__name__)

_STALE_STATUSES = (NodeStatus.SUCCESS, NodeStatus.RUNNING, NodeStatus.ERROR)


class RootOutputPolicy(StrEnum):
    """What a re-run does with a root node's previous output."""

    REUSE = "reuse"  # previous output image becomes this run's input image
    CLEAR = "clear"  # root image nodes with an instruction drop their previous output


@dataclass
class RunReport:
    """Result of one group or single-node run."""

    run_id: str
    target: str
    node_ids: list[str]
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)  # {node_id: error message}
    not_started: list[str] = field(default_factory=list)
    calls: int = 0
    records: list[ProvenanceRecord] = field(default_factory=list)
    batch_failures: dict[str, dict[str, str]] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        """True when every target node ran and none failed."""
        return not self.failed and not self.not_started

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "target": self.target,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "not_started": self.not_started,
            "calls": self.calls,
            "records": len(self.records),
            "batch_failures": self.batch_failures,
        }


@dataclass
class _RunState:
    """Mutable bookkeeping for one run; never shared between runs."""

    run_id: str
    snapshot: GraphSnapshot
    execution_data: dict[str, Node]
    report: RunReport
    adjacency: dict[str, list[str]] = field(default_factory=dict)
    in_degree: dict[str, int] = field(default_factory=dict)
    static_roots: bool = True
    instruction_overrides: dict[str, str] = field(default_factory=dict)
    started: set[str] = field(default_factory=set)
    in_flight: int = 0
    done: asyncio.Event = field(default_factory=asyncio.Event)
    tasks: set[asyncio.Task] = field(default_factory=set)


def sort_by_position(nodes: list[Node]) -> list[Node]:
    """Reading order: top to bottom, then left to right."""
    return sorted(nodes, key=lambda n: (n.position.y, n.position.x))


def producer_inputs(node: Node) -> list[Input]:
    """The payload(s) a producer hands to its consumers."""
    if node.kind == NodeKind.TEXT:
        return [Input(PayloadKind.TEXT, node.content)]
    if node.kind == NodeKind.BATCH_IMAGE and node.batch_mode == BatchMode.INDEPENDENT:
        results = [
            Input(PayloadKind.IMAGE, item.result)
            for item in node.batch_items
            if item.status == NodeStatus.SUCCESS and item.result
        ]
        if results:
            return results
    return [Input(PayloadKind.IMAGE, node.output_image or node.input_image)]


class ExecutionScheduler:
    """
    Drives NodeRunnerPort calls over a GraphStore.

    Example:
        scheduler = ExecutionScheduler(
            store=store,
            runner=HttpNodeRunner(api_base=config.api_base),
            actor=Actor(id="user-1"),
            credentials=Credentials(access_token=config.access_token),
            event_bus=bus,
        )
        report = await scheduler.run_group(group.id)
    """

    def __init__(
        self,
        store: GraphStore,
        runner: NodeRunnerPort,
        actor: Actor,
        credentials: Credentials | None = None,
        event_bus: EventBus | None = None,
        provenance: ProvenanceLog | None = None,
        config: RuntimeConfig | None = None,
        ui_delay_seconds: float | None = None,
        root_output_policy: RootOutputPolicy | str | None = None,
    ):
        """
        Initialize the scheduler.

        Args:
            store: The live graph; results are written back into it
            runner: Generation service adapter
            actor: User on whose behalf runs happen (provenance, redaction)
            credentials: Passed through to every runner call
            event_bus: Optional bus for live status/content updates
            provenance: Log receiving a record per generated image
            config: Runtime configuration (delay and root-output policy defaults)
            ui_delay_seconds: Pause before each call so highlights are visible
            root_output_policy: Override for RuntimeConfig.root_output_policy
        """
        config = config or RuntimeConfig()
        self.store = store
        self.runner = runner
        self.actor = actor
        self.credentials = credentials
        self.event_bus = event_bus
        self.provenance = provenance if provenance is not None else ProvenanceLog()
        self.ui_delay_seconds = (
            ui_delay_seconds if ui_delay_seconds is not None else config.ui_delay_seconds
        )
        self.root_output_policy = RootOutputPolicy(
            root_output_policy or config.root_output_policy
        )
        self.batch = BatchExpander(runner, store, event_bus, credentials)
        self.active_connection_ids: set[str] = set()

    # === ENTRY POINTS ===

    async def run_group(self, group_id: str) -> RunReport | None:
        """Run every member of a group in topological order with maximal fan-out."""
        group = self.store.get_group(group_id)
        if group is None:
            logger.warning(f"run_group: unknown group {group_id}")
            return None

        member_ids = [nid for nid in group.node_ids if self.store.get_node(nid) is not None]
        if not member_ids:
            logger.warning(f"run_group: group {group_id} has no nodes")
            return None

        snapshot = self.store.snapshot()
        run_id = uuid.uuid4().hex
        token = set_trace_context(run_id=run_id, group_id=group_id)
        try:
            state = _RunState(
                run_id=run_id,
                snapshot=snapshot,
                execution_data=self._prepare_execution_data(snapshot),
                report=RunReport(run_id=run_id, target=group_id, node_ids=member_ids),
            )

            members = set(member_ids)
            state.adjacency = {nid: [] for nid in member_ids}
            state.in_degree = {nid: 0 for nid in member_ids}
            for connection in snapshot.connections:
                if connection.from_id in members and connection.to_id in members:
                    state.adjacency[connection.from_id].append(connection.to_id)
                    state.in_degree[connection.to_id] += 1

            await self._reset_members(state, member_ids)

            roots = [nid for nid in member_ids if state.in_degree[nid] == 0]
            logger.info(
                f"▶ Running group {group.name or group_id}: "
                f"{len(member_ids)} node(s), {len(roots)} root(s)"
            )
            if self.event_bus:
                await self.event_bus.emit_run_started(run_id, group_id, member_ids)

            await self._drive(state, roots)
            return await self._finish(state)
        finally:
            reset_trace_context(token)

    async def run_node(self, node_id: str, instruction: str | None = None) -> RunReport | None:
        """
        Run a single node against the current graph.

        ``instruction`` overrides the node's stored instruction for this run.
        A node that is already running is left alone.
        """
        node = self.store.get_node(node_id)
        if node is None:
            logger.warning(f"run_node: unknown node {node_id}")
            return None
        if node.status == NodeStatus.RUNNING:
            logger.info(f"run_node: node {node_id} is already running")
            return None

        snapshot = self.store.snapshot()
        run_id = uuid.uuid4().hex
        token = set_trace_context(run_id=run_id, group_id=None)
        try:
            state = _RunState(
                run_id=run_id,
                snapshot=snapshot,
                execution_data=snapshot.node_map(),
                report=RunReport(run_id=run_id, target=node_id, node_ids=[node_id]),
                static_roots=False,
            )
            if instruction is not None:
                state.instruction_overrides[node_id] = instruction

            if self.event_bus:
                await self.event_bus.emit_run_started(run_id, node_id, [node_id])

            await self._drive(state, [node_id])
            return await self._finish(state)
        finally:
            reset_trace_context(token)

    async def run_batch_item(self, node_id: str, item_id: str) -> RunReport | None:
        """
        Re-run one item of an independent batch node (retry).

        The node counts as succeeded only when the retried item succeeds.
        """
        node = self.store.get_node(node_id)
        if node is None or not node.is_batch:
            logger.warning(f"run_batch_item: {node_id} is not a batch-image node")
            return None
        if not any(item.id == item_id for item in node.batch_items):
            logger.warning(f"run_batch_item: unknown item {item_id} on {node_id}")
            return None

        self.store.reset_batch_item(node_id, item_id)
        snapshot = self.store.snapshot()
        run_id = uuid.uuid4().hex
        target = f"{node_id}/{item_id}"
        token = set_trace_context(run_id=run_id, node_id=node_id)
        try:
            state = _RunState(
                run_id=run_id,
                snapshot=snapshot,
                execution_data=snapshot.node_map(),
                report=RunReport(run_id=run_id, target=target, node_ids=[node_id]),
            )
            if self.event_bus:
                await self.event_bus.emit_run_started(run_id, target, [node_id])

            state.started.add(node_id)
            execution_node = state.execution_data[node_id]
            incoming = snapshot.incoming(node_id)
            inputs = self._collect_inputs(state.execution_data, execution_node, incoming)

            outcome = await self.batch.run_independent(
                execution_node,
                execution_node.instruction,
                inputs,
                on_image=self._image_recorder(state),
                run_id=run_id,
                item_ids=[item_id],
            )
            state.report.calls += outcome.calls
            if outcome.failed:
                state.report.batch_failures[node_id] = outcome.failed
                state.report.failed[node_id] = outcome.failed[item_id]
            else:
                state.report.succeeded.append(node_id)
            return await self._finish(state)
        finally:
            reset_trace_context(token)

    # === DRIVING ===

    async def _drive(self, state: _RunState, roots: list[str]) -> None:
        for node_id in roots:
            self._spawn(state, node_id)
        if state.in_flight == 0:
            state.done.set()
        await state.done.wait()

    def _spawn(self, state: _RunState, node_id: str) -> None:
        state.in_flight += 1
        task = asyncio.create_task(self._trigger_node(state, node_id))
        state.tasks.add(task)
        task.add_done_callback(state.tasks.discard)

    async def _trigger_node(self, state: _RunState, node_id: str) -> None:
        incoming_ids: list[str] = []
        try:
            set_trace_context(node_id=node_id)
            node = state.execution_data.get(node_id)
            if node is None:
                return
            state.started.add(node_id)
            await self._set_status(state, node_id, NodeStatus.RUNNING)

            incoming = state.snapshot.incoming(node_id)
            incoming_ids = [c.id for c in incoming]
            await self._highlight(state, node_id, incoming_ids, active=True)

            if self.ui_delay_seconds:
                await asyncio.sleep(self.ui_delay_seconds)

            if await self._execute(state, node, incoming):
                for child_id in state.adjacency.get(node_id, []):
                    state.in_degree[child_id] -= 1
                    if state.in_degree[child_id] == 0:
                        self._spawn(state, child_id)
        finally:
            await self._highlight(state, node_id, incoming_ids, active=False)
            state.in_flight -= 1
            if state.in_flight == 0:
                state.done.set()

    async def _execute(self, state: _RunState, node: Node, incoming: list) -> bool:
        """Run one node; returns True when its children may proceed."""
        instruction = state.instruction_overrides.get(node.id, node.instruction)

        if state.static_roots and not incoming and not instruction.strip():
            logger.info(f"  ◇ {node.name or node.id}: static input, no call needed")
            await self._mark_success(state, node.id, {})
            return True

        try:
            inputs = self._collect_inputs(state.execution_data, node, incoming)

            if node.is_batch:
                outcome = await self.batch.run(
                    node,
                    instruction,
                    inputs,
                    on_image=self._image_recorder(state),
                    run_id=state.run_id,
                )
                state.report.calls += outcome.calls
                if outcome.failed:
                    state.report.batch_failures[node.id] = outcome.failed
                changes = {}
                if outcome.appended is not None:
                    # Consumers read this run's merged image, not the item history
                    changes["output_image"] = outcome.appended.result
                await self._mark_success(state, node.id, changes)
                return True

            state.report.calls += 1
            result = await self.runner.run(
                instruction,
                node.kind,
                inputs,
                model=node.model,
                credentials=self.credentials,
                options=node_options(node),
            )
            await self._apply_result(state, node, instruction, inputs, result)
            return True

        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"  ✗ {node.name or node.id}: {message}")
            await self._mark_error(state, node.id, message)
            return False

    # === INPUTS ===

    def _collect_inputs(
        self,
        execution_data: dict[str, Node],
        node: Node,
        incoming: list,
    ) -> list[Input]:
        producers = [execution_data[c.from_id] for c in incoming if c.from_id in execution_data]
        inputs = [i for producer in sort_by_position(producers) for i in producer_inputs(producer)]

        # A root node's own uploaded image is its input
        if not producers and not node.is_batch and node.input_image:
            inputs.append(Input(PayloadKind.IMAGE, node.input_image))
        return inputs

    def _prepare_execution_data(self, snapshot: GraphSnapshot) -> dict[str, Node]:
        """Copy every node, clearing outputs left over from earlier runs."""
        data = snapshot.node_map()
        for node in data.values():
            if node.status not in _STALE_STATUSES:
                continue
            if snapshot.is_generated(node.id):
                node.content = ""
                node.input_image = None
                node.output_image = None
            elif self.root_output_policy == RootOutputPolicy.REUSE:
                if node.kind == NodeKind.IMAGE and node.output_image:
                    node.input_image = node.output_image
            elif node.kind == NodeKind.IMAGE and node.instruction:
                node.output_image = None
        return data

    # === LIVE VIEW ===

    async def _reset_members(self, state: _RunState, member_ids: list[str]) -> None:
        for node_id in member_ids:
            node = self.store.get_node(node_id)
            if node is None:
                continue
            changes: dict = {"status": NodeStatus.IDLE}
            if state.snapshot.is_generated(node_id):
                changes["input_image"] = None
                changes["output_image"] = None
                if node.kind == NodeKind.TEXT:
                    changes["content"] = ""
            self.store.apply_run_update(node_id, **changes)
            if self.event_bus:
                await self.event_bus.emit_node_status(state.run_id, node_id, NodeStatus.IDLE.value)

    async def _apply_result(
        self,
        state: _RunState,
        node: Node,
        instruction: str,
        inputs: list[Input],
        result: RunResult,
    ) -> None:
        if result.kind == PayloadKind.IMAGE:
            changes: dict = {"output_image": result.content, "content": GENERATED_IMAGE_LABEL}
        else:
            changes = {"content": result.content}
            if node.kind != NodeKind.TEXT:
                # The model explained instead of drawing
                changes["output_image"] = None

        await self._mark_success(state, node.id, changes)
        logger.info(f"  ✓ {node.name or node.id}: {result.kind.value} result")

        if result.kind == PayloadKind.IMAGE:
            await self._record_provenance(
                state, state.execution_data[node.id], instruction, inputs, result.content
            )

    async def _mark_success(self, state: _RunState, node_id: str, changes: dict) -> None:
        changes = {**changes, "status": NodeStatus.SUCCESS}
        state.execution_data[node_id] = state.execution_data[node_id].model_copy(update=changes)
        live_changes = dict(changes)
        if len(changes) > 1:
            # Cached dimensions no longer match the new content
            live_changes.update(width=None, height=None)
        self.store.apply_run_update(node_id, **live_changes)
        state.report.succeeded.append(node_id)

        if self.event_bus:
            delta = {k: v for k, v in changes.items() if k != "status"}
            if delta:
                await self.event_bus.emit_node_updated(state.run_id, node_id, delta)
            await self.event_bus.emit_node_status(state.run_id, node_id, NodeStatus.SUCCESS.value)

    async def _mark_error(self, state: _RunState, node_id: str, message: str) -> None:
        changes = {"status": NodeStatus.ERROR, "content": message}
        state.execution_data[node_id] = state.execution_data[node_id].model_copy(update=changes)
        self.store.apply_run_update(node_id, **changes)
        state.report.failed[node_id] = message
        if self.event_bus:
            await self.event_bus.emit_node_status(
                state.run_id, node_id, NodeStatus.ERROR.value, error=message
            )

    async def _set_status(self, state: _RunState, node_id: str, status: NodeStatus) -> None:
        node = state.execution_data[node_id]
        node.status = status
        self.store.apply_run_update(node_id, status=status)
        if self.event_bus:
            await self.event_bus.emit_node_status(state.run_id, node_id, status.value)

    async def _highlight(
        self,
        state: _RunState,
        node_id: str,
        connection_ids: list[str],
        active: bool,
    ) -> None:
        if not connection_ids:
            return
        if active:
            self.active_connection_ids.update(connection_ids)
        else:
            self.active_connection_ids.difference_update(connection_ids)
        if self.event_bus:
            await self.event_bus.emit_connections(state.run_id, node_id, connection_ids, active)

    # === PROVENANCE ===

    def _image_recorder(self, state: _RunState):
        async def record(node: Node, instruction: str, inputs: list[Input], image: str) -> None:
            await self._record_provenance(state, node, instruction, inputs, image)

        return record

    async def _record_provenance(
        self,
        state: _RunState,
        node: Node,
        instruction: str,
        inputs: list[Input],
        image: str,
    ) -> None:
        group = self._group_of(state.snapshot, node.id)
        record = ProvenanceLog.build(node, instruction, inputs, image, self.actor, group)
        self.provenance.append(record)
        state.report.records.append(record)
        if self.event_bus:
            await self.event_bus.emit_provenance_recorded(
                state.run_id, node.id, record.model_dump(mode="json")
            )

    @staticmethod
    def _group_of(snapshot: GraphSnapshot, node_id: str) -> Group | None:
        for group in snapshot.groups:
            if node_id in group.node_ids:
                return group
        return None

    # === COMPLETION ===

    async def _finish(self, state: _RunState) -> RunReport:
        report = state.report
        report.not_started = [nid for nid in report.node_ids if nid not in state.started]
        if report.not_started:
            logger.info(f"  ⏸ Not started this run: {report.not_started}")
        logger.info(
            f"■ Run {state.run_id[:8]} done: {len(report.succeeded)} succeeded, "
            f"{len(report.failed)} failed, {report.calls} call(s)"
        )
        if self.event_bus:
            await self.event_bus.emit_run_completed(state.run_id, report.to_dict())
        return report
