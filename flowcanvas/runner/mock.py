"""Mock NodeRunner for offline runs and tests."""

import asyncio
import hashlib
from dataclasses import dataclass

from flowcanvas.graph.models import NodeKind
from flowcanvas.runner.http import build_request
from flowcanvas.runner.port import (
    Credentials,
    GenerationOptions,
    Input,
    NodeRunnerPort,
    PayloadKind,
    RunResult,
)


@dataclass
class RecordedCall:
    instruction: str
    kind: NodeKind
    inputs: list[Input]
    model: str | None


class MockNodeRunner(NodeRunnerPort):
    """
    Deterministic runner that never touches the network.

    Image and batch-image nodes get a fake image payload derived from the
    request; text nodes get the prompt echoed back. ``responses`` maps an
    instruction to a fixed result or to an exception to raise.
    """

    def __init__(
        self,
        responses: dict[str, RunResult | Exception] | None = None,
        delay: float = 0.0,
    ):
        self.responses = responses or {}
        self.delay = delay
        self.calls: list[RecordedCall] = []

    async def run(
        self,
        instruction: str,
        kind: NodeKind,
        inputs: list[Input],
        model: str | None = None,
        credentials: Credentials | None = None,
        options: GenerationOptions | None = None,
    ) -> RunResult:
        self.calls.append(RecordedCall(instruction, kind, list(inputs), model))
        body = build_request(instruction, kind, inputs, model, options)

        if self.delay:
            await asyncio.sleep(self.delay)

        canned = self.responses.get(instruction)
        if isinstance(canned, Exception):
            raise canned
        if canned is not None:
            return canned

        if kind == NodeKind.TEXT:
            return RunResult(PayloadKind.TEXT, f"[mock] {body['prompt']}")
        digest = hashlib.sha256(repr(body).encode()).hexdigest()[:16]
        return RunResult(PayloadKind.IMAGE, f"mock-image-{digest}")
