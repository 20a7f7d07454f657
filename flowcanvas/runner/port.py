"""NodeRunner port - the pluggable boundary to the generation service."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from flowcanvas.graph.models import NodeKind


class PayloadKind(StrEnum):
    TEXT = "text"
    IMAGE = "image"


@dataclass(frozen=True)
class Input:
    """One input payload handed to a generation call."""

    kind: PayloadKind
    data: str | None


@dataclass(frozen=True)
class RunResult:
    """What a generation call produced."""

    kind: PayloadKind
    content: str


@dataclass(frozen=True)
class Credentials:
    """Bearer token for the generation service plus an optional provider key override."""

    access_token: str | None = None
    api_key: str | None = None


@dataclass
class GenerationOptions:
    """Per-node generation settings."""

    aspect_ratio: str | None = None
    resolution: str | None = None
    google_search: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


class NodeRunnerPort(ABC):
    """
    Turns an instruction plus inputs into text or image content.

    Implementations raise a ``NodeExecutionError`` subclass on failure; the
    scheduler reports every failure the same way and never retries.
    """

    @abstractmethod
    async def run(
        self,
        instruction: str,
        kind: NodeKind,
        inputs: list[Input],
        model: str | None = None,
        credentials: Credentials | None = None,
        options: GenerationOptions | None = None,
    ) -> RunResult:
        """
        Run one generation call.

        Args:
            instruction: The node's prompt (may be empty when inputs exist)
            kind: Kind of the node being run
            inputs: Ordered input payloads
            model: Model identifier, or None for the kind's default
            credentials: Caller credentials
            options: Generation settings

        Returns:
            RunResult with the generated text or image payload
        """
        pass
