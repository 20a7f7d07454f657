"""Generation service adapters."""

from flowcanvas.runner.http import HttpNodeRunner
from flowcanvas.runner.mock import MockNodeRunner
from flowcanvas.runner.port import (
    Credentials,
    GenerationOptions,
    Input,
    NodeRunnerPort,
    PayloadKind,
    RunResult,
)

__all__ = [
    "NodeRunnerPort",
    "Input",
    "RunResult",
    "PayloadKind",
    "Credentials",
    "GenerationOptions",
    "HttpNodeRunner",
    "MockNodeRunner",
]
