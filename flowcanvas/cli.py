"""
Command-line interface for FlowCanvas.

Usage:
    flowcanvas run workflow.json
    flowcanvas run workflow.json --group "Poster pipeline" --mock
    flowcanvas info workflow.json
"""

import argparse
import asyncio
import json
import logging
import sys

from flowcanvas.config import RuntimeConfig
from flowcanvas.graph.assets import WorkflowAsset, import_workflow
from flowcanvas.graph.models import Actor, Role
from flowcanvas.graph.scheduler import ExecutionScheduler, RunReport
from flowcanvas.graph.store import GraphStore
from flowcanvas.observability import configure_logging
from flowcanvas.runner import Credentials, HttpNodeRunner, MockNodeRunner, NodeRunnerPort

logger = logging.getLogger(__name__)


def _load_asset(path: str) -> WorkflowAsset | None:
    try:
        return WorkflowAsset.load(path)
    except FileNotFoundError:
        print(f"Workflow file not found: {path}", file=sys.stderr)
    except ValueError as e:
        print(f"Invalid workflow file {path}: {e}", file=sys.stderr)
    return None


def _build_runner(args: argparse.Namespace, config: RuntimeConfig) -> NodeRunnerPort:
    if args.mock:
        return MockNodeRunner()
    return HttpNodeRunner(api_base=config.api_base, timeout=config.request_timeout)


async def _run_workflow(
    asset: WorkflowAsset,
    group_name: str | None,
    runner: NodeRunnerPort,
    config: RuntimeConfig,
) -> RunReport | None:
    store = GraphStore()
    actor = Actor(id=asset.owner_id or "cli", role=Role.USER)
    imported = import_workflow(store, asset, actor)

    if group_name:
        group = next((g for g in store.groups if g.name == group_name), None)
        if group is None:
            print(f"No group named {group_name!r} in {asset.name or asset.id}", file=sys.stderr)
            return None
    else:
        group = imported.group or store.add_group(imported.node_ids, actor=actor)

    scheduler = ExecutionScheduler(
        store=store,
        runner=runner,
        actor=actor,
        credentials=Credentials(access_token=config.access_token),
        config=config,
    )
    if group is None:
        # A single ungrouped node
        if not imported.node_ids:
            return None
        return await scheduler.run_node(imported.node_ids[0])
    return await scheduler.run_group(group.id)


def cmd_run(args: argparse.Namespace) -> int:
    """Import a workflow into an empty canvas and run it."""
    configure_logging(level=args.log_level)

    asset = _load_asset(args.workflow)
    if asset is None:
        return 1

    config = RuntimeConfig()
    runner = _build_runner(args, config)
    report = asyncio.run(_run_workflow(asset, args.group, runner, config))
    if report is None:
        return 1

    print(json.dumps(report.to_dict(), indent=2))
    return 0 if report.success else 1


def cmd_info(args: argparse.Namespace) -> int:
    """Show the nodes, connections and roots of a workflow file."""
    asset = _load_asset(args.workflow)
    if asset is None:
        return 1

    targets = {c.to_node for c in asset.connections}
    info = {
        "id": asset.id,
        "name": asset.name,
        "tags": asset.tags,
        "visibility": asset.visibility.value,
        "preset": asset.is_preset,
        "nodes": [
            {"id": n.id, "name": n.name, "kind": n.kind.value, "root": n.id not in targets}
            for n in asset.nodes
        ],
        "connections": [f"{c.from_node} -> {c.to_node}" for c in asset.connections],
        "roots": [n.id for n in asset.nodes if n.id not in targets],
    }
    print(json.dumps(info, indent=2))
    return 0


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    run_parser = subparsers.add_parser("run", help="Run a workflow file")
    run_parser.add_argument("workflow", help="Path to a workflow asset JSON file")
    run_parser.add_argument("--group", default=None, help="Name of the group to run")
    run_parser.add_argument(
        "--mock",
        action="store_true",
        help="Use the offline mock runner instead of the generation service",
    )
    run_parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    run_parser.set_defaults(func=cmd_run)

    info_parser = subparsers.add_parser("info", help="Describe a workflow file")
    info_parser.add_argument("workflow", help="Path to a workflow asset JSON file")
    info_parser.set_defaults(func=cmd_info)


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="flowcanvas",
        description="FlowCanvas - run node-graph generation workflows",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
