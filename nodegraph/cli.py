"""
nodegraph Command Line Interface

Local access to a node graph: bootstrap a store, inspect nodes and run
query definitions.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from nodegraph.config import NodeGraphConfig
from nodegraph.context import NodeGraph
from nodegraph.exceptions import NodeGraphError
from nodegraph.logging import setup_logging


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="nodegraph",
        description="nodegraph - node-graph store and query engine",
    )
    parser.add_argument("--config", type=Path, help="JSON config file")
    parser.add_argument("--backend", choices=["sqlite", "graph"], help="Storage backend")
    parser.add_argument("--data-dir", type=Path, help="Data directory")
    parser.add_argument("--log-level", help="Log level (default: config log_level)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init", help="Create the store and bootstrap system nodes")
    subparsers.add_parser("health", help="Show backend health")

    query_parser = subparsers.add_parser("query", help="Evaluate a query definition")
    query_parser.add_argument("definition", type=json.loads, help="Query definition JSON")

    get_parser = subparsers.add_parser("get", help="Show an assembled node")
    get_parser.add_argument("ref", help="Node id or system id")
    get_parser.add_argument("--inherit", action="store_true", help="Merge supertag defaults")

    create_parser = subparsers.add_parser("create", help="Create a node")
    create_parser.add_argument("content", help="Node content")
    create_parser.add_argument("--supertag", help="Supertag system id")
    create_parser.add_argument("--props", type=json.loads, default={}, help="Field -> value JSON")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    config = load_config(args)
    setup_logging(args.log_level or config.log_level, config.log_format)

    try:
        result = asyncio.run(run_command(config, args))
    except NodeGraphError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


def load_config(args: argparse.Namespace) -> NodeGraphConfig:
    config = NodeGraphConfig.from_file(args.config) if args.config else NodeGraphConfig()
    overrides: Dict[str, Any] = {}
    if args.backend:
        overrides["backend"] = args.backend
    if args.data_dir:
        overrides["data_dir"] = args.data_dir
    return config.model_copy(update=overrides) if overrides else config


async def run_command(config: NodeGraphConfig, args: argparse.Namespace) -> Any:
    config.data_dir.mkdir(parents=True, exist_ok=True)

    async with NodeGraph(config) as graph:
        backend = graph.backend

        if args.command == "init":
            ids = await backend.bootstrap()
            return {"system_nodes": len(ids)}

        if args.command == "health":
            return await graph.get_status()

        if args.command == "query":
            result = await graph.evaluate_query(args.definition)
            return {
                "totalCount": result.total_count,
                "evaluatedAt": result.evaluated_at.isoformat(),
                "nodes": [node.to_dict() for node in result.nodes],
            }

        if args.command == "get":
            node = await backend.find_node_by_system_id(args.ref) or await backend.find_node_by_id(args.ref)
            if node is None:
                return None
            if args.inherit:
                node = await backend.assemble_node_with_inheritance(node.id)
            return node.to_dict()

        if args.command == "create":
            node_id = await backend.create_node(
                content=args.content,
                supertag_system_id=args.supertag,
                properties=args.props,
            )
            return {"id": node_id}

    return None


if __name__ == "__main__":
    sys.exit(main())
