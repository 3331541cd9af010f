#!/usr/bin/env python3
"""
procgroups - group running processes by what they are.

  procgroups --once             one recluster, print the tree, exit
  procgroups --cycles 10        ten monitor cycles, then print
  procgroups --json --once      machine-readable tree
"""

import argparse
import asyncio
import json
import sys

from cluster_tree import render_tree
from clustering import create_engine
from config import ConfigError, load_config
from monitor import ClusterMonitor
from process_feed import ProcessFeed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Semantic process clustering")
    parser.add_argument("--config", help="Path to config.json (default: ~/.config/procgroups/config.json)")
    parser.add_argument("--once", action="store_true", help="Run a single full recluster and exit")
    parser.add_argument("--cycles", type=int, default=None, help="Stop after this many monitor cycles")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between monitor cycles")
    parser.add_argument("--namer", choices=["heuristic", "model"], help="Override the naming strategy")
    parser.add_argument("--no-persist", action="store_true", help="Keep embeddings in memory only")
    parser.add_argument("--json", action="store_true", help="Print the tree as JSON")
    return parser


async def _run(args, config) -> int:
    engine = create_engine(config, persist=False if args.no_persist else None)
    feed = ProcessFeed()
    try:
        if args.once:
            await engine.full_recluster(feed.list_processes())
        else:
            monitor = ClusterMonitor(engine, feed, poll_interval=args.interval)
            await monitor.run(max_cycles=args.cycles)

        tree = engine.get_tree()
        if args.json:
            print(json.dumps(tree.to_dict(), indent=2))
        else:
            print(render_tree(tree))
        return 0
    finally:
        await engine.close()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
        if args.namer:
            config.naming_strategy = args.namer
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    try:
        return asyncio.run(_run(args, config))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
