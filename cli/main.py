"""Finsight Feed CLI -- the `finsight-feed` command.

Usage:
    finsight-feed start               Start the HTTP server and polling loop
    finsight-feed snapshot            Run one collection cycle, print the JSON
    finsight-feed status              Show home dir, cache and market session
    finsight-feed plugin list         List all available quote sources
    finsight-feed plugin enable <n>   Enable a quote source
    finsight-feed plugin disable <n>  Disable a quote source
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path


def get_home_dir() -> Path:
    """Get the Finsight home directory."""
    return Path(os.environ.get("FINSIGHT_HOME", Path.home() / ".finsight")).expanduser()


def cmd_start(args: argparse.Namespace) -> None:
    """Start the server."""
    from main import run, setup_logging
    setup_logging("INFO")

    try:
        asyncio.run(run(config_path=args.config))
    except KeyboardInterrupt:
        pass


async def _one_cycle(config_path: str | None, use_cache: bool) -> dict:
    from core.config import load_config
    from core.data.cache import MemorySnapshotStore
    from main import build_service
    from server import snapshot_payload

    config = load_config(config_path=config_path)
    store = None if use_cache else MemorySnapshotStore()
    service = build_service(config, store=store)
    try:
        snapshot = await service.force_refresh()
        return snapshot_payload(snapshot, service)
    finally:
        await service.close()


def cmd_snapshot(args: argparse.Namespace) -> None:
    """Run one aggregation cycle and print the snapshot."""
    from core.errors import AggregationError
    from main import setup_logging
    setup_logging("DEBUG" if args.verbose else "WARNING")

    try:
        payload = asyncio.run(_one_cycle(args.config, use_cache=not args.no_cache))
    except AggregationError as e:
        print(f"  Cycle failed: {e}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(payload, indent=2))


def cmd_status(args: argparse.Namespace) -> None:
    """Show home dir, cache freshness, market session and quote sources."""
    from cli.banner import print_banner
    from cli.scanner import CATEGORY_LABELS, discover_plugins
    from core.config import load_config
    from core.data.cache import CACHE_KEY, FileSnapshotStore, SnapshotCache
    from core.duration import parse_duration
    from main import trading_hours_from_config

    print_banner()
    config = load_config(config_path=args.config)
    home = config.home_path
    cache_path = home / f"{CACHE_KEY}.json"

    print(f"  Home:     {home}")
    print(f"  Cache:    {cache_path} ({'exists' if cache_path.exists() else 'NOT FOUND'})")

    cache = SnapshotCache(FileSnapshotStore(home), max_age=parse_duration(config.cache.max_age))
    info = cache.info()
    if info["has_cache"]:
        state = "stale" if info["stale"] else "fresh"
        print(f"            {info['age_seconds']:.0f}s old ({state})")

    session = trading_hours_from_config(config).describe()
    if "next_close" in session:
        print(f"  Session:  {session['session']} (closes {session['next_close']})")
    else:
        print(f"  Session:  {session['session']} (opens {session['next_open']})")
    print()

    for cat, items in discover_plugins().items():
        names = []
        for p in items:
            enabled = config.market_data.provider(p.name).enabled
            names.append(p.display_name if enabled else f"{p.display_name} (disabled)")
        print(f"  {CATEGORY_LABELS.get(cat, cat)}: {', '.join(names)}")
    print()


def cmd_plugin(args: argparse.Namespace) -> None:
    """Plugin management commands."""
    action = args.plugin_action

    if action == "list":
        _plugin_list()
    elif action == "enable":
        _plugin_toggle(args.plugin_name, enable=True, config_file=args.config)
    elif action == "disable":
        _plugin_toggle(args.plugin_name, enable=False, config_file=args.config)
    else:
        print(f"  Unknown plugin action: {action}")
        sys.exit(2)


def _plugin_list() -> None:
    """List all available plugins."""
    from cli.scanner import discover_plugins, CATEGORY_LABELS

    plugins = discover_plugins()
    print()
    for cat, items in plugins.items():
        print(f"  {CATEGORY_LABELS.get(cat, cat)}:")
        for p in items:
            key = " [API key]" if p.has_secrets else ""
            print(f"    {p.name:20s} {p.display_name}{key}")
        print()


def _plugin_toggle(name: str | None, enable: bool, config_file: str | None = None) -> None:
    """Enable or disable a quote source in config.yaml (or the --config file)."""
    if not name:
        print("  Usage: finsight-feed plugin enable <name>")
        return

    import yaml

    from cli.scanner import get_plugin
    if get_plugin(name) is None:
        print(f"  Unknown plugin '{name}'. Run 'finsight-feed plugin list'.")
        return

    if config_file:
        config_path = Path(config_file).expanduser()
    else:
        config_path = get_home_dir() / "config.yaml"
    config: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            config = yaml.safe_load(f) or {}

    market_data = config.setdefault("market_data", {})
    providers = market_data.setdefault("providers", {})
    entry = providers.get(name)
    if not isinstance(entry, dict):
        entry = {}
        providers[name] = entry
    entry["enabled"] = enable

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)
    action = "Enabled" if enable else "Disabled"
    print(f"  {action}: {name}")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="finsight-feed",
        description="Finsight Feed -- market data aggregation and caching service",
    )
    parser.add_argument("--home", type=str, default=None, help="Finsight home directory")
    parser.add_argument("--config", "-c", type=str, default=None, help="Path to config.yaml")

    sub = parser.add_subparsers(dest="command")

    # start
    sub.add_parser("start", help="Start the HTTP server and polling loop")

    # snapshot
    snapshot_parser = sub.add_parser("snapshot", help="Run one cycle and print the snapshot JSON")
    snapshot_parser.add_argument(
        "--no-cache", action="store_true", help="Do not read or write the snapshot cache",
    )
    snapshot_parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    # status
    sub.add_parser("status", help="Show system status")

    # plugin
    plugin_parser = sub.add_parser("plugin", help="Plugin management")
    plugin_parser.add_argument(
        "plugin_action",
        type=str,
        help="list | enable | disable",
    )
    plugin_parser.add_argument(
        "plugin_name",
        type=str,
        nargs="?",
        default=None,
        help="Plugin name (for enable/disable)",
    )

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.home:
        os.environ["FINSIGHT_HOME"] = str(Path(args.home).expanduser())

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    commands = {
        "start": cmd_start,
        "snapshot": cmd_snapshot,
        "status": cmd_status,
        "plugin": cmd_plugin,
    }

    handler = commands.get(args.command)
    if handler:
        handler(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
