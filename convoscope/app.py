"""convoscope CLI: main application entry point.

Usage:
    convoscope                      # follow the live stream
    convoscope --once               # print one summary table and exit
    convoscope --base-url http://host:19898 --config convoscope.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import yaml
from rich.console import Console
from rich.table import Table
from rich.text import Text

from convoscope.engine.config import LiveConfig
from convoscope.engine.live_context import LiveContext
from convoscope.engine.yaml_config import load_yaml_config

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"

# How often live mode checks the worker version for changes.
WATCH_INTERVAL_SECONDS = 0.5


def configure_logging(level: str = "INFO", log_file: str | None = None) -> None:
    """Install stderr logging plus an optional rotating log file."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def build_summary_table(context: LiveContext) -> Table:
    """One row per known conversation."""
    table = Table(title="convoscope", show_lines=False)
    table.add_column("Channel", style="bold")
    table.add_column("Agent")
    table.add_column("Items", justify="right")
    table.add_column("Workers", justify="right")
    table.add_column("Branches", justify="right")
    table.add_column("Typing")
    table.add_column("More")

    for channel_id in sorted(context.store.states):
        state = context.store.states[channel_id]
        table.add_row(
            channel_id,
            context.registry.agent_for(channel_id) or "-",
            str(len(state.timeline)),
            str(len(state.workers)),
            str(len(state.branches)),
            "yes" if state.is_typing else "",
            "yes" if state.has_more else "",
        )
    return table


def summary_line(context: LiveContext) -> Text:
    entries = context.registry.entries
    workers = len(context.registry.workers)
    line = Text()
    line.append(f"[{context.connection_state.value}] ", style="dim")
    line.append(f"{len(context.store)} channel(s), ")
    line.append(f"{workers} worker(s)", style="bold")
    line.append(f", {len(entries) - workers} branch(es)")
    line.append(f", {len(context.edges.active) // 2} active link(s)")
    if context.processor.orphan_counts:
        line.append(
            f", {sum(context.processor.orphan_counts.values())} orphan event(s)",
            style="yellow",
        )
    banner = context.banner
    if banner is not None:
        label, severity = banner
        line.append(f"  {label}", style="red" if severity == "error" else "yellow")
    return line


async def run_once(context: LiveContext, console: Console) -> None:
    try:
        await context.load_once()
        console.print(build_summary_table(context))
    finally:
        await context.api.close()


async def run_live(context: LiveContext, console: Console) -> None:
    seen_version = -1
    async with context:
        while True:
            version = context.versions.worker_event_version
            if version != seen_version:
                seen_version = version
                console.print(summary_line(context))
            await asyncio.sleep(WATCH_INTERVAL_SECONDS)


def _build_config(args: argparse.Namespace) -> LiveConfig:
    config = LiveConfig.from_env()
    if args.config:
        config = load_yaml_config(args.config, base=config)
    if args.base_url:
        config = config.with_overrides({"base_url": args.base_url})
    if args.verbose:
        config = config.with_overrides({"log_level": "DEBUG"})
    return config


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="convoscope",
        description="Live view of conversations and their background processes",
    )
    parser.add_argument(
        "--base-url",
        default=None,
        help="Server base URL (default: from config, http://127.0.0.1:19898)",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file overlaid on CONVOSCOPE_* env vars",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Load channels, snapshot and first history pages, print a table and exit",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args(argv)

    try:
        config = _build_config(args)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)

    configure_logging(config.log_level, config.log_file)
    logger.info(
        "Starting convoscope base_url=%s once=%s log=%s",
        config.base_url, args.once, config.log_file or "<stderr>",
    )

    console = Console()
    context = LiveContext(config)
    try:
        if args.once:
            asyncio.run(run_once(context, console))
        else:
            asyncio.run(run_live(context, console))
    except KeyboardInterrupt:
        console.print("\nInterrupted.")
        sys.exit(1)


if __name__ == "__main__":
    main()
