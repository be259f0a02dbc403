#!/usr/bin/env python3
"""
DeBERTa attention CLI - Main entry point.

Commands:
- inspect: run a disentangled attention layer on random inputs and print
  the content / c2p / p2c score breakdown

Usage:
    uv run python main.py inspect [OPTIONS]
"""

import sys
import argparse
from pathlib import Path

from rich.console import Console
from rich.panel import Panel

# Add src to path
sys.path.append(str(Path(__file__).parent))

from commands import inspect_attention
from src.deberta.errors import DebertaError


def create_parser():
    """Create the main argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        description="DeBERTa attention CLI - Inspect disentangled self-attention layers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # ============================================================================
    # INSPECT subcommand
    # ============================================================================
    inspect_parser = subparsers.add_parser(
        "inspect",
        help="Run a disentangled attention layer and show the score breakdown",
        description="Build a layer from a config (file and/or flags), feed seeded random "
                    "hidden states and print content, c2p and p2c score statistics.",
    )
    inspect_parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="JSON config file (DeBERTa model config; unknown keys are ignored)",
    )
    inspect_parser.add_argument(
        "--hidden-size",
        type=int,
        default=None,
        help="Hidden size (default: 64, or the config file's value)",
    )
    inspect_parser.add_argument(
        "--heads",
        type=int,
        default=None,
        help="Number of attention heads (default: 4, or the config file's value)",
    )
    inspect_parser.add_argument(
        "--pos-att-type",
        type=str,
        default=None,
        help='Position attention types, e.g. "c2p|p2c"',
    )
    inspect_parser.add_argument(
        "--max-relative-positions",
        type=int,
        default=None,
        help="Half-width of the relative embedding table (default: 32)",
    )
    inspect_parser.add_argument(
        "--talking-head",
        action="store_true",
        help="Enable talking-heads mixing",
    )
    inspect_parser.add_argument(
        "--seq-len",
        type=int,
        default=16,
        help="Key/value sequence length (default: 16)",
    )
    inspect_parser.add_argument(
        "--query-len",
        type=int,
        default=None,
        help="Query length; smaller than --seq-len exercises the incremental path",
    )
    inspect_parser.add_argument(
        "--batch",
        type=int,
        default=1,
        help="Batch size (default: 1)",
    )
    inspect_parser.add_argument(
        "--seed",
        type=int,
        default=42,
        help="Random seed (default: 42)",
    )
    inspect_parser.add_argument(
        "--device",
        type=str,
        default="cpu",
        help="Torch device (default: cpu)",
    )
    inspect_parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode with diagnostic prints for NaN detection",
    )

    return parser


def main(argv=None):
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "inspect":
        try:
            inspect_attention.main(args)
        except (DebertaError, FileNotFoundError) as e:
            Console().print(Panel(f"[bold red]{type(e).__name__}:[/bold red] {e}", style="red", expand=False))
            return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
