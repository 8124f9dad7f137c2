"""
Command-line entry point.

Usage:
  python -m relocation_advisor "Compare Austin vs Denver for housing"
  python -m relocation_advisor "Is it safe?" --city Denver --session s1 --pretty

Prints the extracted request and fused city records as JSON on stdout.
Provider credentials come from the environment or a local ``.env``.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import List, Optional

from .core.config import Settings
from .services.advisor import create_advisor


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="relocation_advisor",
        description="Gather and fuse city data for a relocation question.",
    )
    parser.add_argument("query", help="Natural-language question")
    parser.add_argument(
        "--city",
        action="append",
        default=[],
        help="City to include explicitly (repeatable, at most two are used)",
    )
    parser.add_argument("--session", default=None, help="Session id for preference memory")
    parser.add_argument("--pretty", action="store_true", help="Indent JSON output")
    return parser


async def _run(args: argparse.Namespace) -> int:
    async with create_advisor(Settings.from_env()) as advisor:
        result = await advisor.advise(args.query, args.city or None, args.session)
    json.dump(result.to_dict(), sys.stdout, indent=2 if args.pretty else None, default=str)
    sys.stdout.write("\n")
    return 0 if result.fusion.records or result.fusion.general_results else 1


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return asyncio.run(_run(args))
