#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from api.services.logger import configure_logging
from api.services.tools import run_tool
from api.services.widget_catalog import default_catalog


async def _run(args: argparse.Namespace) -> dict:
    if args.command == "suggest":
        return await run_tool("suggest_dashboard_widgets", {"description": args.description, "limit": args.limit})
    if args.command == "templates":
        return await run_tool("list_dashboard_templates")
    if args.command == "fix":
        return await run_tool("fix_report", {"report_id": args.report_id, "max_attempts": args.max_attempts})
    if args.widgets:
        return await run_tool(
            "smart_build_custom_dashboard",
            {"name": args.name, "widgets": args.widgets, "description": args.description},
        )
    return await run_tool(
        "smart_build_dashboard",
        {"name": args.name, "layout": args.layout, "description": args.description},
    )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Build and repair HaloPSA dashboards from the CLI")
    commands = parser.add_subparsers(dest="command", required=True)

    build = commands.add_parser("build", help="Build a dashboard from a layout or widget list")
    build.add_argument("name")
    build.add_argument("--layout", default="service_desk", choices=default_catalog().layout_names())
    build.add_argument("--widgets", nargs="+", help="Widget template names; overrides --layout")
    build.add_argument("--description", default="")

    suggest = commands.add_parser("suggest", help="Suggest widgets for a description")
    suggest.add_argument("description")
    suggest.add_argument("--limit", type=int, default=8)

    commands.add_parser("templates", help="List widget templates and layouts")

    fix = commands.add_parser("fix", help="Validate a report and repair its SQL")
    fix.add_argument("report_id", type=int)
    fix.add_argument("--max-attempts", type=int, default=3)

    parser.add_argument("--log-level", default=None)
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    configure_logging(args.log_level)
    result = asyncio.run(_run(args))
    print(json.dumps(result, indent=2, default=str))
    if not result.get("success"):
        raise SystemExit(1)


if __name__ == "__main__":
    main()
