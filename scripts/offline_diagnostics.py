from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any

from fieldsync.core.config import Settings, get_settings
from fieldsync.core.logging import configure_logging
from fieldsync.offline.runtime import OfflineRuntime


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect or repair the local offline sync stores")
    parser.add_argument("--state-root", type=Path, default=None, help="Override FIELDSYNC_STATE_ROOT")
    parser.add_argument("--retry-failed", action="store_true", help="Re-queue failed edits and photos")
    parser.add_argument("--purge-failed", action="store_true", help="Delete failed edits and photos")
    parser.add_argument("--sync", action="store_true", help="Probe the server and drain the queue once")
    parser.add_argument("--summary", action="store_true", help="Print counts only, not every queued record")
    return parser.parse_args()


def _build_settings(args: argparse.Namespace) -> Settings:
    if args.state_root is None:
        return get_settings()
    return Settings(state_root=args.state_root.resolve())


def _summarize(report: dict[str, Any]) -> dict[str, Any]:
    return {
        "status": report["status"],
        "storage": report["storage"],
        "job_cache": report["job_cache"],
        "cached_pages": len(report["page_cache"]),
    }


async def run(args: argparse.Namespace) -> dict[str, Any]:
    settings = _build_settings(args)
    configure_logging(settings.log_level)
    runtime = OfflineRuntime(settings)
    await runtime.init(start_background=False)
    try:
        if args.purge_failed:
            await runtime.orchestrator.purge_failed()
        if args.retry_failed:
            await runtime.edits.retry_failed()
        if args.sync:
            await runtime.connectivity.check_now()
            await runtime.orchestrator.sync_now()
        report = await runtime.diagnostics()
    finally:
        await runtime.dispose()
    return _summarize(report) if args.summary else report


def main() -> None:
    args = parse_args()
    report = asyncio.run(run(args))
    print(json.dumps(report, indent=2, default=str))


if __name__ == "__main__":
    main()
