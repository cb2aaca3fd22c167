"""
Sweep Runner
============

Standalone process for the orchestrator's background passes, for
deployments that run the API with ``RUN_SWEEPER=false`` or want more than
one sweeper.  Any number of runners can share one Redis: every transition
is a compare-and-swap.

Usage (CLI)::

    python -m iso_orchestrator.runner sweep              # loop forever
    python -m iso_orchestrator.runner sweep --once
    python -m iso_orchestrator.runner purge
    python -m iso_orchestrator.runner write-status <build_id> building 70 "Repacking"
    python -m iso_orchestrator.runner watch <build_id> --api-base http://localhost:8080
"""
from __future__ import annotations

import argparse
import logging
import sys
import time
from typing import Optional

import httpx

from app.config import Settings
from app.context import build_context
from iso_orchestrator.io.schema import StatusReport

log = logging.getLogger(__name__)

TERMINAL = {"completed", "failed", "cancelled"}


def run_sweeps(settings: Settings, once: bool = False, interval: Optional[float] = None) -> int:
    """Run sweeps (and periodic purges) until interrupted.  Returns an exit code."""
    ctx = build_context(settings)
    orchestrator = ctx.orchestrator
    interval = interval or settings.SWEEP_INTERVAL_SECONDS
    last_purge = 0.0

    try:
        while True:
            try:
                result = orchestrator.sweep_once()
                if once:
                    return 1 if result.errors else 0

                if time.monotonic() - last_purge >= settings.PURGE_INTERVAL_SECONDS:
                    orchestrator.purge_once()
                    last_purge = time.monotonic()
            except Exception as exc:
                if once:
                    raise
                log.error("Sweep iteration failed: %s", exc, exc_info=True)
            time.sleep(interval)
    except KeyboardInterrupt:
        log.info("Sweep runner interrupted")
        return 0
    finally:
        ctx.close()


def run_purge(settings: Settings) -> int:
    ctx = build_context(settings)
    try:
        purged = ctx.orchestrator.purge_once()
        print(f"Purged {len(purged)} build(s)")
        return 0
    finally:
        ctx.close()


def write_status(settings: Settings, build_id: str, stage: str, progress: int, message: str) -> int:
    """Write a status record by hand, as a worker would."""
    ctx = build_context(settings)
    try:
        report = StatusReport(stage=stage, progress=progress, message=message)
        ctx.status_channel.write(build_id, report)
        print(f"Wrote {stage} {report.progress}% to {ctx.status_channel.key_for(build_id)}")
        return 0
    finally:
        ctx.close()


def watch_build(build_id: str, api_base: str, interval: float = 5.0, api_key: Optional[str] = None) -> int:
    """Poll the API for a build until it reaches a terminal state."""
    headers = {"X-API-Key": api_key} if api_key else {}
    last_line = None
    with httpx.Client(base_url=api_base, headers=headers, timeout=30.0) as client:
        while True:
            resp = client.get(f"/builds/{build_id}")
            if resp.status_code == 404:
                print(f"Build {build_id} not found", file=sys.stderr)
                return 2
            resp.raise_for_status()
            body = resp.json()

            line = f"{body['status']:<13} {body['progress']:>3}%  {body['stage']}"
            if line != last_line:
                print(line)
                last_line = line

            if body["status"] in TERMINAL:
                if body["status"] != "completed":
                    error = body.get("error") or {}
                    print(f"{error.get('reason')}: {error.get('message')}", file=sys.stderr)
                    return 1
                grant = client.get(f"/builds/{build_id}/download")
                if grant.status_code == 200:
                    print(grant.json()["download_url"])
                return 0
            time.sleep(interval)


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Isoforge orchestrator background passes and operator tools",
    )
    parser.add_argument("--verbose", "-v", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    p_sweep = sub.add_parser("sweep", help="Dispatch, ingest and expire builds")
    p_sweep.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    p_sweep.add_argument("--interval", type=float, default=None, help="Seconds between sweeps")

    sub.add_parser("purge", help="Purge builds past the retention window")

    p_write = sub.add_parser("write-status", help="Write a status record for a build")
    p_write.add_argument("build_id")
    p_write.add_argument("stage")
    p_write.add_argument("progress", type=int)
    p_write.add_argument("message", nargs="?", default="")

    p_watch = sub.add_parser("watch", help="Follow a build through the API")
    p_watch.add_argument("build_id")
    p_watch.add_argument("--api-base", default="http://localhost:8080", help="API base URL")
    p_watch.add_argument("--interval", type=float, default=5.0)
    p_watch.add_argument("--api-key", default=None)

    args = parser.parse_args()
    settings = Settings()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.command == "sweep":
        code = run_sweeps(settings, once=args.once, interval=args.interval)
    elif args.command == "purge":
        code = run_purge(settings)
    elif args.command == "write-status":
        code = write_status(settings, args.build_id, args.stage, args.progress, args.message)
    else:
        code = watch_build(args.build_id, args.api_base, args.interval, args.api_key)
    sys.exit(code)


if __name__ == "__main__":
    main()
