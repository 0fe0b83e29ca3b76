"""Run a headless engine session against the native peer socket."""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
from dataclasses import replace
from typing import Any, Dict, Optional, Sequence

from bridge.client import BridgeClient
from domain.repository import LocalProjectRepository
from sync.broadcast import STATE_EVENT
from sync.config import EngineSettings
from sync.session import SyncSession

logger = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Start the project sync engine and keep the native peer reconciled.",
    )
    parser.add_argument("--project", help="Identifier of a stored project to load on start.")
    parser.add_argument("--socket", help="Override STUU_NATIVE_SOCKET.")
    parser.add_argument(
        "--no-native",
        action="store_true",
        help="Run on the simulated clock without contacting the native peer.",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds (default: run until interrupted).",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def build_session(args: argparse.Namespace, settings: Optional[EngineSettings] = None) -> SyncSession:
    resolved = settings or EngineSettings.from_environment()
    if args.socket:
        resolved = replace(resolved, socket_path=args.socket)
    if args.no_native:
        resolved = replace(resolved, native_transport=False)
    link = None
    if resolved.native_transport:
        link = BridgeClient(
            resolved.socket_path,
            request_timeout=resolved.request_timeout,
            reconnect_interval=resolved.reconnect_interval,
        )
    environment = dict(os.environ)
    if not environment.get("STUU_PROJECTS_DIR"):
        environment["STUU_PROJECTS_DIR"] = str(resolved.projects_dir)
    repository = LocalProjectRepository.from_environment(environment)
    return SyncSession(link=link, settings=resolved, repository=repository)


async def run(args: argparse.Namespace) -> int:
    session = build_session(args)

    def log_state(event: str, payload: Dict[str, Any]) -> None:
        if event == STATE_EVENT:
            project = payload["project"]
            logger.info(
                "State: %s | %d track(s) | native=%s",
                project.get("project_name"),
                len(project.get("tracks", [])),
                payload["native_transport"],
            )

    session.broadcaster.subscribe(log_state)
    if args.project:
        await session.load_project(args.project)
    await session.start()
    try:
        if args.duration is not None:
            await asyncio.sleep(args.duration)
        else:
            await asyncio.Event().wait()
    finally:
        await session.shutdown()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s",
    )
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
