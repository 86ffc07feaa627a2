"""Entry point: python -m corral"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from importlib.metadata import entry_points

from corral.execution.container_runtime import ContainerRuntimeUnavailable
from corral.execution.mount_security import generate_allowlist_template
from corral.infrastructure.config import MOUNT_ALLOWLIST_PATH
from corral.infrastructure.logger import logger
from corral.messaging.types import ChannelFactory

CHANNEL_ENTRY_POINT_GROUP = "corral.channels"


def discover_channel_factories() -> list[ChannelFactory]:
    """Load channel factories registered by installed plugins."""
    factories: list[ChannelFactory] = []
    for ep in entry_points(group=CHANNEL_ENTRY_POINT_GROUP):
        try:
            factories.append(ep.load())
            logger.info("Loaded channel plugin", name=ep.name)
        except Exception:
            logger.exception("Failed to load channel plugin", name=ep.name)
    return factories


async def main() -> None:
    from corral.app import Orchestrator

    orchestrator = Orchestrator(discover_channel_factories())

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logger.info("Received shutdown signal")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await orchestrator.start()
        await shutdown_event.wait()
    finally:
        await orchestrator.shutdown()


def write_allowlist_template(force: bool) -> int:
    if MOUNT_ALLOWLIST_PATH.exists() and not force:
        print(f"{MOUNT_ALLOWLIST_PATH} already exists (use --force to overwrite)", file=sys.stderr)
        return 1
    MOUNT_ALLOWLIST_PATH.parent.mkdir(parents=True, exist_ok=True)
    MOUNT_ALLOWLIST_PATH.write_text(generate_allowlist_template())
    print(f"Wrote mount allowlist template to {MOUNT_ALLOWLIST_PATH}")
    return 0


def run() -> None:
    parser = argparse.ArgumentParser(prog="corral", description="Run chat agents in isolated containers")
    sub = parser.add_subparsers(dest="command")
    template = sub.add_parser("allowlist-template", help="Write a starter mount allowlist")
    template.add_argument("--force", action="store_true", help="Overwrite an existing allowlist")
    args = parser.parse_args()

    if args.command == "allowlist-template":
        sys.exit(write_allowlist_template(args.force))

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
    except ContainerRuntimeUnavailable as err:
        logger.error("Container runtime unavailable", error=str(err))
        sys.exit(1)


if __name__ == "__main__":
    run()
