"""CLI entrypoint: connect to the queue event server and print alerts to the console."""

import argparse
import asyncio
from collections.abc import Sequence
from typing import Any

from .config import get_config
from .container import ApplicationContainer
from .realtime.channel_membership import compute_channels
from .realtime.pipeline import StaffIdentity
from .structured_logging.enhanced_logging_config import get_logger, setup_enhanced_logging

logger = get_logger(__name__)


class ConsoleAlertSink:
    """LocalAlertSink that prints alerts; permission is always granted."""

    async def has_permission(self) -> bool:
        return True

    async def schedule_alert(self, title: str, body: str, data: dict[str, Any]) -> None:
        print(f"[{data.get('urgency', 'normal')}] {title}: {body}")


def parse_arguments(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Listen to queue events for one staff member.")
    parser.add_argument("--staff-id", dest="staff_id", required=True, help="Staff identifier.")
    parser.add_argument(
        "--role",
        dest="role",
        required=True,
        help="Staff type (receptionist2, ophthalmologist, doctor, optometrist).",
    )
    parser.add_argument("--server-url", dest="server_url", default=None, help="Event server URL override.")
    parser.add_argument("--push-token", dest="push_token", default=None, help="Device push token to register.")
    parser.add_argument(
        "--duration",
        dest="duration",
        type=float,
        default=None,
        help="Stop after this many seconds (default: run until interrupted).",
    )
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    config = get_config()
    setup_enhanced_logging(config.to_legacy_dict())

    if not compute_channels(args.role, args.staff_id):
        logger.error("Role has no queue channels", role=args.role)
        return 2

    container = ApplicationContainer(alert_sink=ConsoleAlertSink(), config=config)
    await container.initialize()
    try:
        if container.pipeline is None:
            raise RuntimeError("Container not initialized")
        await container.pipeline.start_session(StaffIdentity(args.staff_id, args.role), push_token=args.push_token)
        await container.connect(args.server_url)
        if args.duration is not None:
            await asyncio.sleep(args.duration)
        else:
            await asyncio.Event().wait()
    finally:
        await container.shutdown()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_arguments(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
