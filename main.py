"""Entry point for the speedtest server and command-line client."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Any, Dict

from edgespeed import ApplicationContext, bootstrap
from edgespeed.measurements.controller import SpeedtestController
from edgespeed.measurements.models import Phase

LOGGER = logging.getLogger("edgespeed.cli")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Edge network speedtest")
    parser.add_argument("--config", help="Path to config.yaml", default="config.yaml")
    commands = parser.add_subparsers(dest="command")

    serve = commands.add_parser("serve", help="Run the speedtest web server (default)")
    serve.add_argument("--host", default=None, help="Override web server host")
    serve.add_argument("--port", type=int, default=None, help="Override web server port")
    serve.add_argument("--debug", action="store_true", help="Enable Flask debug mode")

    run = commands.add_parser("run", help="Run one speedtest against a server and store the result")
    run.add_argument("--url", default=None, help="Override client.target_url")
    run.add_argument("--threads", type=int, default=None, help="Override client.threads")
    run.add_argument("--duration", type=float, default=None, help="Seconds per throughput phase")

    commands.add_parser("export", help="Write the CSV snapshot of stored runs")
    return parser.parse_args()


def _log_event(event: str, data: Dict[str, Any]) -> None:
    if event == "phase":
        LOGGER.info("Phase: %s", data["phase"])
    elif event == "metric":
        unit = "ms" if data["name"] == "latency" else "Mbps"
        level = logging.INFO if data.get("final") else logging.DEBUG
        LOGGER.log(level, "%s: %.2f %s", data["name"], data["value"], unit)
    elif event == "progress":
        LOGGER.debug("Progress: %.0f%%", data["percent"])
    elif event == "error":
        LOGGER.error("Speedtest failed: %s", data["message"])


async def _run_interactive(controller: SpeedtestController):
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, controller.stop)
    except NotImplementedError:
        LOGGER.debug("Signal handlers unavailable, Ctrl-C will abort without cleanup")
    try:
        return await controller.start()
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass


def run_client(context: ApplicationContext, args: argparse.Namespace) -> int:
    duration_ms = int(args.duration * 1000) if args.duration is not None else None
    controller = context.measurements.build_controller(
        target_url=args.url,
        threads=args.threads,
        duration_ms=duration_ms,
        listener=_log_event,
    )
    session = asyncio.run(_run_interactive(controller))
    if session is None:
        return 1
    context.record(session)
    print(
        f"latency {session.latency.display} ms | "
        f"download {session.download_mbps or 0:.2f} Mbps | "
        f"upload {session.upload_mbps or 0:.2f} Mbps | {session.status}"
    )
    return 0 if session.phase is Phase.DONE and not session.failed else 1


def main() -> None:
    args = parse_args()
    context = bootstrap(args.config)

    if args.command == "run":
        sys.exit(run_client(context, args))

    if args.command == "export":
        path = context.exporter.write_snapshot()
        print(f"Wrote {path}")
        return

    context.serve(
        host=getattr(args, "host", None),
        port=getattr(args, "port", None),
        debug=getattr(args, "debug", False),
    )


if __name__ == "__main__":
    main()
