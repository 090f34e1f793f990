from __future__ import annotations

import argparse
import logging
import signal
import sys
from pathlib import Path

from PySide6 import QtCore

from qsensorlog.errors import QSensorError
from qsensorlog.record.recorder import LocalRecorder
from qsensorlog.remote.companion import HttpCompanionRecorder
from qsensorlog.session.orchestrator import OrchestrationResult, SessionOrchestrator, StartParams
from qsensorlog.sync.clock_offset import ClockOffsetService
from qsensorlog.telemetry.controller import InstrumentController
from qsensorlog.telemetry.transport import list_serial_ports
from qsensorlog.util.settings import Settings, load_settings

logger = logging.getLogger("qsensorlog")

TRANSPORT_POLL_MS = 20


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="qsensorlog",
        description="Record a Q-Series surface sensor alongside an in-water companion recorder.",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to qsensorlog.toml")
    parser.add_argument("--port", default=None, help="Serial port of the surface instrument")
    parser.add_argument("--mission", default=None, help="Mission name (directory under storage)")
    parser.add_argument("--api-url", default=None, help="Base URL of the companion recorder API")
    parser.add_argument(
        "--duration", type=float, default=None, help="Stop after this many seconds (default: Ctrl-C)"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def _resolve_port(args: argparse.Namespace, settings: Settings) -> str | None:
    if args.port:
        return args.port
    if settings.surface.port:
        return settings.surface.port
    ports = list_serial_ports()
    if ports:
        device, desc = ports[0]
        logger.info("Using first candidate serial port %s (%s)", device, desc)
        return device
    return None


def _print_result(title: str, result: OrchestrationResult) -> None:
    print(f"{title}: {'ok' if result.success else 'FAILED'}")
    if result.session is not None:
        print(f"  session: {result.session.root_path}")
        for leg, session_id in result.session.leg_session_ids.items():
            print(f"  {leg}: {session_id}")
    for err in result.errors:
        print(f"  error: {err}")


# ---------------------------------------- #


def main(argv: list[str] | None = None) -> int:
    """
    Headless entry point.

    Connects the surface instrument, starts both legs, records until the
    duration elapses or Ctrl-C, then stops both legs and prints the result.
    """
    args = _parse_args(argv)
    settings = load_settings(args.config)

    level = logging.DEBUG if args.verbose else getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    port = _resolve_port(args, settings)
    if port is None:
        logger.error("No serial port given and none detected")
        return 2

    app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication(sys.argv[:1])
    app.setApplicationName("QSensorLog")

    controller = InstrumentController()
    controller.info.connect(lambda msg: logger.info("%s", msg))
    controller.error.connect(lambda ev: logger.error("%s: %s", ev.kind, ev.message))

    storage = settings.recording.storage_path
    recorder = LocalRecorder(root=storage)
    companion = HttpCompanionRecorder(args.api_url or settings.inwater.api_url)
    clock_service = ClockOffsetService()
    orchestrator = SessionOrchestrator(controller, recorder, companion, storage, clock_service)

    pump = QtCore.QTimer()
    pump.setInterval(TRANSPORT_POLL_MS)
    pump.timeout.connect(controller.poll_transport)

    try:
        controller.connect(port, settings.surface.baud)
    except QSensorError as exc:
        logger.error("Could not connect to %s: %s", port, exc)
        return 2

    params = StartParams(
        mission=args.mission or settings.recording.mission,
        rate_hz=settings.recording.rate_hz,
        roll_interval_s=settings.recording.roll_interval_s,
        poll_hz=settings.surface.poll_hz,
    )
    # Runs through start_both and stop_both so serial data never waits on the network.
    pump.start()
    started = orchestrator.start_both(params)
    _print_result("start", started)
    if not started.success:
        pump.stop()
        controller.disconnect()
        return 1

    # The pump timer returns control to Python often enough for SIGINT to land.
    signal.signal(signal.SIGINT, lambda *_: app.quit())
    if args.duration is not None:
        QtCore.QTimer.singleShot(int(args.duration * 1000), app.quit)

    app.exec()

    stopped = orchestrator.stop_both()
    pump.stop()
    _print_result("stop", stopped)

    controller.disconnect()
    companion.close()
    clock_service.close()
    return 0 if stopped.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
