"""
Pytest configuration and fixtures for qsensorlog tests.
"""

from __future__ import annotations

import threading

import pytest
from PySide6 import QtCore

from qsensorlog.errors import CompanionError, ConnectionLost
from qsensorlog.remote.companion import CompanionStart, CompanionStop
from qsensorlog.sync.clock_offset import ClockOffsetMeasurement
from qsensorlog.telemetry.controller import InstrumentController
from qsensorlog.telemetry.transport import Transport

MENU = b"Select the letter of the menu entry:\r\n"
BANNER = (
    b"Biospherical Instruments Inc. Digital Engine Vers 4.003\r\n"
    b"Unit ID 50123\r\n"
)


@pytest.fixture(scope="session", autouse=True)
def qapp():
    """One QCoreApplication for the whole run; QTimer needs it."""
    app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication([])
    yield app


class FakeClock:
    """Monotonic clock whose sleep() just advances time."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeInstrument(Transport):
    """
    Transport that answers like a Q-Series instrument.

    Menu commands are answered immediately into a pending buffer which is
    delivered on pump(). Data lines are injected with feed().
    """

    def __init__(self) -> None:
        super().__init__()
        self._open = False
        self._lock = threading.Lock()
        self.pending = bytearray()
        self.writes: list[bytes] = []

        self.responsive = True
        self.fail_open = False
        self.reject = False

        self.averaging = 12
        self.rate = 125
        self.mode_flag = "0"
        self.tag = "A"
        self.serial = "50123"
        self.firmware = "4.003"
        self.poll_values: list[float] = []

        self._expect: str | None = None

    # ---------------------------------------- #

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self, port: str, baud: int) -> None:
        if self.fail_open:
            raise ConnectionLost(f"Failed to open {port}")
        self._open = True
        self.pending += BANNER + self._operating_line()

    def close(self) -> None:
        self._open = False

    def pump(self) -> int:
        with self._lock:
            if not self._open or not self.pending:
                return 0
            data = bytes(self.pending)
            self.pending.clear()
        self.data_received.emit(data)
        return len(data)

    def feed(self, data: bytes) -> None:
        # May be called from another thread while the controller pumps.
        with self._lock:
            self.pending += data

    def drop(self, reason: str = "device unplugged") -> None:
        self._open = False
        self.closed.emit(reason)

    # ---------------------------------------- #

    def config_line(self) -> bytes:
        return (
            f"{self.averaging},9600,1.0,QSP2150,E,{self.firmware},G,H,{self.serial},"
            f"0,0,0,{self.mode_flag},{self.tag}\r\n"
        ).encode("ascii")

    def _operating_line(self) -> bytes:
        if self.mode_flag == "1":
            return f"Operating in polled mode with tag of {self.tag}\r\n".encode("ascii")
        return b"Operating in free run mode\r\n"

    def write(self, data: bytes) -> None:
        if not self._open:
            raise ConnectionLost("Transport not open")
        self.writes.append(data)
        if not self.responsive:
            return
        self.pending += self._answer(data)

    def _answer(self, data: bytes) -> bytes:
        expect, self._expect = self._expect, None

        if data == b"\x1b":
            return MENU
        if data == b"^\r":
            return self.config_line() + MENU
        if data == b"A\r":
            self._expect = "averaging"
            return b"Enter # readings to average (1-65535):\r\n"
        if data == b"R\r":
            self._expect = "rate"
            return b"Sample rate selection\r\nEnter ADC rate (4, 8, 16, 33, 62, 125, 250, 500):\r\n"
        if data == b"M":
            self._expect = "mode"
            return b"Select mode: 0 = free run, 1 = polled\r\n"
        if data == b"X\r":
            return b"Rebooting program\r\n" + BANNER + self._operating_line()
        if data.startswith(b">") and data.endswith(b"*"):
            if self.poll_values and data[1:2].decode() == self.tag:
                value = self.poll_values.pop(0)
                return f"{self.tag},{value}, 21.5, 12.1\r\n".encode("ascii")
            return b""

        if expect == "averaging":
            n = int(data.strip())
            if self.reject or not 1 <= n <= 65535:
                self.averaging = 12
                return b"Invalid number, averaging set to 12\r\n" + MENU
            self.averaging = n
            return f"ADC set to averaging {n}\r\n".encode("ascii") + MENU
        if expect == "rate":
            n = int(data.strip())
            if self.reject or n not in (4, 8, 16, 33, 62, 125, 250, 500):
                return b"Invalid rate. Command is ignored\r\n" + MENU
            self.rate = n
            return f"ADC rate set to {n}\r\n".encode("ascii") + MENU
        if expect == "mode":
            if data == b"0":
                self.mode_flag = "0"
                return MENU
            self._expect = "tag"
            return b"Enter TAG character (A-Z):\r\n"
        if expect == "tag":
            tag = data.decode("ascii")
            if self.reject or not ("A" <= tag <= "Z"):
                return b"Bad TAG\r\n" + MENU
            self.mode_flag = "1"
            self.tag = tag
            return MENU
        return b""


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def instrument():
    return FakeInstrument()


@pytest.fixture
def controller(instrument, clock):
    return InstrumentController(instrument, clock=clock, sleep=clock.sleep)


@pytest.fixture
def connected(controller):
    controller.connect("/dev/ttyUSB0", 9600)
    return controller


# ---------------------------------------- #


class FakeCompanion:
    """In-water recorder stand-in."""

    def __init__(self) -> None:
        self.base_url = "http://companion.local:9150"
        self.hostname = "companion.local"
        self.fail_start = False
        self.fail_stop = False
        self.started: list[tuple[str, float, float]] = []
        self.stopped: list[str] = []

    def start(self, mission: str, rate_hz: float, roll_interval_s: float) -> CompanionStart:
        if self.fail_start:
            raise CompanionError("Start record failed: HTTP 503 sensor busy")
        self.started.append((mission, rate_hz, roll_interval_s))
        return CompanionStart(session_id=f"remote-{len(self.started)}", started_at="2025-01-01T00:00:00+00:00")

    def stop(self, session_id: str) -> CompanionStop:
        if self.fail_stop:
            raise CompanionError("Stop record failed: connection refused")
        self.stopped.append(session_id)
        return CompanionStop(stopped_at="2025-01-01T00:10:00+00:00", rows=3000, chunks=10)


class FakeClockService:
    def __init__(self, offsets: list[float | None]) -> None:
        self.offsets = list(offsets)
        self.calls: list[str] = []

    def measure_offset(self, peer_base_url: str) -> ClockOffsetMeasurement:
        self.calls.append(peer_base_url)
        offset = self.offsets.pop(0) if self.offsets else None
        return ClockOffsetMeasurement(
            timestamp="2025-01-01T00:00:00+00:00",
            offset_ms=offset,
            uncertainty_ms=None if offset is None else 1.5,
            method="ntp_handshake_v1" if offset is not None else "unsynced",
            failure_reason=None if offset is not None else "timeout",
            samples=5 if offset is not None else 0,
        )


@pytest.fixture
def companion():
    return FakeCompanion()
