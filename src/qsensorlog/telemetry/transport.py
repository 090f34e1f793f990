from __future__ import annotations

import logging

import serial
from PySide6 import QtCore

from qsensorlog.errors import ConnectionLost

logger = logging.getLogger(__name__)


def _is_candidate_serial_port(device: str) -> bool:
    return (
        device.startswith("/dev/ttyUSB")
        or device.startswith("/dev/ttyACM")
        or device.startswith("/dev/cu.usbserial")
        or device.upper().startswith("COM")
    )


# ---------------------------------------- #


def _looks_like_usb_serial(description: str) -> bool:
    d = (description or "").lower()
    keywords = ("ftdi", "ft232", "usb serial", "pl2303", "prolific", "cp210", "ch340")
    return any(k in d for k in keywords)


# ---------------------------------------- #


def list_serial_ports() -> list[tuple[str, str]]:
    """
    Return likely instrument serial ports as (device, description).

    USB-serial bridges are listed first, then stable by device name.
    """
    try:
        import serial.tools.list_ports  # type: ignore
    except ImportError:
        return []

    ports: list[tuple[str, str]] = []
    for p in serial.tools.list_ports.comports():
        device = getattr(p, "device", "") or ""
        desc = getattr(p, "description", "") or ""
        if _is_candidate_serial_port(device):
            ports.append((device, desc or "(unknown)"))

    ports.sort(key=lambda x: (not _looks_like_usb_serial(x[1]), x[0]))
    return ports


# ---------------------------------------- #


class Transport(QtCore.QObject):
    """
    Byte-stream link to one instrument.

    data_received carries raw bytes as they are pumped off the link.
    closed fires only when the link goes away on its own; an explicit
    close() is silent.
    """

    data_received = QtCore.Signal(object)
    closed = QtCore.Signal(str)

    def open(self, port: str, baud: int) -> None:
        raise NotImplementedError

    def write(self, data: bytes) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def pump(self) -> int:
        """Read whatever is available and emit it. Returns the byte count."""
        raise NotImplementedError

    @property
    def is_open(self) -> bool:
        raise NotImplementedError


# ---------------------------------------- #


class SerialTransport(Transport):
    def __init__(self, read_chunk: int = 512, parent=None) -> None:
        super().__init__(parent)
        self._ser: serial.Serial | None = None
        self._read_chunk = read_chunk
        self.port: str | None = None
        self.baud: int | None = None

    # ---------------------------------------- #
    #  Connection                              #
    # ---------------------------------------- #

    def open(self, port: str, baud: int) -> None:
        if self._ser is not None:
            raise ConnectionLost(f"Transport already open on {self.port}")
        try:
            self._ser = serial.Serial(port, baud, timeout=0, write_timeout=2.0)
        except (serial.SerialException, OSError) as exc:
            raise ConnectionLost(f"Failed to open {port}: {exc}") from exc

        self.port = port
        self.baud = baud
        logger.info("Serial port opened: %s @ %d", port, baud)

    def close(self) -> None:
        ser, self._ser = self._ser, None
        if ser is None:
            return
        try:
            ser.close()
        except (serial.SerialException, OSError) as exc:
            logger.warning("Error closing %s: %s", self.port, exc)
        logger.info("Serial port closed: %s", self.port)

    @property
    def is_open(self) -> bool:
        return self._ser is not None and self._ser.is_open

    # ---------------------------------------- #

    def _lost(self, reason: str) -> None:
        logger.error("Serial link lost on %s: %s", self.port, reason)
        ser, self._ser = self._ser, None
        if ser is not None:
            try:
                ser.close()
            except (serial.SerialException, OSError):
                logger.debug("Close after link loss failed", exc_info=True)
        self.closed.emit(reason)

    # ---------------------------------------- #

    def write(self, data: bytes) -> None:
        if self._ser is None:
            raise ConnectionLost("Transport not open")
        try:
            self._ser.write(data)
            self._ser.flush()
        except (serial.SerialException, OSError) as exc:
            self._lost(str(exc))
            raise ConnectionLost(f"Write failed: {exc}") from exc

    def pump(self) -> int:
        if self._ser is None:
            return 0
        try:
            waiting = self._ser.in_waiting
            # timeout=0: read() returns at once with whatever is buffered
            chunk = self._ser.read(waiting or self._read_chunk)
        except (serial.SerialException, OSError) as exc:
            self._lost(str(exc))
            return 0

        if not chunk:
            return 0
        self.data_received.emit(bytes(chunk))
        return len(chunk)
