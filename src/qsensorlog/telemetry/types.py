from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Literal

Mode = Literal["freerun", "polled"]

CSV_HEADER = ("timestamp", "sensor_id", "mode", "value", "TempC", "Vin")


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONFIG_MENU = "config_menu"
    ACQ_FREERUN = "acq_freerun"
    ACQ_POLLED = "acq_polled"
    PAUSED = "paused"
    STOPPING = "stopping"

    @property
    def is_acquiring(self) -> bool:
        return self in (ConnectionState.ACQ_FREERUN, ConnectionState.ACQ_POLLED)

    @property
    def is_connected(self) -> bool:
        return self not in (ConnectionState.DISCONNECTED, ConnectionState.CONNECTING)


# ---------------------------------------- #


@dataclass(frozen=True)
class FrameData:
    """Numeric fields of one data line. temp_c and vin are independently optional."""

    value: float
    temp_c: float | None = None
    vin: float | None = None


@dataclass(frozen=True)
class Reading:
    """
    One timestamped instrument reading.

    timestamp_wall is UTC ISO-8601; timestamp_monotonic_ns comes from
    time.monotonic_ns() and is only meaningful within one process.
    """

    value: float
    timestamp_wall: str
    timestamp_monotonic_ns: int
    sensor_id: str
    mode: str
    temp_c: float | None = None
    vin: float | None = None

    def to_row(self) -> list[str]:
        return [
            self.timestamp_wall,
            self.sensor_id,
            self.mode,
            repr(self.value),
            "" if self.temp_c is None else repr(self.temp_c),
            "" if self.vin is None else repr(self.vin),
        ]


# ---------------------------------------- #


@dataclass
class InstrumentConfig:
    averaging: int = 12
    adc_rate_hz: int = 125
    calfactor: float = 1.0
    firmware_version: str = "unknown"
    serial_number: str = "unknown"
    mode: Mode = "freerun"
    tag: str | None = None
    description: str = ""
    baud: int = 9600

    @property
    def sample_period_s(self) -> float:
        return self.averaging / float(self.adc_rate_hz or 1)


@dataclass(frozen=True)
class HealthSnapshot:
    state: ConnectionState
    sensor_id: str
    firmware_version: str | None
    config: InstrumentConfig | None
    line_buffer_bytes: int
    seconds_since_reading: float | None
    readings_total: int
    last_temp_c: float | None = None
    last_vin: float | None = None
    missed_polls: int = 0
    extra: dict[str, str] = field(default_factory=dict)
