from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from qsensorlog.record.manifest import write_json_atomic
from qsensorlog.sync.clock_offset import ClockOffsetMeasurement
from qsensorlog.util.time import session_timestamp

logger = logging.getLogger(__name__)

SYNC_METADATA_FILENAME = "sync_metadata.json"
METADATA_VERSION = 1

LEG_SURFACE = "surface"
LEG_INWATER = "inwater"
LEGS = (LEG_SURFACE, LEG_INWATER)


def build_unified_root(storage_root: Path, mission: str, timestamp: str | None = None) -> Path:
    """{root}/{mission}/session_{timestamp}"""
    return Path(storage_root) / mission / f"session_{timestamp or session_timestamp()}"


def leg_directory_name(leg: str, session_id: str) -> str:
    if leg not in LEGS:
        raise ValueError(f"Unknown leg {leg!r}")
    return f"{leg}_{session_id}"


# ---------------------------------------- #


@dataclass
class UnifiedSession:
    session_name: str
    mission_name: str
    root_path: Path
    sync_id: str
    leg_session_ids: dict[str, str] = field(default_factory=dict)


@dataclass
class SensorLegInfo:
    session_id: str | None = None
    directory: str | None = None
    clock_source: str = "local"
    hostname: str | None = None
    estimated_offset_ms: float | None = None
    offset_uncertainty_ms: float | None = None
    offset_measurement_method: str | None = None
    started_at: str | None = None
    stopped_at: str | None = None
    rows: int | None = None
    chunks: int | None = None


@dataclass
class ClockSyncInfo:
    initial_offset_ms: float | None = None
    final_offset_ms: float | None = None
    drift_ms: float | None = None
    measurements: list[dict[str, Any]] = field(default_factory=list)

    def add(self, measurement: ClockOffsetMeasurement) -> None:
        self.measurements.append(measurement.to_dict())

    def update_drift(self) -> None:
        if self.initial_offset_ms is not None and self.final_offset_ms is not None:
            self.drift_ms = self.final_offset_ms - self.initial_offset_ms
        else:
            self.drift_ms = None


@dataclass
class SyncMetadata:
    """Contents of sync_metadata.json at the root of a dual-leg session."""

    session_name: str
    mission_name: str
    sync_id: str
    metadata_version: int = METADATA_VERSION
    recording_started: str | None = None
    recording_stopped: str | None = None
    duration_s: float | None = None
    sensors: dict[str, SensorLegInfo] = field(
        default_factory=lambda: {leg: SensorLegInfo() for leg in LEGS}
    )
    clock_sync: ClockSyncInfo = field(default_factory=ClockSyncInfo)
    warnings: list[str] = field(default_factory=list)

    # ---------------------------------------- #

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncMetadata:
        sensors = {
            leg: SensorLegInfo(**(data.get("sensors", {}).get(leg) or {})) for leg in LEGS
        }
        return cls(
            session_name=str(data["session_name"]),
            mission_name=str(data["mission_name"]),
            sync_id=str(data["sync_id"]),
            metadata_version=int(data.get("metadata_version", METADATA_VERSION)),
            recording_started=data.get("recording_started"),
            recording_stopped=data.get("recording_stopped"),
            duration_s=data.get("duration_s"),
            sensors=sensors,
            clock_sync=ClockSyncInfo(**(data.get("clock_sync") or {})),
            warnings=list(data.get("warnings", [])),
        )


def write_sync_metadata(root: Path, metadata: SyncMetadata) -> Path:
    path = Path(root) / SYNC_METADATA_FILENAME
    write_json_atomic(path, metadata.to_dict())
    logger.debug("Wrote %s", path)
    return path


def read_sync_metadata(root: Path) -> SyncMetadata | None:
    path = Path(root) / SYNC_METADATA_FILENAME
    try:
        with open(path, "r", encoding="utf-8") as f:
            return SyncMetadata.from_dict(json.load(f))
    except FileNotFoundError:
        return None
