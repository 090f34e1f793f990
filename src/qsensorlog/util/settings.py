from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_NAME = "qsensorlog.toml"


@dataclass(frozen=True)
class SurfaceSettings:
    port: str | None = None
    baud: int = 9600
    poll_hz: float | None = None


@dataclass(frozen=True)
class InWaterSettings:
    api_url: str = "http://blueos.local:9150"


@dataclass(frozen=True)
class RecordingSettings:
    storage_path: Path = Path("recordings")
    mission: str = "default"
    rate_hz: float = 500
    roll_interval_s: float = 60


@dataclass(frozen=True)
class Settings:
    surface: SurfaceSettings = field(default_factory=SurfaceSettings)
    inwater: InWaterSettings = field(default_factory=InWaterSettings)
    recording: RecordingSettings = field(default_factory=RecordingSettings)
    log_level: str = "INFO"


# ---------------------------------------- #


def _table(data: Any, name: str) -> dict[str, Any]:
    table = data.get(name) if isinstance(data, dict) else None
    return table if isinstance(table, dict) else {}


def _get(table: dict[str, Any], key: str, kind: type | tuple[type, ...], default: Any) -> Any:
    value = table.get(key)
    # bool is an int subclass; never accept it for numeric keys.
    if value is None or isinstance(value, bool) or not isinstance(value, kind):
        return default
    return value


# ---------------------------------------- #


def load_settings(path: Path | None = None) -> Settings:
    if path is None:
        path = Path.cwd() / DEFAULT_CONFIG_NAME

    try:
        data: Any = tomllib.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return Settings()

    surface = _table(data, "surface")
    inwater = _table(data, "inwater")
    recording = _table(data, "recording")
    logging_ = _table(data, "logging")

    poll_hz = _get(surface, "poll_hz", (int, float), None)
    storage = _get(recording, "storage_path", str, None)

    level = _get(logging_, "level", str, "INFO").upper()

    return Settings(
        surface=SurfaceSettings(
            port=_get(surface, "port", str, None),
            baud=_get(surface, "baud", int, 9600),
            poll_hz=float(poll_hz) if poll_hz is not None else None,
        ),
        inwater=InWaterSettings(
            api_url=_get(inwater, "api_url", str, InWaterSettings.api_url),
        ),
        recording=RecordingSettings(
            storage_path=Path(storage).expanduser() if storage else RecordingSettings.storage_path,
            mission=_get(recording, "mission", str, RecordingSettings.mission),
            rate_hz=float(_get(recording, "rate_hz", (int, float), RecordingSettings.rate_hz)),
            roll_interval_s=float(
                _get(recording, "roll_interval_s", (int, float), RecordingSettings.roll_interval_s)
            ),
        ),
        log_level=level,
    )
