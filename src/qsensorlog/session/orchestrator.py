from __future__ import annotations

import enum
import logging
import shutil
import uuid
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any, Callable, TypeVar

from PySide6 import QtCore

from qsensorlog.errors import CompanionError, OrchestrationPartialFailure, QSensorError
from qsensorlog.record.recorder import LocalRecorder, StopResult
from qsensorlog.remote.companion import CompanionRecorder
from qsensorlog.sync.clock_offset import ClockOffsetMeasurement, ClockOffsetService
from qsensorlog.sync.metadata import (
    LEG_INWATER,
    LEG_SURFACE,
    SensorLegInfo,
    SyncMetadata,
    UnifiedSession,
    build_unified_root,
    leg_directory_name,
    write_sync_metadata,
)
from qsensorlog.telemetry.controller import InstrumentController
from qsensorlog.telemetry.events import ReadingChannel
from qsensorlog.telemetry.types import ConnectionState
from qsensorlog.util.time import session_timestamp, unix_from_iso, utc_now_iso

logger = logging.getLogger(__name__)

NETWORK_PUMP_INTERVAL_S = 0.02

T = TypeVar("T")


class SessionStatus(str, enum.Enum):
    IDLE = "idle"
    ARMED = "armed"
    RECORDING = "recording"


@dataclass(frozen=True)
class StartParams:
    mission: str
    rate_hz: float = 500
    roll_interval_s: float = 60
    poll_hz: float | None = None


@dataclass(frozen=True)
class OrchestrationResult:
    success: bool
    errors: list[str] = field(default_factory=list)
    session: UnifiedSession | None = None
    leg_errors: dict[str, str] = field(default_factory=dict)

    def raise_for_errors(self) -> None:
        if not self.success:
            raise OrchestrationPartialFailure("; ".join(self.errors), self.leg_errors)


# ---------------------------------------- #


class SessionOrchestrator(QtCore.QObject):
    """
    Runs the surface and in-water legs as one unified session.

    The surface leg is the local instrument controller feeding a
    LocalRecorder session; the in-water leg is the companion recorder. Both
    live under {root}/{mission}/session_{timestamp}/ with a shared
    sync_metadata.json. Leg failures are returned as result objects and
    never raised out of start_both()/stop_both().
    """

    status_changed = QtCore.Signal(object)
    warning = QtCore.Signal(str)

    def __init__(
        self,
        controller: InstrumentController,
        recorder: LocalRecorder,
        companion: CompanionRecorder,
        storage_root: Path,
        clock_service: ClockOffsetService | None = None,
        parent=None,
    ) -> None:
        super().__init__(parent)
        self.controller = controller
        self.recorder = recorder
        self.companion = companion
        self.storage_root = Path(storage_root)
        self.clock_service = clock_service or ClockOffsetService()

        self._status = SessionStatus.IDLE
        self._session: UnifiedSession | None = None
        self._metadata: SyncMetadata | None = None
        self._channel: ReadingChannel | None = None

    # ---------------------------------------- #

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def current_session(self) -> UnifiedSession | None:
        return self._session

    def get_snapshot(self) -> dict[str, Any]:
        snapshot: dict[str, Any] = {
            "status": self._status.value,
            "session": None,
            "surface": None,
            "controller": self.controller.get_health(),
        }
        session = self._session
        if session is not None:
            snapshot["session"] = {
                "name": session.session_name,
                "mission": session.mission_name,
                "root": str(session.root_path),
                "sync_id": session.sync_id,
                "legs": dict(session.leg_session_ids),
            }
            surface_id = session.leg_session_ids.get(LEG_SURFACE)
            if surface_id and surface_id in self.recorder.registry:
                snapshot["surface"] = self.recorder.get_stats(surface_id)
        return snapshot

    def _set_status(self, status: SessionStatus) -> None:
        if status != self._status:
            logger.info("Session status %s -> %s", self._status.value, status.value)
            self._status = status
            self.status_changed.emit(status)

    def _off_thread(self, fn: Callable[..., T], *args: Any) -> T:
        """
        Run a network call on a worker thread and return its result.

        The surface transport keeps being pumped and Qt events keep being
        processed while the call is in flight, so serial lines are read and
        timestamped as they arrive and recorder flush timers keep firing.
        Exceptions raised by fn are re-raised here.
        """
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="qsensorlog-net") as executor:
            future = executor.submit(fn, *args)
            while True:
                done, _ = wait([future], timeout=NETWORK_PUMP_INTERVAL_S)
                self.controller.poll_transport()
                QtCore.QCoreApplication.processEvents()
                if done:
                    return future.result()

    # ---------------------------------------- #
    #  Start                                   #
    # ---------------------------------------- #

    def start_both(self, params: StartParams) -> OrchestrationResult:
        if self._status != SessionStatus.IDLE:
            return OrchestrationResult(False, [f"Cannot start: session is {self._status.value}"])
        if self.controller.state != ConnectionState.CONFIG_MENU:
            return OrchestrationResult(
                False,
                [f"Surface: instrument not ready (state: {self.controller.state.value})"],
                leg_errors={LEG_SURFACE: "instrument not ready"},
            )

        stamp = session_timestamp()
        root = build_unified_root(self.storage_root, params.mission, stamp)
        suffix = 1
        while root.exists():
            suffix += 1
            root = build_unified_root(self.storage_root, params.mission, f"{stamp}_{suffix}")
        try:
            root.mkdir(parents=True, exist_ok=False)
        except OSError as exc:
            return OrchestrationResult(False, [f"Cannot create session directory {root}: {exc}"])

        session = UnifiedSession(
            session_name=root.name,
            mission_name=params.mission,
            root_path=root,
            sync_id=str(uuid.uuid4()),
        )
        self._session = session
        self._set_status(SessionStatus.ARMED)
        logger.info("Starting unified session %s", root)

        try:
            surface_id = self._start_surface(session, params)
        except QSensorError as exc:
            self._discard(session)
            msg = f"Surface: {exc}"
            logger.error("%s", msg)
            return OrchestrationResult(False, [msg], leg_errors={LEG_SURFACE: str(exc)})

        try:
            remote = self._off_thread(
                self.companion.start, params.mission, params.rate_hz, params.roll_interval_s
            )
        except CompanionError as exc:
            errors = [f"In-water: {exc}"]
            logger.error("In-water leg failed, rolling back surface leg: %s", exc)
            errors.extend(self._teardown_surface(surface_id))
            self._discard(session)
            return OrchestrationResult(False, errors, leg_errors={LEG_INWATER: str(exc)})

        session.leg_session_ids[LEG_INWATER] = remote.session_id

        offset = self._off_thread(self.clock_service.measure_offset, self.companion.base_url)
        metadata = self._initial_metadata(session, surface_id, remote.session_id, remote.started_at, offset)
        self._metadata = metadata

        try:
            write_sync_metadata(root, metadata)
        except OSError as exc:
            warning = f"Could not write sync metadata: {exc}"
            logger.error("%s", warning)
            metadata.warnings.append(warning)
            self.warning.emit(warning)

        self._set_status(SessionStatus.RECORDING)
        logger.info("Both legs recording (surface %s, in-water %s)", surface_id, remote.session_id)
        return OrchestrationResult(True, [], session)

    def _start_surface(self, session: UnifiedSession, params: StartParams) -> str:
        surface_id = str(uuid.uuid4())
        leg_dir = session.root_path / leg_directory_name(LEG_SURFACE, surface_id)

        handle = self.recorder.start_session(
            sensor_id=self.controller.sensor_id,
            mission=params.mission,
            rate_hz=params.rate_hz,
            roll_interval_s=params.roll_interval_s,
            session_dir=leg_dir,
            sync_id=session.sync_id,
            session_id=surface_id,
        )
        session.leg_session_ids[LEG_SURFACE] = handle.session_id

        self._channel = self.controller.subscribe(sink=partial(self.recorder.add_reading, surface_id))
        try:
            self.controller.start_acquisition(poll_hz=params.poll_hz or 1.0)
        except QSensorError:
            self._unsubscribe()
            self.recorder.abort_session(surface_id)
            raise
        return surface_id

    def _teardown_surface(self, surface_id: str) -> list[str]:
        errors: list[str] = []
        try:
            self.controller.stop()
        except QSensorError as exc:
            logger.error("Rollback: surface stop failed: %s", exc)
            errors.append(f"Rollback surface: {exc}")
        self._unsubscribe()
        self.recorder.abort_session(surface_id)
        return errors

    def _discard(self, session: UnifiedSession) -> None:
        try:
            shutil.rmtree(session.root_path)
        except OSError as exc:
            logger.error("Could not remove %s: %s", session.root_path, exc)
        self._session = None
        self._metadata = None
        self._set_status(SessionStatus.IDLE)

    def _unsubscribe(self) -> None:
        if self._channel is not None:
            self.controller.unsubscribe(self._channel)
            self._channel = None

    def _initial_metadata(
        self,
        session: UnifiedSession,
        surface_id: str,
        inwater_id: str,
        inwater_started: str,
        offset: ClockOffsetMeasurement,
    ) -> SyncMetadata:
        surface_stats = self.recorder.get_stats(surface_id)
        metadata = SyncMetadata(
            session_name=session.session_name,
            mission_name=session.mission_name,
            sync_id=session.sync_id,
            recording_started=utc_now_iso(),
        )
        metadata.sensors[LEG_SURFACE] = SensorLegInfo(
            session_id=surface_id,
            directory=leg_directory_name(LEG_SURFACE, surface_id),
            clock_source="local",
            estimated_offset_ms=0.0,
            offset_uncertainty_ms=0.0,
            offset_measurement_method="local",
            started_at=surface_stats.started_at,
        )
        metadata.sensors[LEG_INWATER] = SensorLegInfo(
            session_id=inwater_id,
            directory=leg_directory_name(LEG_INWATER, inwater_id),
            clock_source="companion",
            hostname=self.companion.hostname,
            estimated_offset_ms=offset.offset_ms,
            offset_uncertainty_ms=offset.uncertainty_ms,
            offset_measurement_method=offset.method,
            started_at=inwater_started,
        )
        metadata.clock_sync.initial_offset_ms = offset.offset_ms
        metadata.clock_sync.add(offset)
        if not offset.ok:
            metadata.warnings.append(f"Initial clock offset unavailable: {offset.failure_reason}")
        return metadata

    # ---------------------------------------- #
    #  Stop                                    #
    # ---------------------------------------- #

    def stop_both(self) -> OrchestrationResult:
        session = self._session
        if self._status != SessionStatus.RECORDING or session is None:
            return OrchestrationResult(False, [f"Cannot stop: session is {self._status.value}"])

        metadata = self._metadata
        if metadata is None:
            return OrchestrationResult(False, ["Cannot stop: session metadata missing"], session)
        leg_errors: dict[str, str] = {}

        surface_result: StopResult | None = None
        surface_errors: list[str] = []
        surface_id = session.leg_session_ids[LEG_SURFACE]
        try:
            self.controller.stop()
        except QSensorError as exc:
            surface_errors.append(f"instrument stop failed: {exc}")
        self._unsubscribe()
        try:
            surface_result = self.recorder.stop_session(surface_id)
        except QSensorError as exc:
            surface_errors.append(f"recorder stop failed: {exc}")
        if surface_errors:
            leg_errors[LEG_SURFACE] = "; ".join(surface_errors)

        inwater_id = session.leg_session_ids[LEG_INWATER]
        try:
            remote = self._off_thread(self.companion.stop, inwater_id)
        except CompanionError as exc:
            leg_errors[LEG_INWATER] = str(exc)
            remote = None

        stopped = utc_now_iso()
        metadata.recording_stopped = stopped
        if metadata.recording_started:
            metadata.duration_s = round(
                unix_from_iso(stopped) - unix_from_iso(metadata.recording_started), 3
            )

        surface = metadata.sensors[LEG_SURFACE]
        if surface_result is not None:
            surface.stopped_at = surface_result.stopped_at
            surface.rows = surface_result.total_rows
            surface.chunks = surface_result.chunks
            for name in surface_result.abandoned_chunks:
                metadata.warnings.append(f"Surface chunk abandoned: {name}")

        inwater = metadata.sensors[LEG_INWATER]
        if remote is not None:
            inwater.stopped_at = remote.stopped_at or stopped
            inwater.rows = remote.rows
            inwater.chunks = remote.chunks

        offset = self._off_thread(self.clock_service.measure_offset, self.companion.base_url)
        metadata.clock_sync.final_offset_ms = offset.offset_ms
        metadata.clock_sync.add(offset)
        metadata.clock_sync.update_drift()
        if not offset.ok:
            metadata.warnings.append(f"Final clock offset unavailable: {offset.failure_reason}")

        errors = [f"{leg}: {msg}" for leg, msg in leg_errors.items()]
        for msg in errors:
            logger.warning("Stop: %s", msg)
            metadata.warnings.append(msg)
            self.warning.emit(msg)

        try:
            write_sync_metadata(session.root_path, metadata)
        except OSError as exc:
            errors.append(f"Could not write sync metadata: {exc}")
            logger.error("%s", errors[-1])

        self._session = None
        self._metadata = None
        self._set_status(SessionStatus.IDLE)

        if errors:
            logger.warning("Unified session %s stopped with errors", session.session_name)
        else:
            logger.info("Unified session %s stopped", session.session_name)
        return OrchestrationResult(not errors, errors, session, leg_errors)
