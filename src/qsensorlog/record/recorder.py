from __future__ import annotations

import csv
import io
import logging
import os
import shutil
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Callable

from PySide6 import QtCore

from qsensorlog.errors import (
    FinalizationFailure,
    RecorderIOFailure,
    SessionNotFound,
)
from qsensorlog.record.manifest import ChunkMetadata, Manifest, chunk_name, sha256_file
from qsensorlog.telemetry.types import CSV_HEADER, Reading
from qsensorlog.util.time import utc_now_iso

logger = logging.getLogger(__name__)

FLUSH_INTERVAL_MS = 200
DEFAULT_ROLL_INTERVAL_S = 60.0
TARGET_CHUNK_BYTES = 8 * 1024 * 1024
SESSION_CSV = "session.csv"

_HEADER_LINE = ",".join(CSV_HEADER) + "\n"


@dataclass(frozen=True)
class SessionHandle:
    session_id: str
    started_at: str
    path: Path
    sync_id: str | None = None


@dataclass(frozen=True)
class StopResult:
    session_id: str
    started_at: str
    stopped_at: str
    total_rows: int
    chunks: int
    total_bytes: int
    session_csv: Path
    session_checksum: str
    abandoned_chunks: tuple[str, ...] = ()


@dataclass(frozen=True)
class RecorderStats:
    total_rows: int
    queued_rows: int
    bytes_flushed: int
    current_chunk_index: int
    started_at: str


# ---------------------------------------- #


@dataclass
class RecordingSession:
    session_id: str
    sensor_id: str
    mission: str
    rate_hz: float
    roll_interval_s: float
    path: Path
    manifest: Manifest
    timer: QtCore.QTimer
    sync_id: str | None = None

    queue: deque[Reading] = field(default_factory=deque)
    chunk_index: int = 0
    chunk_rows: int = 0
    chunk_bytes: int = 0
    chunk_opened_at: float | None = None
    finalize_pending: bool = False
    stopping: bool = False

    @property
    def started_at(self) -> str:
        return self.manifest.started_at

    @property
    def chunk_tmp_path(self) -> Path:
        return self.path / (chunk_name(self.chunk_index) + ".tmp")

    @property
    def chunk_path(self) -> Path:
        return self.path / chunk_name(self.chunk_index)


class SessionRegistry:
    """Active recording sessions keyed by session id."""

    def __init__(self) -> None:
        self._sessions: dict[str, RecordingSession] = {}

    def add(self, session: RecordingSession) -> None:
        self._sessions[session.session_id] = session

    def get(self, session_id: str) -> RecordingSession | None:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> RecordingSession | None:
        return self._sessions.pop(session_id, None)

    def ids(self) -> list[str]:
        return list(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


# ---------------------------------------- #


def _sync_marker_value(sync_id: str) -> float:
    try:
        return float(int(sync_id.replace("-", "")[:8], 16))
    except ValueError:
        return 0.0


def _render_rows(readings: list[Reading]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    for r in readings:
        writer.writerow(r.to_row())
    return buf.getvalue()


# ---------------------------------------- #


class LocalRecorder(QtCore.QObject):
    """
    Writes readings of one or more sessions into integrity-checked CSV chunks.

    Readings are only queued by add_reading(); a per-session QTimer drains the
    queue every 200 ms into chunk_NNNNN.csv.tmp. A chunk is renamed to its
    final name, hashed and listed in manifest.json when it is old or large
    enough, and at stop all listed chunks are combined into session.csv.
    """

    session_started = QtCore.Signal(object)
    session_stopped = QtCore.Signal(object)
    error = QtCore.Signal(str)

    def __init__(
        self,
        root: Path | None = None,
        clock: Callable[[], float] = time.monotonic,
        flush_interval_ms: int = FLUSH_INTERVAL_MS,
        target_chunk_bytes: int = TARGET_CHUNK_BYTES,
        parent=None,
    ) -> None:
        super().__init__(parent)
        self.root = root
        self._clock = clock
        self._flush_interval_ms = flush_interval_ms
        self._target_chunk_bytes = target_chunk_bytes

        self.registry = SessionRegistry()
        self._stopped: dict[str, StopResult] = {}

    # ---------------------------------------- #
    #  Session lifecycle                       #
    # ---------------------------------------- #

    def start_session(
        self,
        sensor_id: str,
        mission: str,
        rate_hz: float = 500.0,
        roll_interval_s: float = DEFAULT_ROLL_INTERVAL_S,
        root: Path | None = None,
        session_dir: Path | None = None,
        sync_id: str | None = None,
        session_id: str | None = None,
    ) -> SessionHandle:
        session_id = session_id or str(uuid.uuid4())
        if session_id in self.registry or session_id in self._stopped:
            raise ValueError(f"Session id already used: {session_id}")

        if session_dir is None:
            base = root if root is not None else self.root
            if base is None:
                raise RecorderIOFailure("No storage root configured for recording")
            session_dir = Path(base) / mission / session_id

        try:
            session_dir.mkdir(parents=True, exist_ok=True)
            manifest = Manifest(
                session_id=session_id,
                sensor_id=sensor_id,
                mission=mission,
                started_at=utc_now_iso(),
            )
            manifest.save(session_dir)
        except OSError as exc:
            raise RecorderIOFailure(f"Cannot create session directory {session_dir}: {exc}") from exc

        timer = QtCore.QTimer(self)
        timer.setInterval(self._flush_interval_ms)
        timer.timeout.connect(partial(self.flush, session_id))

        session = RecordingSession(
            session_id=session_id,
            sensor_id=sensor_id,
            mission=mission,
            rate_hz=rate_hz,
            roll_interval_s=float(roll_interval_s),
            path=session_dir,
            manifest=manifest,
            timer=timer,
            sync_id=sync_id,
        )
        if sync_id:
            session.queue.append(self._marker(session, "SYNC_START"))

        self.registry.add(session)
        timer.start()

        handle = SessionHandle(
            session_id=session_id,
            started_at=manifest.started_at,
            path=session_dir,
            sync_id=sync_id,
        )
        logger.info("Recording session %s started in %s", session_id, session_dir)
        self.session_started.emit(handle)
        return handle

    def add_reading(self, session_id: str, reading: Reading) -> None:
        session = self.registry.get(session_id)
        if session is None:
            logger.warning("Reading for unknown session %s dropped", session_id)
            return
        session.queue.append(reading)

    def stop_session(self, session_id: str) -> StopResult:
        if session_id in self._stopped:
            return self._stopped[session_id]

        session = self._require(session_id)
        session.timer.stop()
        logger.info("Stopping recording session %s", session_id)

        if session.sync_id and not session.stopping:
            session.queue.append(self._marker(session, "SYNC_STOP"))
        session.stopping = True

        if session.finalize_pending:
            self._finalize_chunk(session)

        if not self._append_queued(session) and not self._append_queued(session):
            raise RecorderIOFailure(
                f"Session {session_id}: {len(session.queue)} queued rows could not be written"
            )

        if session.chunk_rows:
            # Stop retries finalization immediately instead of waiting for a tick.
            if not self._finalize_chunk(session):
                self._finalize_chunk(session)

        manifest = session.manifest
        manifest.stopped_at = utc_now_iso()

        try:
            session_csv, data_rows = self._combine_chunks(session)
        except OSError as exc:
            raise FinalizationFailure(f"Cannot write {SESSION_CSV}: {exc}") from exc

        if data_rows != manifest.total_rows or not manifest.verify():
            raise FinalizationFailure(
                f"Session {session_id}: {SESSION_CSV} has {data_rows} rows, "
                f"manifest reports {manifest.total_rows}"
            )

        try:
            manifest.session_checksum = sha256_file(session_csv)
            manifest.save(session.path)
        except OSError as exc:
            raise FinalizationFailure(f"Cannot finalize manifest: {exc}") from exc

        self._delete_chunk_files(session)
        self.registry.remove(session_id)
        session.timer.deleteLater()

        result = StopResult(
            session_id=session_id,
            started_at=manifest.started_at,
            stopped_at=manifest.stopped_at,
            total_rows=manifest.total_rows,
            chunks=len(manifest.chunks),
            total_bytes=manifest.total_bytes,
            session_csv=session_csv,
            session_checksum=manifest.session_checksum,
            abandoned_chunks=tuple(manifest.abandoned_chunks),
        )
        self._stopped[session_id] = result
        logger.info(
            "Recording session %s stopped: %d rows in %d chunks",
            session_id,
            result.total_rows,
            result.chunks,
        )
        self.session_stopped.emit(result)
        return result

    def abort_session(self, session_id: str) -> None:
        session = self.registry.remove(session_id)
        if session is None:
            logger.debug("Abort for unknown session %s ignored", session_id)
            return

        session.timer.stop()
        session.queue.clear()
        session.timer.deleteLater()
        logger.warning("Recording session %s aborted, removing %s", session_id, session.path)
        try:
            shutil.rmtree(session.path)
        except FileNotFoundError:
            logger.debug("Session directory %s already gone", session.path)
        except OSError as exc:
            logger.error("Failed to remove %s: %s", session.path, exc)
            self.error.emit(f"Failed to remove {session.path}: {exc}")

    def get_stats(self, session_id: str) -> RecorderStats:
        session = self._require(session_id)
        return RecorderStats(
            total_rows=session.manifest.total_rows + session.chunk_rows,
            queued_rows=len(session.queue),
            bytes_flushed=session.manifest.total_bytes + session.chunk_bytes,
            current_chunk_index=session.chunk_index,
            started_at=session.started_at,
        )

    def get_manifest(self, session_id: str) -> Manifest:
        return self._require(session_id).manifest

    # ---------------------------------------- #
    #  Flushing                                #
    # ---------------------------------------- #

    def flush(self, session_id: str) -> None:
        session = self.registry.get(session_id)
        if session is None:
            return

        if session.finalize_pending and not self._finalize_chunk(session):
            return

        self._append_queued(session)

        if session.chunk_rows and self._chunk_due(session):
            self._finalize_chunk(session)

    def _chunk_due(self, session: RecordingSession) -> bool:
        if session.chunk_bytes >= self._target_chunk_bytes:
            return True
        if session.chunk_opened_at is None:
            return False
        return self._clock() - session.chunk_opened_at >= session.roll_interval_s

    def _append_queued(self, session: RecordingSession) -> bool:
        if not session.queue:
            return True

        batch = list(session.queue)
        text = _render_rows(batch)
        # A chunk is open once its header has been written successfully.
        new_chunk = session.chunk_opened_at is None
        if new_chunk:
            text = _HEADER_LINE + text

        try:
            written = self._write_rows(session.chunk_tmp_path, text, session.chunk_bytes)
        except OSError as exc:
            failure = RecorderIOFailure(f"Append to {session.chunk_tmp_path.name} failed: {exc}")
            logger.error("%s; %d rows stay queued", failure, len(session.queue))
            self.error.emit(str(failure))
            return False

        for _ in batch:
            session.queue.popleft()
        if new_chunk:
            session.chunk_opened_at = self._clock()
        session.chunk_rows += len(batch)
        session.chunk_bytes += written
        return True

    def _write_rows(self, path: Path, text: str, offset: int) -> int:
        """
        Append text at offset, the size of everything written successfully so
        far. Bytes left behind by an earlier failed append are cut off first,
        so a retried batch is never duplicated or written after a partial row.
        """
        data = text.encode("utf-8")
        with open(path, "a+b") as f:
            f.truncate(offset)
            f.write(data)
            f.flush()
        return len(data)

    def _finalize_chunk(self, session: RecordingSession) -> bool:
        index = session.chunk_index
        tmp, final = session.chunk_tmp_path, session.chunk_path

        try:
            if tmp.exists():
                os.replace(tmp, final)
            checksum = sha256_file(final)
            size = final.stat().st_size
        except OSError as exc:
            if not session.finalize_pending:
                logger.warning("Finalizing %s failed, retrying: %s", tmp.name, exc)
                session.finalize_pending = True
                return False

            failure = FinalizationFailure(f"Chunk {tmp.name} abandoned after retry: {exc}")
            logger.error("%s", failure)
            self.error.emit(str(failure))
            session.manifest.abandon_chunk(index)
            self._save_manifest(session)
            self._next_chunk(session)
            return False

        chunk = ChunkMetadata(
            index=index,
            name=final.name,
            rows=session.chunk_rows,
            checksum=checksum,
            size_bytes=size,
            timestamp=utc_now_iso(),
        )
        session.manifest.add_chunk(chunk)
        self._save_manifest(session)
        logger.info(
            "Finalized %s: %d rows, %d bytes, sha256 %s", final.name, chunk.rows, size, checksum[:16]
        )
        self._next_chunk(session)
        return True

    def _next_chunk(self, session: RecordingSession) -> None:
        session.chunk_index = session.manifest.next_chunk_index
        session.chunk_rows = 0
        session.chunk_bytes = 0
        session.chunk_opened_at = None
        session.finalize_pending = False

    def _save_manifest(self, session: RecordingSession) -> None:
        try:
            session.manifest.save(session.path)
        except OSError as exc:
            # In-memory manifest stays authoritative; the next save rewrites it.
            logger.error("Manifest write failed for %s: %s", session.session_id, exc)
            self.error.emit(f"Manifest write failed: {exc}")

    # ---------------------------------------- #
    #  Finalization                            #
    # ---------------------------------------- #

    def _combine_chunks(self, session: RecordingSession) -> tuple[Path, int]:
        out = session.path / SESSION_CSV
        tmp = out.with_name(SESSION_CSV + ".tmp")

        data_rows = 0
        with open(tmp, "w", encoding="utf-8", newline="") as dst:
            dst.write(_HEADER_LINE)
            for chunk in session.manifest.chunks:
                with open(session.path / chunk.name, "r", encoding="utf-8", newline="") as src:
                    next(src, None)
                    for line in src:
                        if not line.strip():
                            continue
                        dst.write(line if line.endswith("\n") else line + "\n")
                        data_rows += 1
        os.replace(tmp, out)
        return out, data_rows

    def _delete_chunk_files(self, session: RecordingSession) -> None:
        for chunk in session.manifest.chunks:
            path = session.path / chunk.name
            try:
                path.unlink()
            except OSError as exc:
                logger.warning("Could not delete %s: %s", path, exc)

    # ---------------------------------------- #

    def _require(self, session_id: str) -> RecordingSession:
        session = self.registry.get(session_id)
        if session is None:
            raise SessionNotFound(f"Session not found: {session_id}")
        return session

    def _marker(self, session: RecordingSession, kind: str) -> Reading:
        return Reading(
            value=_sync_marker_value(session.sync_id or ""),
            timestamp_wall=utc_now_iso(),
            timestamp_monotonic_ns=time.monotonic_ns(),
            sensor_id=session.sensor_id,
            mode=kind,
            temp_c=0.0,
            vin=0.0,
        )
