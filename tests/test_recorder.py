"""
Tests for LocalRecorder chunking, finalization and failure handling.
"""

import errno
import os

import pytest

from qsensorlog.errors import SessionNotFound
from qsensorlog.record import recorder as recorder_module
from qsensorlog.record.manifest import Manifest, sha256_file
from qsensorlog.record.recorder import LocalRecorder
from qsensorlog.telemetry.types import Reading

HEADER = "timestamp,sensor_id,mode,value,TempC,Vin"


def make_reading(value: float, temp_c: float | None = 21.0, vin: float | None = None) -> Reading:
    return Reading(
        value=value,
        timestamp_wall="2025-01-01T00:00:00+00:00",
        timestamp_monotonic_ns=1,
        sensor_id="50123",
        mode="freerun",
        temp_c=temp_c,
        vin=vin,
    )


def read_lines(path):
    return path.read_text(encoding="utf-8").splitlines()


@pytest.fixture
def recorder(tmp_path, clock):
    return LocalRecorder(root=tmp_path, clock=clock)


@pytest.fixture
def session(recorder):
    return recorder.start_session("50123", "mission1", roll_interval_s=60)


class TestSessionLayout:

    def test_start_creates_directory_and_manifest(self, recorder, session, tmp_path):
        assert session.path == tmp_path / "mission1" / session.session_id
        manifest = Manifest.load(session.path)
        assert manifest.session_id == session.session_id
        assert manifest.sensor_id == "50123"
        assert manifest.chunks == []
        assert manifest.schema_version == 1
        assert session.session_id in recorder.registry

    def test_explicit_session_dir(self, recorder, tmp_path):
        target = tmp_path / "unified" / "surface_x"
        handle = recorder.start_session("50123", "m", session_dir=target)
        assert handle.path == target
        assert (target / "manifest.json").exists()


class TestFlushing:

    def test_flush_writes_tmp_chunk_only(self, recorder, session):
        for v in (1.0, 2.0, 3.0):
            recorder.add_reading(session.session_id, make_reading(v))
        recorder.flush(session.session_id)

        tmp = session.path / "chunk_00000.csv.tmp"
        lines = read_lines(tmp)
        assert lines[0] == HEADER
        assert len(lines) == 4
        assert lines[1].split(",")[3] == "1.0"
        assert not (session.path / "chunk_00000.csv").exists()

        stats = recorder.get_stats(session.session_id)
        assert stats.total_rows == 3
        assert stats.queued_rows == 0
        assert Manifest.load(session.path).chunks == []

    def test_missing_optionals_are_empty(self, recorder, session):
        recorder.add_reading(session.session_id, make_reading(5.0, temp_c=None, vin=None))
        recorder.flush(session.session_id)
        row = read_lines(session.path / "chunk_00000.csv.tmp")[1]
        assert row.endswith(",freerun,5.0,,")

    def test_roll_interval_finalizes_chunk(self, tmp_path, clock):
        recorder = LocalRecorder(root=tmp_path, clock=clock)
        handle = recorder.start_session("50123", "m", roll_interval_s=1.0)

        recorder.add_reading(handle.session_id, make_reading(1.0))
        recorder.flush(handle.session_id)
        clock.advance(1.0)
        recorder.add_reading(handle.session_id, make_reading(2.0))
        recorder.flush(handle.session_id)

        chunk = handle.path / "chunk_00000.csv"
        assert chunk.exists()
        assert not (handle.path / "chunk_00000.csv.tmp").exists()

        manifest = Manifest.load(handle.path)
        assert len(manifest.chunks) == 1
        assert manifest.chunks[0].rows == 2
        assert manifest.chunks[0].checksum == sha256_file(chunk)
        assert manifest.chunks[0].size_bytes == chunk.stat().st_size
        assert manifest.next_chunk_index == 1
        assert manifest.verify()

    def test_size_target_finalizes_chunk(self, tmp_path, clock):
        recorder = LocalRecorder(root=tmp_path, clock=clock, target_chunk_bytes=100)
        handle = recorder.start_session("50123", "m")

        for v in range(5):
            recorder.add_reading(handle.session_id, make_reading(float(v)))
        recorder.flush(handle.session_id)

        assert recorder.get_manifest(handle.session_id).next_chunk_index == 1
        assert recorder.get_stats(handle.session_id).current_chunk_index == 1

    def test_unknown_session_reading_is_ignored(self, recorder):
        recorder.add_reading("nope", make_reading(1.0))
        recorder.flush("nope")
        with pytest.raises(SessionNotFound):
            recorder.get_stats("nope")


class TestStop:

    def test_zero_readings(self, recorder, session):
        result = recorder.stop_session(session.session_id)

        assert result.total_rows == 0
        assert result.chunks == 0
        assert read_lines(session.path / "session.csv") == [HEADER]
        assert not list(session.path.glob("chunk_*"))

        manifest = Manifest.load(session.path)
        assert manifest.chunks == []
        assert manifest.stopped_at is not None
        assert manifest.session_checksum == sha256_file(session.path / "session.csv")
        assert session.session_id not in recorder.registry

    def test_chunks_are_combined_in_order(self, tmp_path, clock):
        recorder = LocalRecorder(root=tmp_path, clock=clock)
        handle = recorder.start_session("50123", "m", roll_interval_s=1.0)

        for v in (1.0, 2.0):
            recorder.add_reading(handle.session_id, make_reading(v))
            recorder.flush(handle.session_id)
            clock.advance(1.0)
            recorder.flush(handle.session_id)
        recorder.add_reading(handle.session_id, make_reading(3.0))

        result = recorder.stop_session(handle.session_id)

        lines = read_lines(handle.path / "session.csv")
        assert lines[0] == HEADER
        assert [line.split(",")[3] for line in lines[1:]] == ["1.0", "2.0", "3.0"]
        assert result.total_rows == 3
        assert result.chunks == 3
        assert result.session_checksum == sha256_file(handle.path / "session.csv")
        assert not list(handle.path.glob("chunk_*"))

        manifest = Manifest.load(handle.path)
        assert [c.name for c in manifest.chunks] == [
            "chunk_00000.csv",
            "chunk_00001.csv",
            "chunk_00002.csv",
        ]
        assert manifest.total_rows == sum(c.rows for c in manifest.chunks)

    def test_many_readings_over_several_rolls(self, tmp_path, clock):
        recorder = LocalRecorder(root=tmp_path, clock=clock)
        handle = recorder.start_session("50123", "m", roll_interval_s=1.0)

        checksums_match = []
        real_delete = recorder._delete_chunk_files

        def verify_then_delete(session):
            for chunk in session.manifest.chunks:
                checksums_match.append(sha256_file(session.path / chunk.name) == chunk.checksum)
            real_delete(session)

        recorder._delete_chunk_files = verify_then_delete

        for batch in range(10):
            for i in range(1000):
                recorder.add_reading(handle.session_id, make_reading(float(batch * 1000 + i)))
            recorder.flush(handle.session_id)
            clock.advance(1.0)

        result = recorder.stop_session(handle.session_id)

        lines = read_lines(handle.path / "session.csv")
        assert lines[0] == HEADER
        assert len(lines) - 1 == 10000
        assert [float(line.split(",")[3]) for line in lines[1:]] == [float(v) for v in range(10000)]

        manifest = Manifest.load(handle.path)
        assert result.total_rows == 10000
        assert result.chunks >= 5
        assert sum(c.rows for c in manifest.chunks) == 10000
        assert len(checksums_match) == len(manifest.chunks)
        assert all(checksums_match)
        assert not list(handle.path.glob("chunk_*"))

    def test_stop_is_idempotent(self, recorder, session):
        recorder.add_reading(session.session_id, make_reading(1.0))
        first = recorder.stop_session(session.session_id)
        before = (session.path / "session.csv").read_bytes()

        second = recorder.stop_session(session.session_id)

        assert second is first
        assert (session.path / "session.csv").read_bytes() == before

    def test_stop_unknown_session(self, recorder):
        with pytest.raises(SessionNotFound):
            recorder.stop_session("nope")

    def test_sync_markers(self, recorder):
        sync_id = "deadbeef-0000-4000-8000-000000000000"
        handle = recorder.start_session("50123", "m", sync_id=sync_id)
        recorder.add_reading(handle.session_id, make_reading(7.0))

        result = recorder.stop_session(handle.session_id)

        rows = [line.split(",") for line in read_lines(handle.path / "session.csv")[1:]]
        assert [r[2] for r in rows] == ["SYNC_START", "freerun", "SYNC_STOP"]
        assert float(rows[0][3]) == float(0xDEADBEEF)
        assert result.total_rows == 3


class TestFailures:

    def test_append_failure_keeps_rows_queued(self, recorder, session):
        real_write = recorder._write_rows
        calls = {"n": 0}

        def flaky(path, text, offset):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OSError("disk full")
            return real_write(path, text, offset)

        recorder._write_rows = flaky
        for v in (1.0, 2.0):
            recorder.add_reading(session.session_id, make_reading(v))

        recorder.flush(session.session_id)
        assert recorder.get_stats(session.session_id).queued_rows == 2

        recorder.flush(session.session_id)
        stats = recorder.get_stats(session.session_id)
        assert stats.queued_rows == 0
        assert stats.total_rows == 2
        assert len(read_lines(session.path / "chunk_00000.csv.tmp")) == 3

    def test_failed_first_append_leaves_no_partial_rows(self, tmp_path, clock):
        recorder = LocalRecorder(root=tmp_path, clock=clock)
        handle = recorder.start_session("50123", "m", roll_interval_s=1.0)
        real_write = recorder._write_rows
        calls = {"n": 0}

        def no_space_once(path, text, offset):
            calls["n"] += 1
            if calls["n"] == 1:
                with open(path, "ab") as f:
                    f.write(text.encode("utf-8")[:25])
                raise OSError(errno.ENOSPC, "No space left on device")
            return real_write(path, text, offset)

        recorder._write_rows = no_space_once
        for v in (1.0, 2.0, 3.0):
            recorder.add_reading(handle.session_id, make_reading(v))

        recorder.flush(handle.session_id)
        assert recorder.get_stats(handle.session_id).queued_rows == 3

        recorder.flush(handle.session_id)
        lines = read_lines(handle.path / "chunk_00000.csv.tmp")
        assert lines[0] == HEADER
        assert [line.split(",")[3] for line in lines[1:]] == ["1.0", "2.0", "3.0"]

        clock.advance(1.0)
        recorder.flush(handle.session_id)
        manifest = recorder.get_manifest(handle.session_id)
        assert len(manifest.chunks) == 1
        assert manifest.chunks[0].rows == 3

        result = recorder.stop_session(handle.session_id)
        assert result.total_rows == 3
        assert len(read_lines(handle.path / "session.csv")) == 4

    def test_finalize_retried_once(self, tmp_path, clock, monkeypatch):
        recorder = LocalRecorder(root=tmp_path, clock=clock)
        handle = recorder.start_session("50123", "m", roll_interval_s=1.0)
        real_replace = os.replace
        failures = {"n": 0}

        def flaky_replace(src, dst):
            if os.path.basename(src).startswith("chunk_") and failures["n"] < 1:
                failures["n"] += 1
                raise OSError("device busy")
            return real_replace(src, dst)

        monkeypatch.setattr(recorder_module.os, "replace", flaky_replace)

        recorder.add_reading(handle.session_id, make_reading(1.0))
        recorder.flush(handle.session_id)
        clock.advance(1.0)
        recorder.flush(handle.session_id)
        assert recorder.get_manifest(handle.session_id).chunks == []

        recorder.flush(handle.session_id)
        manifest = recorder.get_manifest(handle.session_id)
        assert len(manifest.chunks) == 1
        assert manifest.abandoned_chunks == []

    def test_second_finalize_failure_abandons_chunk(self, tmp_path, clock, monkeypatch):
        recorder = LocalRecorder(root=tmp_path, clock=clock)
        handle = recorder.start_session("50123", "m", roll_interval_s=1.0)
        real_replace = os.replace

        def failing_replace(src, dst):
            if str(src).endswith("chunk_00000.csv.tmp"):
                raise OSError("device busy")
            return real_replace(src, dst)

        monkeypatch.setattr(recorder_module.os, "replace", failing_replace)

        recorder.add_reading(handle.session_id, make_reading(1.0))
        recorder.flush(handle.session_id)
        clock.advance(1.0)
        recorder.flush(handle.session_id)
        recorder.flush(handle.session_id)

        manifest = recorder.get_manifest(handle.session_id)
        assert manifest.abandoned_chunks == ["chunk_00000.csv.tmp"]
        assert manifest.next_chunk_index == 1
        assert manifest.chunks == []

        recorder.add_reading(handle.session_id, make_reading(2.0))
        result = recorder.stop_session(handle.session_id)

        assert result.total_rows == 1
        assert result.abandoned_chunks == ("chunk_00000.csv.tmp",)
        assert (handle.path / "chunk_00000.csv.tmp").exists()
        lines = read_lines(handle.path / "session.csv")
        assert len(lines) == 2
        assert lines[1].split(",")[3] == "2.0"

    def test_abort_removes_session(self, recorder, session):
        recorder.add_reading(session.session_id, make_reading(1.0))
        recorder.flush(session.session_id)

        recorder.abort_session(session.session_id)

        assert not session.path.exists()
        assert session.session_id not in recorder.registry
        recorder.add_reading(session.session_id, make_reading(2.0))
        recorder.abort_session(session.session_id)
