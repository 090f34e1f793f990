from __future__ import annotations

import hashlib
import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

MANIFEST_FILENAME = "manifest.json"
SCHEMA_VERSION = 1


def sha256_file(path: Path, block_size: int = 1 << 16) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(block_size), b""):
            h.update(block)
    return h.hexdigest()


def chunk_name(index: int) -> str:
    return f"chunk_{index:05d}.csv"


def write_json_atomic(path: Path, data: Any) -> None:
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


# ---------------------------------------- #


@dataclass(frozen=True)
class ChunkMetadata:
    index: int
    name: str
    rows: int
    checksum: str
    size_bytes: int
    timestamp: str


@dataclass
class Manifest:
    """
    Durable index of a recording session directory.

    Only finalized chunks are listed. total_rows always equals the sum of
    the listed chunk rows; verify() checks it.
    """

    session_id: str
    sensor_id: str
    mission: str
    started_at: str
    stopped_at: str | None = None
    next_chunk_index: int = 0
    total_rows: int = 0
    total_bytes: int = 0
    schema_version: int = SCHEMA_VERSION
    chunks: list[ChunkMetadata] = field(default_factory=list)
    session_checksum: str | None = None
    abandoned_chunks: list[str] = field(default_factory=list)

    # ---------------------------------------- #

    def add_chunk(self, chunk: ChunkMetadata) -> None:
        self.chunks.append(chunk)
        self.next_chunk_index = chunk.index + 1
        self.total_rows += chunk.rows
        self.total_bytes += chunk.size_bytes

    def abandon_chunk(self, index: int) -> None:
        self.abandoned_chunks.append(chunk_name(index) + ".tmp")
        self.next_chunk_index = index + 1

    def verify(self) -> bool:
        return self.total_rows == sum(c.rows for c in self.chunks) and self.total_bytes == sum(
            c.size_bytes for c in self.chunks
        )

    # ---------------------------------------- #

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Manifest:
        chunks = [ChunkMetadata(**c) for c in data.get("chunks", [])]
        return cls(
            session_id=str(data["session_id"]),
            sensor_id=str(data["sensor_id"]),
            mission=str(data["mission"]),
            started_at=str(data["started_at"]),
            stopped_at=data.get("stopped_at"),
            next_chunk_index=int(data.get("next_chunk_index", len(chunks))),
            total_rows=int(data.get("total_rows", 0)),
            total_bytes=int(data.get("total_bytes", 0)),
            schema_version=int(data.get("schema_version", SCHEMA_VERSION)),
            chunks=chunks,
            session_checksum=data.get("session_checksum"),
            abandoned_chunks=list(data.get("abandoned_chunks", [])),
        )

    def save(self, session_dir: Path) -> Path:
        path = session_dir / MANIFEST_FILENAME
        write_json_atomic(path, self.to_dict())
        return path

    @classmethod
    def load(cls, session_dir: Path) -> Manifest:
        path = session_dir / MANIFEST_FILENAME
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))
