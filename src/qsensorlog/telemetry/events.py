from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Callable

from qsensorlog.telemetry.types import ConnectionState, Reading


@dataclass(frozen=True)
class StateEvent:
    previous: ConnectionState
    current: ConnectionState


@dataclass(frozen=True)
class ErrorEvent:
    kind: str
    message: str


# ---------------------------------------- #


class ReadingChannel:
    """
    Bounded single-producer/single-consumer hand-off for readings.

    The controller is the only producer (put), one subscriber is the only
    consumer (drain or the optional sink). When the channel is full the
    oldest reading is dropped and counted.
    """

    def __init__(
        self,
        maxlen: int = 10000,
        sink: Callable[[Reading], None] | None = None,
    ) -> None:
        self._queue: deque[Reading] = deque(maxlen=maxlen)
        self._sink = sink
        self.dropped = 0
        self.closed = False

    # ---------------------------------------- #

    def put(self, reading: Reading) -> None:
        if self.closed:
            return
        if self._sink is not None:
            self._sink(reading)
            return
        if len(self._queue) == self._queue.maxlen:
            self.dropped += 1
        self._queue.append(reading)

    def drain(self) -> list[Reading]:
        out = list(self._queue)
        self._queue.clear()
        return out

    def close(self) -> None:
        self.closed = True

    def __len__(self) -> int:
        return len(self._queue)
