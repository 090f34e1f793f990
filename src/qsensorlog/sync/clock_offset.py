from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

import numpy as np
import requests

from qsensorlog.errors import TimeSyncFailure
from qsensorlog.util.time import utc_now_iso

logger = logging.getLogger(__name__)

SYNC_TIME_PATH = "/api/sync/time"

METHOD_HANDSHAKE = "ntp_handshake_v1"
METHOD_UNSYNCED = "unsynced"


@dataclass(frozen=True)
class OffsetSample:
    offset_ms: float
    rtt_ms: float
    peer_iso: str


@dataclass(frozen=True)
class ClockOffsetMeasurement:
    """
    Peer clock minus local clock, in milliseconds.

    offset_ms is None whenever the measurement is unusable; failure_reason
    then says why (timeout, network_error, invalid_peer_time, high_rtt).
    """

    timestamp: str
    offset_ms: float | None
    uncertainty_ms: float | None
    method: str
    failure_reason: str | None = None
    samples: int = 0
    rtt_ms: list[float] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.offset_ms is not None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------- #


class ClockOffsetService:
    """
    Estimates the offset of a companion's clock with HTTP round trips.

    Each sample is a GET of {peer}/api/sync/time; the peer time is compared
    with the midpoint of the local send and receive times. Network problems
    never raise out of measure_offset(); they are reported in the result.
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        samples: int = 5,
        max_rtt_ms: float = 200.0,
        timeout_s: float = 5.0,
        retries: int = 2,
        clock_ms: Callable[[], float] | None = None,
    ) -> None:
        if samples < 1:
            raise ValueError("samples must be >= 1")
        self._session = session
        self.samples = samples
        self.max_rtt_ms = max_rtt_ms
        self.timeout_s = timeout_s
        self.retries = retries
        self._clock_ms = clock_ms or (lambda: time.time() * 1000.0)

    def _get_session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def close(self) -> None:
        if self._session:
            self._session.close()
            self._session = None

    # ---------------------------------------- #

    def measure_offset(self, peer_base_url: str) -> ClockOffsetMeasurement:
        url = peer_base_url.rstrip("/") + SYNC_TIME_PATH
        taken: list[OffsetSample] = []
        last_failure: TimeSyncFailure | None = None

        for _ in range(self.samples):
            try:
                sample = self._sample_with_retry(url)
            except TimeSyncFailure as exc:
                last_failure = exc
                continue

            if sample.rtt_ms > self.max_rtt_ms:
                logger.warning(
                    "High RTT to %s: %.1f ms (threshold %.1f ms)", url, sample.rtt_ms, self.max_rtt_ms
                )
                return ClockOffsetMeasurement(
                    timestamp=utc_now_iso(),
                    offset_ms=None,
                    uncertainty_ms=None,
                    method=METHOD_HANDSHAKE,
                    failure_reason="high_rtt",
                    samples=len(taken) + 1,
                    rtt_ms=[s.rtt_ms for s in taken] + [sample.rtt_ms],
                )
            taken.append(sample)

        if not taken:
            reason = last_failure.reason if last_failure is not None else "network_error"
            logger.error("Clock offset to %s unavailable: %s", url, last_failure)
            return ClockOffsetMeasurement(
                timestamp=utc_now_iso(),
                offset_ms=None,
                uncertainty_ms=None,
                method=METHOD_UNSYNCED,
                failure_reason=reason,
            )

        offsets = np.array([s.offset_ms for s in taken], dtype=float)
        offset = float(np.mean(offsets))
        if len(taken) == 1:
            uncertainty = taken[0].rtt_ms / 2.0
        else:
            uncertainty = 2.0 * float(np.std(offsets, ddof=1))

        logger.info(
            "Clock offset to %s: %.1f ms +/- %.1f ms (%d samples)",
            peer_base_url,
            offset,
            uncertainty,
            len(taken),
        )
        return ClockOffsetMeasurement(
            timestamp=utc_now_iso(),
            offset_ms=offset,
            uncertainty_ms=uncertainty,
            method=METHOD_HANDSHAKE,
            samples=len(taken),
            rtt_ms=[s.rtt_ms for s in taken],
        )

    # ---------------------------------------- #

    def _sample_with_retry(self, url: str) -> OffsetSample:
        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return self._sample(url)
            except TimeSyncFailure as exc:
                logger.debug("Clock sample %d/%d failed: %s", attempt, attempts, exc)
                if attempt == attempts:
                    raise
        raise AssertionError("unreachable")

    def _sample(self, url: str) -> OffsetSample:
        t_send = self._clock_ms()
        try:
            response = self._get_session().get(url, timeout=self.timeout_s)
            response.raise_for_status()
        except requests.Timeout as exc:
            raise TimeSyncFailure(f"Timeout after {self.timeout_s}s", reason="timeout") from exc
        except requests.RequestException as exc:
            raise TimeSyncFailure(str(exc), reason="network_error") from exc
        t_recv = self._clock_ms()

        try:
            payload = response.json()
        except ValueError as exc:
            raise TimeSyncFailure(f"Response is not JSON: {exc}", reason="invalid_peer_time") from exc

        peer_ms = payload.get("pi_unix_ms") if isinstance(payload, dict) else None
        peer_iso = payload.get("pi_iso") if isinstance(payload, dict) else None
        if isinstance(peer_ms, bool) or not isinstance(peer_ms, (int, float)) or not peer_iso:
            raise TimeSyncFailure(f"Invalid peer time in {payload!r}", reason="invalid_peer_time")

        rtt = t_recv - t_send
        offset = float(peer_ms) - (t_send + rtt / 2.0)
        return OffsetSample(offset_ms=offset, rtt_ms=rtt, peer_iso=str(peer_iso))
