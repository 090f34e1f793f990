from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import urlparse

import requests

from qsensorlog.errors import CompanionError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://blueos.local:9150"
SCHEMA_VERSION = 1


@dataclass(frozen=True)
class CompanionStart:
    session_id: str
    started_at: str


@dataclass(frozen=True)
class CompanionStop:
    stopped_at: str
    rows: int | None = None
    chunks: int | None = None


@dataclass(frozen=True)
class CompanionHealth:
    connected: bool
    port: str | None = None
    model: str | None = None
    firmware: str | None = None
    disk_free_bytes: int | None = None


class CompanionRecorder(Protocol):
    """Recorder of the in-water instrument, reached over the network."""

    @property
    def base_url(self) -> str: ...

    @property
    def hostname(self) -> str: ...

    def start(self, mission: str, rate_hz: float, roll_interval_s: float) -> CompanionStart: ...

    def stop(self, session_id: str) -> CompanionStop: ...


# ---------------------------------------- #


class HttpCompanionRecorder:
    def __init__(
        self,
        base_url: str = DEFAULT_API_URL,
        timeout_s: float = 5.0,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._session = session

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def hostname(self) -> str:
        return urlparse(self._base_url).hostname or self._base_url

    def _get_session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update({"Content-Type": "application/json"})
        return self._session

    def close(self) -> None:
        if self._session:
            self._session.close()
            self._session = None

    # ---------------------------------------- #

    def _request(self, method: str, path: str, what: str, **kwargs: Any) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            response = self._get_session().request(method, url, timeout=self.timeout_s, **kwargs)
        except requests.RequestException as exc:
            raise CompanionError(f"{what} failed: {exc}") from exc

        if not response.ok:
            detail = response.reason
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and body.get("detail"):
                detail = body["detail"]
            raise CompanionError(f"{what} failed: HTTP {response.status_code} {detail}")

        try:
            data = response.json()
        except ValueError as exc:
            raise CompanionError(f"{what} returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise CompanionError(f"{what} returned unexpected payload: {data!r}")
        return data

    def start(self, mission: str, rate_hz: float, roll_interval_s: float) -> CompanionStart:
        payload = {
            "rate_hz": rate_hz,
            "schema_version": SCHEMA_VERSION,
            "mission": mission,
            "roll_interval_s": roll_interval_s,
        }
        data = self._request("POST", "/record/start", "Start record", json=payload)
        try:
            result = CompanionStart(session_id=str(data["session_id"]), started_at=str(data["started_at"]))
        except KeyError as exc:
            raise CompanionError(f"Start record response missing {exc}") from exc
        logger.info("Companion recording started at %s: %s", self.hostname, result.session_id)
        return result

    def stop(self, session_id: str) -> CompanionStop:
        data = self._request("POST", "/record/stop", "Stop record", json={"session_id": session_id})
        result = CompanionStop(
            stopped_at=str(data.get("stopped_at") or ""),
            rows=data.get("rows"),
            chunks=data.get("chunks"),
        )
        logger.info("Companion recording stopped at %s: %s", self.hostname, session_id)
        return result

    def health(self) -> CompanionHealth:
        data = self._request("GET", "/instrument/health", "Health check")
        return CompanionHealth(
            connected=bool(data.get("connected")),
            port=data.get("port"),
            model=data.get("model"),
            firmware=data.get("firmware"),
            disk_free_bytes=data.get("disk_free_bytes"),
        )
