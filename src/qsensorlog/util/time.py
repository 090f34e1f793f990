from datetime import datetime, timezone


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def unix_from_iso(text: str) -> float:
    return datetime.fromisoformat(text).timestamp()


def session_timestamp(t_unix: float | None = None) -> str:
    """Filesystem safe UTC stamp, e.g. 20250101T120000Z."""
    dt = datetime.now(timezone.utc) if t_unix is None else datetime.fromtimestamp(t_unix, tz=timezone.utc)
    return dt.strftime("%Y%m%dT%H%M%SZ")
