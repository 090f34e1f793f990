from __future__ import annotations

import logging
import math
import re
from typing import Final

from qsensorlog.errors import InvalidFrame
from qsensorlog.telemetry.types import FrameData, InstrumentConfig, Mode

logger = logging.getLogger(__name__)

# Device output is CRLF terminated, device input is CR terminated.
OUTPUT_TERMINATOR: Final[bytes] = b"\r\n"
INPUT_TERMINATOR: Final[str] = "\r"

ESC: Final[bytes] = b"\x1b"

MENU_CMD_AVERAGING: Final[str] = "A"
MENU_CMD_RATE: Final[str] = "R"
MENU_CMD_MODE: Final[str] = "M"
MENU_CMD_CONFIG_DUMP: Final[str] = "^"
MENU_CMD_EXIT: Final[str] = "X"
MENU_CMD_REDISPLAY: Final[str] = "?"

VALID_ADC_RATES: Final[frozenset[int]] = frozenset({4, 8, 16, 33, 62, 125, 250, 500})
AVERAGING_MIN: Final[int] = 1
AVERAGING_MAX: Final[int] = 65535
VALID_TAGS: Final[str] = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"

# Seconds
DELAY_POST_OPEN: Final[float] = 1.2
DELAY_POST_RESET: Final[float] = 3.5
TIMEOUT_MENU_PROMPT: Final[float] = 3.0
TIMEOUT_PROMPT: Final[float] = 5.0
TIMEOUT_CONFIRM: Final[float] = 10.0
TIMEOUT_RATE_CONFIRM: Final[float] = 15.0
TIMEOUT_CONFIG_DUMP: Final[float] = 5.0
MENU_REDISPLAY_DELAY: Final[float] = 0.5

POLL_HZ_MIN: Final[float] = 0.1
POLL_HZ_MAX: Final[float] = 15.0

MAX_BUFFER_BYTES: Final[int] = 4096
TRIM_TO_BYTES: Final[int] = 512

RE_MENU_PROMPT = re.compile(r"^Select the letter of the menu entry:\s*$", re.IGNORECASE)
RE_SIGNON_BANNER = re.compile(
    r"Biospherical Instruments Inc.*Digital.*Engine.*Vers\s+([\d.]+)", re.IGNORECASE
)
RE_UNIT_ID = re.compile(r"Unit ID\s+(.+)", re.IGNORECASE)
RE_OPERATING_MODE_FREERUN = re.compile(r"Operating in free run mode", re.IGNORECASE)
RE_OPERATING_MODE_POLLED = re.compile(
    r"Operating in polled mode with tag of\s+(\w)", re.IGNORECASE
)

RE_AVERAGING_PROMPT = re.compile(r"Enter # readings to average", re.IGNORECASE)
RE_AVERAGING_SET = re.compile(r"ADC set to averaging\s+(\d+)", re.IGNORECASE)
RE_RATE_PROMPT = re.compile(r"Enter ADC rate|Sample rate selection", re.IGNORECASE)
RE_RATE_SET = re.compile(r"ADC rate set to\s+(\d+)", re.IGNORECASE)
RE_MODE_PROMPT = re.compile(r"Select mode|Enter.*mode", re.IGNORECASE)
RE_TAG_PROMPT = re.compile(r"Enter TAG|TAG character", re.IGNORECASE)

RE_ERROR_INVALID_AVERAGING = re.compile(r"Invalid number.*averaging set to 12", re.IGNORECASE)
RE_ERROR_INVALID_RATE = re.compile(r"Invalid rate.*Command is ignored", re.IGNORECASE)
RE_ERROR_BAD_TAG = re.compile(r"Bad TAG", re.IGNORECASE)

# Lines printed around a reset that must never be mistaken for data.
BANNER_MARKERS: Final[tuple[str, ...]] = (
    "Select the letter of",
    " to set ",
    "Operating in",
    "ADC sample rate",
    "Averaging",
    "Sensor temperature:",
    "Input Supply Voltage",
    "Calfactor:",
    "Reset ADC",
    "Start free run",
    "Starting Sampling",
    "Biospherical Instruments",
    "Digital Engine",
    "Unit ID",
    "Rebooting program",
    "gain ",
    "Buffer disabled",
)

_NUMERIC_CHARS: Final[frozenset[str]] = frozenset("0123456789+-.eE")
_VALUE_START: Final[frozenset[str]] = frozenset("0123456789-+.")

MIN_CONFIG_FIELDS: Final[int] = 14


# ---------------------------------------- #
#  Tokenizer                               #
# ---------------------------------------- #


class FrameParser:
    """
    Splits a raw serial byte stream into CRLF terminated lines.

    The partial tail is kept between feed() calls. If no terminator shows up
    before max_buffer bytes accumulate, the tail is cut down to its last
    trim_to bytes: garbage is discarded instead of growing without bound.
    """

    def __init__(self, max_buffer: int = MAX_BUFFER_BYTES, trim_to: int = TRIM_TO_BYTES) -> None:
        if trim_to > max_buffer:
            raise ValueError("trim_to must not exceed max_buffer")
        self.max_buffer = max_buffer
        self.trim_to = trim_to
        self._buf = bytearray()
        self.trimmed_bytes = 0

    # ---------------------------------------- #

    @property
    def buffered_bytes(self) -> int:
        return len(self._buf)

    def clear(self) -> None:
        self._buf.clear()

    def drain(self) -> str | None:
        """Return and discard the buffered partial line, if any."""
        if not self._buf:
            return None
        tail = bytes(self._buf).decode("ascii", errors="replace").strip()
        self._buf.clear()
        return tail or None

    # ---------------------------------------- #

    def feed(self, data: bytes) -> list[str]:
        self._buf.extend(data)

        lines: list[str] = []
        while True:
            idx = self._buf.find(OUTPUT_TERMINATOR)
            if idx < 0:
                break

            raw = bytes(self._buf[:idx])
            del self._buf[: idx + len(OUTPUT_TERMINATOR)]

            line = raw.decode("ascii", errors="replace")
            if line.strip():
                lines.append(line)

        if len(self._buf) > self.max_buffer:
            dropped = len(self._buf) - self.trim_to
            logger.warning(
                "Line buffer overflow: trimming %d -> %d bytes", len(self._buf), self.trim_to
            )
            del self._buf[:dropped]
            self.trimmed_bytes += dropped

        return lines


# ---------------------------------------- #
#  Line parsers                            #
# ---------------------------------------- #


def _to_float(token: str, what: str, line: str) -> float:
    token = token.strip()
    if not token or any(c not in _NUMERIC_CHARS for c in token):
        raise InvalidFrame(f"Non-numeric {what} {token!r} in line: {line!r}")
    try:
        value = float(token)
    except ValueError as exc:
        raise InvalidFrame(f"Failed to parse {what} {token!r} in line: {line!r}") from exc
    if not math.isfinite(value):
        raise InvalidFrame(f"Non-finite {what} in line: {line!r}")
    return value


def _split_preamble(field: str) -> tuple[str, str]:
    for i, ch in enumerate(field):
        if ch in _VALUE_START:
            return field[:i], field[i:]
    return field, ""


def _parse_fields(body: str, line: str) -> FrameData:
    fields = body.split(",")
    if len(fields) > 3:
        raise InvalidFrame(f"Too many fields ({len(fields)}) in line: {line!r}")

    _preamble, value_token = _split_preamble(fields[0].strip())
    if not value_token:
        raise InvalidFrame(f"No numeric value in line: {line!r}")

    value = _to_float(value_token, "value", line)
    temp_c = _to_float(fields[1], "TempC", line) if len(fields) > 1 else None
    vin = _to_float(fields[2], "Vin", line) if len(fields) > 2 else None
    return FrameData(value=value, temp_c=temp_c, vin=vin)


def parse_freerun_line(line: str) -> FrameData:
    """
    Parse a freerun data line: [preamble]value[, temp[, vin]].

    Example: "$LITE123.456789, 21.34, 12.345"
    """
    trimmed = line.strip()
    if not trimmed:
        raise InvalidFrame("Empty data line")
    return _parse_fields(trimmed, line)


def parse_polled_line(line: str, expected_tag: str) -> FrameData:
    """
    Parse a polled response: TAG,[preamble]value[, temp[, vin]].

    The tag comparison is exact; a lowercase echo of the expected tag is
    rejected like any other mismatch.
    """
    trimmed = line.strip()
    if not trimmed:
        raise InvalidFrame("Empty polled data line")

    tag, sep, rest = trimmed.partition(",")
    if not sep:
        raise InvalidFrame(f"Polled line has no tag field: {line!r}")
    if tag != expected_tag:
        raise InvalidFrame(f"TAG mismatch: expected {expected_tag!r}, got {tag!r} in line: {line!r}")

    return _parse_fields(rest.strip(), line)


def parse_config_csv(line: str) -> InstrumentConfig:
    """
    Parse the '^' configuration dump.

    Layout: averaging,baud,calfactor,description,E,firmware,G,H,serial,
    f9,f10,f11,mode_flag,tag,...
    """
    fields = [f.strip() for f in line.strip().split(",")]
    if len(fields) < MIN_CONFIG_FIELDS:
        raise InvalidFrame(f"Config dump too short ({len(fields)} fields): {line!r}")

    if fields[4] != "E" or fields[6] != "G" or fields[7] != "H":
        raise InvalidFrame(f"Config dump marker fields missing: {line!r}")
    if not fields[0].isdigit() or not fields[1].isdigit():
        raise InvalidFrame(f"Config dump averaging/baud not integers: {line!r}")

    calfactor = _to_float(fields[2], "calfactor", line)
    for idx in (9, 10, 11):
        _to_float(fields[idx], f"field {idx}", line)

    firmware = fields[5]
    if not firmware or any(c not in "0123456789." for c in firmware):
        raise InvalidFrame(f"Config dump firmware version malformed: {line!r}")

    mode_flag = fields[12]
    mode: Mode
    tag: str | None = None
    if mode_flag == "0":
        mode = "freerun"
    elif mode_flag == "1":
        mode = "polled"
        tag = fields[13] or None
    else:
        raise InvalidFrame(f"Unknown operating mode flag {mode_flag!r}")

    return InstrumentConfig(
        averaging=int(fields[0]),
        baud=int(fields[1]),
        calfactor=calfactor,
        description=fields[3],
        firmware_version=firmware,
        serial_number=fields[8] or "unknown",
        mode=mode,
        tag=tag,
    )


def is_banner_line(line: str) -> bool:
    return any(marker in line for marker in BANNER_MARKERS)


# ---------------------------------------- #
#  Banner metadata                         #
# ---------------------------------------- #


def extract_version(banner_text: str) -> str | None:
    m = RE_SIGNON_BANNER.search(banner_text)
    return m.group(1) if m else None


def extract_serial(banner_text: str) -> str | None:
    m = RE_UNIT_ID.search(banner_text)
    if not m:
        return None
    return m.group(1).strip() or None


def extract_mode(banner_text: str) -> tuple[Mode | None, str | None]:
    if RE_OPERATING_MODE_FREERUN.search(banner_text):
        return "freerun", None
    m = RE_OPERATING_MODE_POLLED.search(banner_text)
    if m:
        return "polled", m.group(1).upper()
    return None, None


# ---------------------------------------- #
#  Command builders                        #
# ---------------------------------------- #


def make_polled_init_cmd(tag: str) -> str:
    return f"*{tag}Q000!"


def make_polled_query_cmd(tag: str) -> str:
    return f">{tag}*"


def encode_command(cmd: str) -> bytes:
    return (cmd + INPUT_TERMINATOR).encode("ascii")


def format_freerun_line(data: FrameData, preamble: str = "") -> str:
    parts = [f"{preamble}{data.value!r}"]
    if data.temp_c is not None:
        parts.append(repr(data.temp_c))
        if data.vin is not None:
            parts.append(repr(data.vin))
    elif data.vin is not None:
        raise ValueError("vin cannot be formatted without temp_c")
    return ", ".join(parts)


def clamp_poll_hz(poll_hz: float) -> float:
    return min(POLL_HZ_MAX, max(POLL_HZ_MIN, float(poll_hz)))
