from __future__ import annotations

import logging
import re
import time
from collections import deque
from typing import Callable

from PySide6 import QtCore

from qsensorlog.errors import (
    CommandRejected,
    CommandTimeout,
    ConnectionLost,
    InvalidConfigValue,
    InvalidFrame,
    InvalidState,
)
from qsensorlog.telemetry import protocol
from qsensorlog.telemetry.events import ErrorEvent, ReadingChannel, StateEvent
from qsensorlog.telemetry.transport import SerialTransport, Transport
from qsensorlog.telemetry.types import (
    ConnectionState,
    FrameData,
    HealthSnapshot,
    InstrumentConfig,
    Mode,
    Reading,
)
from qsensorlog.util.time import utc_now_iso

logger = logging.getLogger(__name__)

WAIT_STEP_S = 0.05


class InstrumentController(QtCore.QObject):
    """
    State machine driving one Q-Series instrument over one transport.

    Menu operations block the caller for a bounded time while they pump the
    transport and look for the expected prompt. Acquisition is event driven:
    bytes arrive through the transport's data_received signal (pumped by a
    QTimer owned by the application) and polled queries are issued by the
    controller's own poll timer.
    """

    reading = QtCore.Signal(object)
    state_changed = QtCore.Signal(object)
    error = QtCore.Signal(object)
    info = QtCore.Signal(str)

    def __init__(
        self,
        transport: Transport | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        parent=None,
    ) -> None:
        super().__init__(parent)

        self._transport = transport if transport is not None else SerialTransport()
        self._transport.data_received.connect(self._on_data)
        self._transport.closed.connect(self._on_transport_closed)

        self._clock = clock
        self._sleep = sleep

        self._parser = protocol.FrameParser()
        self._lines: deque[str] = deque(maxlen=100)
        self._state = ConnectionState.DISCONNECTED

        self._config: InstrumentConfig | None = None
        self._sensor_id = "unknown"
        self._firmware_version: str | None = None
        self._banner_mode: Mode | None = None

        self._last_port: str | None = None
        self._last_baud = 9600

        self._channels: list[ReadingChannel] = []

        self._poll_timer = QtCore.QTimer(self)
        self._poll_timer.timeout.connect(self.poll_tick)
        self._poll_tag: str | None = None
        self._poll_hz = 1.0
        self._pending_tag: str | None = None
        self._missed_polls = 0
        self._paused_from: ConnectionState | None = None

        self._last_reading_at: float | None = None
        self._readings_total = 0
        self._invalid_frames = 0
        self._last_temp_c: float | None = None
        self._last_vin: float | None = None

    # ---------------------------------------- #
    #  Properties                              #
    # ---------------------------------------- #

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def sensor_id(self) -> str:
        return self._sensor_id

    @property
    def config(self) -> InstrumentConfig | None:
        return self._config

    @property
    def invalid_frames(self) -> int:
        return self._invalid_frames

    def is_connected(self) -> bool:
        return self._transport.is_open and self._state.is_connected

    # ---------------------------------------- #
    #  Subscribers                             #
    # ---------------------------------------- #

    def subscribe(
        self, maxlen: int = 10000, sink: Callable[[Reading], None] | None = None
    ) -> ReadingChannel:
        channel = ReadingChannel(maxlen=maxlen, sink=sink)
        self._channels.append(channel)
        return channel

    def unsubscribe(self, channel: ReadingChannel) -> None:
        channel.close()
        if channel in self._channels:
            self._channels.remove(channel)

    # ---------------------------------------- #
    #  Connection                              #
    # ---------------------------------------- #

    def connect(self, port: str, baud: int = 9600) -> InstrumentConfig:
        if self._state != ConnectionState.DISCONNECTED:
            raise InvalidState(f"Already connected (state: {self._state.value})")

        self._last_port = port
        self._last_baud = baud
        self._set_state(ConnectionState.CONNECTING)

        try:
            self._transport.open(port, baud)
        except ConnectionLost:
            self._set_state(ConnectionState.DISCONNECTED)
            raise

        try:
            self._enter_menu(capture_banner=True)
            self._config = self._read_config_snapshot(on_garbage=CommandTimeout)
        except (CommandTimeout, CommandRejected, ConnectionLost) as exc:
            logger.error("Connect to %s failed: %s", port, exc)
            self._transport.close()
            self._reset_buffers()
            self._set_state(ConnectionState.DISCONNECTED)
            if isinstance(exc, CommandRejected):
                raise CommandTimeout(str(exc)) from exc
            raise

        self._set_state(ConnectionState.CONFIG_MENU)
        self.info.emit(f"Instrument connected: {self._sensor_id} on {port}")
        logger.info("Connected to %s, config: %s", self._sensor_id, self._config)
        return self._config

    def disconnect(self) -> None:
        if self._state == ConnectionState.DISCONNECTED:
            return

        logger.info("Disconnecting from %s", self._sensor_id)
        self._stop_polling()
        self._transport.close()
        self._reset_buffers()
        self._paused_from = None
        self._set_state(ConnectionState.DISCONNECTED)

    def reconnect(self) -> InstrumentConfig:
        if self._last_port is None:
            raise InvalidState("Cannot reconnect: no previous connection")
        self.disconnect()
        return self.connect(self._last_port, self._last_baud)

    # ---------------------------------------- #
    #  Configuration                           #
    # ---------------------------------------- #

    def get_config(self) -> InstrumentConfig:
        self._ensure_in_menu()
        return self._require_config()

    def set_averaging(self, n: int) -> InstrumentConfig:
        self._ensure_in_menu()
        if not (protocol.AVERAGING_MIN <= n <= protocol.AVERAGING_MAX):
            raise InvalidConfigValue(
                f"Averaging must be {protocol.AVERAGING_MIN}-{protocol.AVERAGING_MAX}, got {n}"
            )

        logger.info("Setting averaging to %d", n)
        self._send(protocol.MENU_CMD_AVERAGING)
        if self._wait_for(protocol.RE_AVERAGING_PROMPT, timeout=protocol.TIMEOUT_PROMPT) is None:
            raise CommandTimeout("Did not receive averaging prompt")

        self._send(str(n))
        m = self._wait_for(
            protocol.RE_AVERAGING_SET,
            protocol.RE_ERROR_INVALID_AVERAGING,
            timeout=protocol.TIMEOUT_CONFIRM,
        )
        if m is None:
            raise CommandTimeout("Averaging not confirmed by device")
        if m.re is protocol.RE_ERROR_INVALID_AVERAGING or int(m.group(1)) != n:
            self._resync_menu()
            raise CommandRejected(f"Device rejected averaging {n}: {m.string!r}")

        self._finish_menu_command()
        return self._refresh_config()

    def set_adc_rate(self, rate_hz: int) -> InstrumentConfig:
        self._ensure_in_menu()
        if rate_hz not in protocol.VALID_ADC_RATES:
            raise InvalidConfigValue(
                f"ADC rate must be one of {sorted(protocol.VALID_ADC_RATES)}, got {rate_hz}"
            )

        logger.info("Setting ADC rate to %d Hz", rate_hz)
        self._send(protocol.MENU_CMD_RATE)
        if self._wait_for(protocol.RE_RATE_PROMPT, timeout=protocol.TIMEOUT_PROMPT) is None:
            raise CommandTimeout("Did not receive rate prompt")

        # Two-line prompt; let the second line finish before answering.
        self._sleep(protocol.MENU_REDISPLAY_DELAY)
        self._send(str(rate_hz))
        m = self._wait_for(
            protocol.RE_RATE_SET,
            protocol.RE_ERROR_INVALID_RATE,
            timeout=protocol.TIMEOUT_RATE_CONFIRM,
        )
        if m is None:
            raise CommandTimeout("Rate not confirmed by device")
        if m.re is protocol.RE_ERROR_INVALID_RATE or int(m.group(1)) != rate_hz:
            self._resync_menu()
            raise CommandRejected(f"Device rejected rate {rate_hz}: {m.string!r}")

        self._require_config().adc_rate_hz = rate_hz
        self._finish_menu_command()
        return self._refresh_config()

    def set_mode(self, mode: Mode, tag: str | None = None) -> InstrumentConfig:
        self._ensure_in_menu()
        if mode not in ("freerun", "polled"):
            raise InvalidConfigValue(f"Mode must be 'freerun' or 'polled', got {mode!r}")
        if mode == "polled" and (not tag or len(tag) != 1 or tag not in protocol.VALID_TAGS):
            raise InvalidConfigValue(f"Tag must be single uppercase A-Z for polled mode, got {tag!r}")

        logger.info("Setting mode to %s%s", mode, f" with tag {tag}" if tag else "")
        # Single character inputs: no CR.
        self._write_raw(protocol.MENU_CMD_MODE.encode("ascii"))
        if self._wait_for(protocol.RE_MODE_PROMPT, timeout=protocol.TIMEOUT_PROMPT) is None:
            raise CommandTimeout("Did not receive mode prompt")

        self._sleep(protocol.MENU_REDISPLAY_DELAY)
        self._write_raw(b"0" if mode == "freerun" else b"1")

        if mode == "polled" and tag:
            if self._wait_for(protocol.RE_TAG_PROMPT, timeout=protocol.TIMEOUT_PROMPT) is None:
                raise CommandTimeout("Did not receive TAG prompt")
            self._sleep(protocol.MENU_REDISPLAY_DELAY)
            self._write_raw(tag.encode("ascii"))

        m = self._wait_for(
            protocol.RE_ERROR_BAD_TAG,
            protocol.RE_MENU_PROMPT,
            timeout=protocol.TIMEOUT_CONFIRM,
        )
        if m is None:
            raise CommandTimeout("Menu did not re-appear after mode change")
        if m.re is protocol.RE_ERROR_BAD_TAG:
            self._resync_menu()
            raise CommandRejected(f"Device rejected TAG {tag!r}: {m.string!r}")

        self._sleep(protocol.MENU_REDISPLAY_DELAY)
        config = self._refresh_config()
        if config.mode != mode or (mode == "polled" and config.tag != tag):
            raise CommandRejected(
                f"Mode change not applied: device reports {config.mode}/{config.tag}"
            )
        return config

    # ---------------------------------------- #
    #  Acquisition                             #
    # ---------------------------------------- #

    def start_acquisition(self, mode: Mode | None = None, poll_hz: float = 1.0) -> None:
        self._ensure_in_menu()
        config = self._require_config()

        if mode is not None and mode != config.mode:
            raise InvalidConfigValue(
                f"Instrument is configured for {config.mode}; call set_mode({mode!r}) first"
            )

        logger.info("Starting acquisition in %s mode", config.mode)
        target = (
            ConnectionState.ACQ_FREERUN
            if config.mode == "freerun"
            else ConnectionState.ACQ_POLLED
        )
        self._exit_menu_and_acquire(target, poll_hz)

    def pause(self) -> None:
        if not self._state.is_acquiring:
            raise InvalidState(f"Cannot pause from state {self._state.value}")

        previous = self._state
        logger.info("Pausing acquisition")
        self._stop_polling()
        self._set_state(ConnectionState.STOPPING)
        try:
            self._enter_menu()
        except CommandTimeout:
            self._set_state(previous)
            if previous == ConnectionState.ACQ_POLLED:
                self._poll_timer.start()
            raise

        self._paused_from = previous
        self._set_state(ConnectionState.PAUSED)

    def resume(self) -> None:
        if self._state != ConnectionState.PAUSED or self._paused_from is None:
            raise InvalidState(f"Cannot resume from state {self._state.value}")

        logger.info("Resuming acquisition (%s)", self._paused_from.value)
        self._config = self._read_config_snapshot(on_garbage=CommandRejected)
        target, self._paused_from = self._paused_from, None
        self._exit_menu_and_acquire(target, self._poll_hz)

    def stop(self) -> None:
        if not (
            self._state.is_acquiring
            or self._state in (ConnectionState.PAUSED, ConnectionState.STOPPING)
        ):
            raise InvalidState(f"Cannot stop from state {self._state.value}")

        previous = self._state
        logger.info("Stopping acquisition")

        if previous.is_acquiring:
            # Complete lines still in the transport are readings; the tail is not.
            self._transport.pump()
            self._raise_if_lost()
            tail = self._parser.drain()
            if tail:
                self._invalid_frames += 1
                logger.debug("Discarding partial line at stop: %r", tail[:60])

        self._stop_polling()
        self._paused_from = None

        if previous != ConnectionState.PAUSED:
            self._set_state(ConnectionState.STOPPING)
            # Stays in STOPPING on timeout; stop() or disconnect() may be retried.
            self._enter_menu()

        self._set_state(ConnectionState.CONFIG_MENU)
        self.info.emit("Acquisition stopped")

    # ---------------------------------------- #

    @QtCore.Slot()
    def poll_transport(self) -> None:
        if self._state == ConnectionState.DISCONNECTED:
            return
        self._transport.pump()

    @QtCore.Slot()
    def poll_tick(self) -> None:
        if self._state != ConnectionState.ACQ_POLLED or self._poll_tag is None:
            return

        if self._pending_tag is not None:
            self._missed_polls += 1
            logger.debug("No response to previous query (%d missed)", self._missed_polls)

        try:
            self._write_raw(protocol.make_polled_query_cmd(self._poll_tag).encode("ascii"))
        except ConnectionLost as exc:
            logger.debug("Poll query failed: %s", exc)
            return
        self._pending_tag = self._poll_tag

    # ---------------------------------------- #
    #  Health                                  #
    # ---------------------------------------- #

    def get_health(self) -> HealthSnapshot:
        since = None
        if self._last_reading_at is not None:
            since = max(0.0, self._clock() - self._last_reading_at)
        return HealthSnapshot(
            state=self._state,
            sensor_id=self._sensor_id,
            firmware_version=self._firmware_version,
            config=self._config,
            line_buffer_bytes=self._parser.buffered_bytes,
            seconds_since_reading=since,
            readings_total=self._readings_total,
            last_temp_c=self._last_temp_c,
            last_vin=self._last_vin,
            missed_polls=self._missed_polls,
        )

    # ---------------------------------------- #
    #  Internal: menu                          #
    # ---------------------------------------- #

    def _ensure_in_menu(self) -> None:
        if self._state != ConnectionState.CONFIG_MENU:
            raise InvalidState(
                f"Operation requires CONFIG_MENU state, current: {self._state.value}"
            )

    def _require_config(self) -> InstrumentConfig:
        if self._config is None:
            raise InvalidState("No configuration has been read from the instrument")
        return self._config

    def _enter_menu(self, capture_banner: bool = False) -> None:
        if capture_banner:
            # ESC sent while the power-on banner is still printing is ignored.
            self._sleep(protocol.DELAY_POST_OPEN)
            self._transport.pump()
            self._raise_if_lost()
            self._absorb_banner("\n".join(self._lines))

        self._reset_buffers()
        self._write_raw(protocol.ESC)
        if self._wait_for(protocol.RE_MENU_PROMPT, timeout=protocol.TIMEOUT_MENU_PROMPT) is None:
            raise CommandTimeout("Did not receive menu prompt after ESC")
        logger.debug("Entered config menu")

    def _absorb_banner(self, banner_text: str) -> None:
        version = protocol.extract_version(banner_text)
        serial_number = protocol.extract_serial(banner_text)
        mode, _tag = protocol.extract_mode(banner_text)
        if version:
            self._firmware_version = version
        if serial_number:
            self._sensor_id = serial_number
        self._banner_mode = mode

    def _resync_menu(self) -> None:
        if self._wait_for(protocol.RE_MENU_PROMPT, timeout=protocol.TIMEOUT_MENU_PROMPT) is None:
            logger.warning("Menu prompt not seen after rejected command")

    def _finish_menu_command(self) -> None:
        if self._wait_for(protocol.RE_MENU_PROMPT, timeout=protocol.TIMEOUT_MENU_PROMPT) is None:
            raise CommandTimeout("Menu did not re-appear after command")
        self._sleep(protocol.MENU_REDISPLAY_DELAY)

    def _refresh_config(self) -> InstrumentConfig:
        self._config = self._read_config_snapshot(on_garbage=CommandRejected)
        return self._config

    def _read_config_snapshot(
        self, on_garbage: type[CommandTimeout] | type[CommandRejected]
    ) -> InstrumentConfig:
        self._send(protocol.MENU_CMD_CONFIG_DUMP)

        deadline = self._clock() + protocol.TIMEOUT_CONFIG_DUMP
        last_error: InvalidFrame | None = None
        while True:
            self._transport.pump()
            self._raise_if_lost()

            while self._lines:
                line = self._lines.popleft()
                if protocol.RE_MENU_PROMPT.search(line):
                    continue
                try:
                    config = protocol.parse_config_csv(line)
                except InvalidFrame as exc:
                    last_error = exc
                    continue
                return self._merge_config(config)

            if self._clock() >= deadline:
                break
            self._sleep(WAIT_STEP_S)

        if last_error is not None:
            raise on_garbage(f"Unparseable configuration dump: {last_error}")
        raise CommandTimeout("Timeout waiting for configuration dump")

    def _merge_config(self, config: InstrumentConfig) -> InstrumentConfig:
        # The dump carries no ADC rate; keep the last known one.
        if self._config is not None:
            config.adc_rate_hz = self._config.adc_rate_hz
        self._sensor_id = config.serial_number
        self._firmware_version = config.firmware_version
        logger.debug("Parsed config: %s", config)
        return config

    def _exit_menu_and_acquire(self, target: ConnectionState, poll_hz: float) -> None:
        config = self._require_config()

        # 'X' leaves the menu by rebooting the instrument.
        self._send(protocol.MENU_CMD_EXIT)
        self._sleep(protocol.DELAY_POST_RESET)
        self._transport.pump()
        self._raise_if_lost()
        self._reset_buffers()

        if target == ConnectionState.ACQ_POLLED:
            tag = config.tag or "A"
            self._send(protocol.make_polled_init_cmd(tag))
            # Let the averaging window fill before the first query.
            self._sleep(config.sample_period_s + 0.5)
            self._transport.pump()
            self._reset_buffers()

            self._poll_tag = tag
            self._poll_hz = protocol.clamp_poll_hz(poll_hz)
            self._pending_tag = None
            self._poll_timer.setInterval(int(round(1000.0 / self._poll_hz)))
            self._set_state(ConnectionState.ACQ_POLLED)
            self._poll_timer.start()
            logger.info("Polling tag %s at %.2f Hz", tag, self._poll_hz)
        else:
            self._set_state(ConnectionState.ACQ_FREERUN)

        self.info.emit(f"Acquisition started ({config.mode})")

    def _stop_polling(self) -> None:
        self._poll_timer.stop()
        self._pending_tag = None

    # ---------------------------------------- #
    #  Internal: I/O                           #
    # ---------------------------------------- #

    def _send(self, cmd: str) -> None:
        self._write_raw(protocol.encode_command(cmd))

    def _write_raw(self, data: bytes) -> None:
        # Anything buffered before a command cannot be its answer.
        self._lines.clear()
        self._transport.write(data)

    def _reset_buffers(self) -> None:
        self._parser.clear()
        self._lines.clear()

    def _raise_if_lost(self) -> None:
        if self._state == ConnectionState.DISCONNECTED:
            raise ConnectionLost("Transport closed while waiting for the instrument")

    def _wait_for(self, *patterns: re.Pattern[str], timeout: float) -> re.Match[str] | None:
        """Consume buffered lines up to the first one matching any pattern."""
        deadline = self._clock() + timeout
        while True:
            self._transport.pump()
            self._raise_if_lost()

            while self._lines:
                line = self._lines.popleft()
                for pattern in patterns:
                    m = pattern.search(line)
                    if m is not None:
                        logger.debug("Matched %r", line[:60])
                        return m

            if self._clock() >= deadline:
                logger.warning(
                    "Timeout waiting for %s", " | ".join(p.pattern for p in patterns)
                )
                return None
            self._sleep(WAIT_STEP_S)

    # ---------------------------------------- #
    #  Internal: stream handling               #
    # ---------------------------------------- #

    @QtCore.Slot(object)
    def _on_data(self, data: bytes) -> None:
        for line in self._parser.feed(data):
            self._dispatch_line(line)

    def _dispatch_line(self, line: str) -> None:
        if self._state == ConnectionState.ACQ_FREERUN:
            self._handle_freerun_line(line)
        elif self._state == ConnectionState.ACQ_POLLED:
            self._handle_polled_line(line)
        else:
            self._lines.append(line)

    def _handle_freerun_line(self, line: str) -> None:
        if protocol.is_banner_line(line):
            logger.debug("Skipping banner line: %s", line[:60])
            return
        try:
            data = protocol.parse_freerun_line(line)
        except InvalidFrame as exc:
            self._invalid_frames += 1
            logger.debug("Dropping frame: %s", exc)
            return
        self._emit_reading(data, "freerun")

    def _handle_polled_line(self, line: str) -> None:
        if protocol.is_banner_line(line):
            return
        tag, self._pending_tag = self._pending_tag, None
        if tag is None:
            logger.debug("Unsolicited line in polled mode: %s", line[:60])
            return
        try:
            data = protocol.parse_polled_line(line, tag)
        except InvalidFrame as exc:
            self._invalid_frames += 1
            logger.debug("Dropping polled frame: %s", exc)
            return
        self._emit_reading(data, "polled")

    def _emit_reading(self, data: FrameData, mode: str) -> None:
        reading = Reading(
            value=data.value,
            temp_c=data.temp_c,
            vin=data.vin,
            timestamp_wall=utc_now_iso(),
            timestamp_monotonic_ns=time.monotonic_ns(),
            sensor_id=self._sensor_id,
            mode=mode,
        )
        self._last_reading_at = self._clock()
        self._readings_total += 1
        if data.temp_c is not None:
            self._last_temp_c = data.temp_c
        if data.vin is not None:
            self._last_vin = data.vin

        for channel in list(self._channels):
            channel.put(reading)
        self.reading.emit(reading)

    # ---------------------------------------- #

    @QtCore.Slot(str)
    def _on_transport_closed(self, reason: str) -> None:
        if self._state == ConnectionState.DISCONNECTED:
            return

        self._stop_polling()
        self._reset_buffers()
        self._paused_from = None
        self._set_state(ConnectionState.DISCONNECTED)

        msg = f"Connection lost: {reason}"
        logger.error(msg)
        self.error.emit(ErrorEvent(kind="connection_lost", message=msg))

    def _set_state(self, state: ConnectionState) -> None:
        previous, self._state = self._state, state
        if previous != state:
            logger.debug("State %s -> %s", previous.value, state.value)
            self.state_changed.emit(StateEvent(previous=previous, current=state))
