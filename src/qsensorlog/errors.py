from __future__ import annotations


class QSensorError(Exception):
    """Base class for every error raised by qsensorlog."""


# ---------------------------------------- #
#  Wire / Controller                       #
# ---------------------------------------- #


class InvalidFrame(QSensorError):
    """A line from the instrument could not be parsed. Dropped, never fatal."""


class CommandTimeout(QSensorError):
    """The instrument did not answer a menu command in time."""


class CommandRejected(QSensorError):
    """The instrument answered a menu command with an error or garbage."""


class InvalidConfigValue(QSensorError):
    pass


class InvalidState(QSensorError):
    """Operation not allowed in the controller's current state."""


class ConnectionLost(QSensorError):
    pass


# ---------------------------------------- #
#  Recorder                                #
# ---------------------------------------- #


class RecorderIOFailure(QSensorError):
    """Transient write failure; queued rows are kept and retried."""


class FinalizationFailure(QSensorError):
    pass


class SessionNotFound(QSensorError):
    pass


# ---------------------------------------- #
#  Sync / Orchestration                    #
# ---------------------------------------- #


class TimeSyncFailure(QSensorError):
    """One clock sample failed. reason is timeout, network_error or invalid_peer_time."""

    def __init__(self, message: str, reason: str = "network_error") -> None:
        super().__init__(message)
        self.reason = reason


class CompanionError(QSensorError):
    """The companion recorder API call failed or returned an error."""


class OrchestrationPartialFailure(QSensorError):
    def __init__(self, message: str, leg_errors: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.leg_errors = dict(leg_errors or {})
