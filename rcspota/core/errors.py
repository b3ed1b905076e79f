"""Domain-specific errors and result codes for rcspota."""

from __future__ import annotations

from enum import IntEnum


class OtaErrorCode(IntEnum):
    SUCCESS = 0
    IN_PROGRESS = 1
    BUSY = -1
    INVALID_FIRMWARE = -2
    INVALID_CONFIG = -3
    LOW_POWER = -97
    CAN_NOT_UPDATE = -98
    VERSION_NO_CHANGE = -99
    TWS_NOT_CONNECT = -100
    FIRMWARE_INFO_ERROR = -101
    DATA_CHECK = -102
    OTA_FAIL = -103
    ENCRYPTED_KEY_NOT_MATCH = -104
    NOT_IN_CHARGING_BOX = -105
    COMMAND_TIMEOUT = -111
    RECONNECT_TIMEOUT = -112
    INVALID_RESPONSE = -113
    USER_CANCELLED = -200
    CONNECTION_LOST = -201
    DEVICE_NOT_FOUND = -202
    INTERNAL_ERROR = -300


_DESCRIPTIONS: dict[OtaErrorCode, str] = {
    OtaErrorCode.SUCCESS: "Upgrade succeeded",
    OtaErrorCode.IN_PROGRESS: "Upgrade continues after the device reconnects",
    OtaErrorCode.BUSY: "An upgrade is already in progress",
    OtaErrorCode.INVALID_FIRMWARE: "Firmware file is invalid",
    OtaErrorCode.INVALID_CONFIG: "Configuration is invalid",
    OtaErrorCode.LOW_POWER: "Device battery too low",
    OtaErrorCode.CAN_NOT_UPDATE: "Device refused the upgrade",
    OtaErrorCode.VERSION_NO_CHANGE: "Firmware version unchanged",
    OtaErrorCode.TWS_NOT_CONNECT: "TWS peer not connected",
    OtaErrorCode.FIRMWARE_INFO_ERROR: "Firmware information rejected by device",
    OtaErrorCode.DATA_CHECK: "Data check failed",
    OtaErrorCode.OTA_FAIL: "Upgrade failed",
    OtaErrorCode.ENCRYPTED_KEY_NOT_MATCH: "Encryption key mismatch",
    OtaErrorCode.NOT_IN_CHARGING_BOX: "Earbuds are not in the charging case",
    OtaErrorCode.COMMAND_TIMEOUT: "Command timed out",
    OtaErrorCode.RECONNECT_TIMEOUT: "Timed out waiting for the device to reconnect",
    OtaErrorCode.INVALID_RESPONSE: "Malformed response from device",
    OtaErrorCode.USER_CANCELLED: "Upgrade cancelled by user",
    OtaErrorCode.CONNECTION_LOST: "Connection to device lost",
    OtaErrorCode.DEVICE_NOT_FOUND: "Device not found",
    OtaErrorCode.INTERNAL_ERROR: "Internal error",
}


def describe_error(code: int) -> str:
    try:
        return _DESCRIPTIONS[OtaErrorCode(code)]
    except ValueError:
        return f"Unknown error: {code}"


class RcspOtaError(Exception):
    """Base error for rcspota."""

    code: OtaErrorCode = OtaErrorCode.OTA_FAIL

    def __init__(self, message: str = "", *, code: OtaErrorCode | None = None) -> None:
        super().__init__(message or describe_error(code if code is not None else self.code))
        if code is not None:
            self.code = code


class ConfigLoadError(RcspOtaError):
    """Raised when reading a configuration file fails."""

    code = OtaErrorCode.INVALID_CONFIG


class ConfigValidationError(RcspOtaError):
    """Raised when a configuration file does not conform to schema or semantics."""

    code = OtaErrorCode.INVALID_CONFIG


class FirmwareValidationError(RcspOtaError):
    """Raised when a firmware file is missing, empty or oversized."""

    code = OtaErrorCode.INVALID_FIRMWARE


class DeviceSelectionError(RcspOtaError):
    """Raised when the requested device cannot be found."""

    code = OtaErrorCode.DEVICE_NOT_FOUND


class TransportError(RcspOtaError):
    """Base transport error."""

    code = OtaErrorCode.CONNECTION_LOST


class TransportConnectError(TransportError):
    """Raised on BLE connect or subscribe failures."""


class TransportSendError(TransportError):
    """Raised when writing to the device fails."""


class ProtocolError(RcspOtaError):
    """Base error for RCSP protocol violations."""

    code = OtaErrorCode.INVALID_RESPONSE


class CommandTimeoutError(ProtocolError):
    """Raised when no matching response arrives in time."""

    code = OtaErrorCode.COMMAND_TIMEOUT


class MalformedFrameError(ProtocolError):
    """Raised when a frame or response payload cannot be decoded."""


class ReconnectTimeoutError(RcspOtaError):
    """Raised when a rebooted device does not come back in time."""

    code = OtaErrorCode.RECONNECT_TIMEOUT


class DeviceReportedError(RcspOtaError):
    """Raised when the device answers with a non-zero status or result code."""


class InvariantViolationError(RcspOtaError):
    """Raised when the session is driven out of order."""

    code = OtaErrorCode.INTERNAL_ERROR
