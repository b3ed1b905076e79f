"""Typed RCSP commands and responses.

A command payload is ``[sequence] + body``; a response payload is
``[status, sequence] + body``. Responses are decoded by the class a command
names in ``response_cls`` once the session has matched them by
``(opcode, sequence)``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar, Generic, TypeVar

from rcspota.core.errors import MalformedFrameError, OtaErrorCode
from rcspota.core.model import DeviceInfo, int_to_mac
from rcspota.protocol.packet import FLAG_IS_COMMAND, FLAG_NEEDS_RESPONSE, Frame, OpCode

STATUS_SUCCESS = 0x00
STATUS_FAILED = 0x01

REBOOT_OP_REBOOT = 0x01

CAN_UPDATE_RESULTS: dict[int, tuple[OtaErrorCode, str]] = {
    0x00: (OtaErrorCode.SUCCESS, "can update"),
    0x01: (OtaErrorCode.LOW_POWER, "battery too low"),
    0x02: (OtaErrorCode.FIRMWARE_INFO_ERROR, "firmware information error"),
    0x03: (OtaErrorCode.VERSION_NO_CHANGE, "firmware version unchanged"),
    0x04: (OtaErrorCode.TWS_NOT_CONNECT, "TWS peer not connected"),
    0x05: (OtaErrorCode.NOT_IN_CHARGING_BOX, "earbuds not in charging case"),
}

UPDATE_RESULTS: dict[int, OtaErrorCode] = {
    0x00: OtaErrorCode.SUCCESS,
    0x01: OtaErrorCode.DATA_CHECK,
    0x02: OtaErrorCode.OTA_FAIL,
    0x03: OtaErrorCode.ENCRYPTED_KEY_NOT_MATCH,
}


class _Reader:
    def __init__(self, data: bytes, context: str) -> None:
        self._data = data
        self._pos = 0
        self._context = context

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos

    def take(self, size: int) -> bytes:
        if size > self.remaining:
            raise MalformedFrameError(
                f"{self._context}: need {size} bytes at offset {self._pos}, have {self.remaining}"
            )
        chunk = self._data[self._pos : self._pos + size]
        self._pos += size
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u32_le(self) -> int:
        return int.from_bytes(self.take(4), "little")

    def prefixed_text(self) -> str:
        return self.take(self.u8()).decode("utf-8", errors="replace")


R = TypeVar("R", bound="Response")


@dataclass(frozen=True)
class Response:
    opcode: int
    status: int
    sequence: int
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS

    @classmethod
    def from_frame(cls: type[R], frame: Frame) -> R:
        if frame.is_command:
            raise MalformedFrameError(f"frame op=0x{frame.opcode:02X} is a command, not a response")
        if len(frame.payload) < 2:
            raise MalformedFrameError(
                f"response op=0x{frame.opcode:02X} too short ({len(frame.payload)} bytes)"
            )
        payload = frame.payload
        return cls._decode(frame.opcode, payload[0], payload[1], bytes(payload[2:]))

    @classmethod
    def _decode(cls: type[R], opcode: int, status: int, sequence: int, body: bytes) -> R:
        return cls(opcode=opcode, status=status, sequence=sequence, body=body)


@dataclass(frozen=True)
class ResultResponse(Response):
    result: int = 0

    @classmethod
    def _decode(cls, opcode: int, status: int, sequence: int, body: bytes) -> "ResultResponse":
        return cls(
            opcode=opcode,
            status=status,
            sequence=sequence,
            body=body,
            result=body[0] if body else 0,
        )


@dataclass(frozen=True)
class CanUpdateResponse(ResultResponse):
    @property
    def can_update(self) -> bool:
        return self.result == 0x00

    @property
    def error_code(self) -> OtaErrorCode:
        known = CAN_UPDATE_RESULTS.get(self.result)
        return known[0] if known else OtaErrorCode.CAN_NOT_UPDATE

    @property
    def description(self) -> str:
        known = CAN_UPDATE_RESULTS.get(self.result)
        return known[1] if known else f"unknown result 0x{self.result:02X}"


@dataclass(frozen=True)
class UpdateResultResponse(ResultResponse):
    @property
    def succeeded(self) -> bool:
        return self.result == 0x00

    @property
    def error_code(self) -> OtaErrorCode:
        return UPDATE_RESULTS.get(self.result, OtaErrorCode.OTA_FAIL)


@dataclass(frozen=True)
class FileOffsetResponse(Response):
    offset: int = 0

    @classmethod
    def _decode(cls, opcode: int, status: int, sequence: int, body: bytes) -> "FileOffsetResponse":
        reader = _Reader(body, "file offset")
        return cls(opcode=opcode, status=status, sequence=sequence, body=body, offset=reader.u32_le())


@dataclass(frozen=True)
class FileSizeAckResponse(Response):
    offset: int = 0

    @classmethod
    def _decode(cls, opcode: int, status: int, sequence: int, body: bytes) -> "FileSizeAckResponse":
        offset = int.from_bytes(body[:4], "little") if len(body) >= 4 else 0
        return cls(opcode=opcode, status=status, sequence=sequence, body=body, offset=offset)


@dataclass(frozen=True)
class CommunicationWayResponse(Response):
    value: int = 0

    @classmethod
    def _decode(cls, opcode: int, status: int, sequence: int, body: bytes) -> "CommunicationWayResponse":
        if len(body) >= 2:
            value = int.from_bytes(body[:2], "little")
        elif body:
            value = body[0]
        else:
            value = 0
        return cls(opcode=opcode, status=status, sequence=sequence, body=body, value=value)


@dataclass(frozen=True)
class TargetInfoResponse(Response):
    device_info: DeviceInfo = field(default_factory=DeviceInfo)

    @classmethod
    def _decode(cls, opcode: int, status: int, sequence: int, body: bytes) -> "TargetInfoResponse":
        reader = _Reader(body, "target info")
        name = reader.prefixed_text()
        version_name = reader.prefixed_text()
        version_code = reader.u32_le()
        device_type = reader.u8()
        battery = reader.u8()
        dual_bank = reader.u8() == 1
        mac = int_to_mac(int.from_bytes(reader.take(6), "big"))
        communication_way = reader.u8()
        # Older firmware stops here; capability bytes default to off.
        extras = reader.take(min(reader.remaining, 3)) + b"\x00\x00\x00"
        info = DeviceInfo(
            name=name,
            version_name=version_name,
            version_code=version_code,
            device_type=device_type,
            battery_level=battery,
            supports_dual_bank=dual_bank,
            mac=mac,
            communication_way=communication_way,
            needs_bootloader=extras[0] == 1,
            mandatory_upgrade=extras[1] == 1,
            supports_new_reboot_way=extras[2] == 1,
        )
        return cls(opcode=opcode, status=status, sequence=sequence, body=body, device_info=info)


class Command(Generic[R]):
    opcode: ClassVar[OpCode]
    response_cls: ClassVar[type[Response]] = Response
    needs_response: ClassVar[bool] = True

    def body(self) -> bytes:
        return b""

    def to_frame(self, sequence: int) -> Frame:
        flag = FLAG_IS_COMMAND
        if self.needs_response:
            flag |= FLAG_NEEDS_RESPONSE
        return Frame(flag=flag, opcode=self.opcode, payload=bytes((sequence & 0xFF,)) + self.body())


@dataclass(frozen=True)
class GetTargetInfo(Command[TargetInfoResponse]):
    mask: int = 0xFFFFFFFF
    platform: int = 0x00

    opcode = OpCode.GET_TARGET_INFO
    response_cls = TargetInfoResponse

    def body(self) -> bytes:
        return self.mask.to_bytes(4, "little") + bytes((self.platform,))


@dataclass(frozen=True)
class ReadFileOffset(Command[FileOffsetResponse]):
    opcode = OpCode.READ_FILE_OFFSET
    response_cls = FileOffsetResponse


@dataclass(frozen=True)
class InquireCanUpdate(Command[CanUpdateResponse]):
    firmware_header: bytes = b""

    opcode = OpCode.INQUIRE_CAN_UPDATE
    response_cls = CanUpdateResponse

    def body(self) -> bytes:
        return self.firmware_header


@dataclass(frozen=True)
class EnterUpdateMode(Command[ResultResponse]):
    opcode = OpCode.ENTER_UPDATE_MODE
    response_cls = ResultResponse


@dataclass(frozen=True)
class ExitUpdateMode(Command[ResultResponse]):
    opcode = OpCode.EXIT_UPDATE_MODE
    response_cls = ResultResponse


@dataclass(frozen=True)
class QueryUpdateResult(Command[UpdateResultResponse]):
    opcode = OpCode.QUERY_UPDATE_RESULT
    response_cls = UpdateResultResponse


@dataclass(frozen=True)
class RebootDevice(Command[Response]):
    operation: int = REBOOT_OP_REBOOT

    opcode = OpCode.REBOOT_DEVICE
    needs_response = False

    def body(self) -> bytes:
        return bytes((self.operation,))


@dataclass(frozen=True)
class NotifyFileSize(Command[FileSizeAckResponse]):
    total_size: int = 0
    current_offset: int | None = None

    opcode = OpCode.NOTIFY_FILE_SIZE
    response_cls = FileSizeAckResponse

    def body(self) -> bytes:
        body = self.total_size.to_bytes(4, "big")
        if self.current_offset is not None:
            body += self.current_offset.to_bytes(4, "big")
        return body


@dataclass(frozen=True)
class ChangeCommunicationWay(Command[CommunicationWayResponse]):
    way: int = 0
    supports_new_reboot_way: bool = False

    opcode = OpCode.CHANGE_COMMUNICATION_WAY
    response_cls = CommunicationWayResponse

    def body(self) -> bytes:
        return bytes((self.way & 0xFF, 1 if self.supports_new_reboot_way else 0))


@dataclass(frozen=True)
class FileBlockRequest:
    """Device-initiated request for ``length`` firmware bytes at ``offset``."""

    sequence: int
    offset: int
    length: int

    @property
    def is_result_query(self) -> bool:
        return self.offset == 0 and self.length == 0

    @classmethod
    def from_frame(cls, frame: Frame) -> "FileBlockRequest":
        reader = _Reader(frame.payload, "file block request")
        sequence = reader.u8()
        offset = reader.u32_le()
        length = int.from_bytes(reader.take(2), "little")
        return cls(sequence=sequence, offset=offset, length=length)


def response_frame(opcode: int, status: int, sequence: int, body: bytes = b"") -> Frame:
    return Frame(flag=0x00, opcode=opcode, payload=bytes((status & 0xFF, sequence & 0xFF)) + body)


def file_block_body(request: FileBlockRequest, data: bytes = b"") -> bytes:
    """Body of the host's FileBlock answer: requested offset and length, then data."""
    return request.offset.to_bytes(4, "little") + request.length.to_bytes(2, "little") + data
