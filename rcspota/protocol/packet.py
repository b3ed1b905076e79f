"""RCSP frame layout and single-frame encode/parse."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

HEADER = b"\xfe\xdc\xba"
TRAILER = 0xEF
MIN_FRAME_LENGTH = 8
MAX_PAYLOAD_LENGTH = 0xFFFF

FLAG_IS_COMMAND = 0x80
FLAG_NEEDS_RESPONSE = 0x40


class OpCode(IntEnum):
    GET_TARGET_INFO = 0x02
    CHANGE_COMMUNICATION_WAY = 0xD1
    READ_FILE_OFFSET = 0xE1
    INQUIRE_CAN_UPDATE = 0xE2
    ENTER_UPDATE_MODE = 0xE3
    EXIT_UPDATE_MODE = 0xE4
    FILE_BLOCK = 0xE5
    QUERY_UPDATE_RESULT = 0xE6
    REBOOT_DEVICE = 0xE7
    NOTIFY_FILE_SIZE = 0xE8


@dataclass(frozen=True)
class Frame:
    flag: int
    opcode: int
    payload: bytes = b""

    def __post_init__(self) -> None:
        if len(self.payload) > MAX_PAYLOAD_LENGTH:
            raise ValueError(f"payload of {len(self.payload)} bytes exceeds 16-bit length field")

    @property
    def is_command(self) -> bool:
        return bool(self.flag & FLAG_IS_COMMAND)

    @property
    def needs_response(self) -> bool:
        return bool(self.flag & FLAG_NEEDS_RESPONSE)

    def __str__(self) -> str:
        kind = "cmd" if self.is_command else "rsp"
        return f"{kind} op=0x{self.opcode:02X} len={len(self.payload)} {self.payload.hex(' ')}"


def encode(frame: Frame) -> bytes:
    length = len(frame.payload)
    return b"".join(
        (
            HEADER,
            bytes((frame.flag & 0xFF, frame.opcode & 0xFF)),
            length.to_bytes(2, "big"),
            frame.payload,
            bytes((TRAILER,)),
        )
    )


def parse(data: bytes) -> Frame | None:
    if len(data) < MIN_FRAME_LENGTH:
        return None
    if data[: len(HEADER)] != HEADER or data[-1] != TRAILER:
        return None
    declared = int.from_bytes(data[5:7], "big")
    if declared != len(data) - MIN_FRAME_LENGTH:
        return None
    return Frame(flag=data[3], opcode=data[4], payload=bytes(data[7:-1]))
