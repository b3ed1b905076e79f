"""Firmware file validation, block reads and checksums."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)

MAX_FIRMWARE_SIZE = 50 * 1024 * 1024
FIRMWARE_HEADER_SIZE = 256
KNOWN_EXTENSIONS = (".ufw", ".bin")


@dataclass(frozen=True)
class FirmwareValidation:
    ok: bool
    message: str
    data: bytes = b""


@dataclass(frozen=True)
class FirmwareInfo:
    size: int
    crc16: int
    header: bytes


class FirmwareService:
    def validate(self, path: str | Path) -> FirmwareValidation:
        firmware_path = Path(path)
        if not firmware_path.is_file():
            return FirmwareValidation(ok=False, message=f"Firmware file not found: {firmware_path}")
        if firmware_path.suffix.lower() not in KNOWN_EXTENSIONS:
            LOGGER.warning("Unexpected firmware extension %r for %s", firmware_path.suffix, firmware_path)

        try:
            size = firmware_path.stat().st_size
            if size > MAX_FIRMWARE_SIZE:
                return FirmwareValidation(
                    ok=False,
                    message=f"Firmware file too large: {size} bytes (max {MAX_FIRMWARE_SIZE})",
                )
            data = firmware_path.read_bytes()
        except OSError as exc:
            return FirmwareValidation(ok=False, message=f"Could not read firmware file {firmware_path}: {exc}")

        if not data:
            return FirmwareValidation(ok=False, message=f"Firmware file is empty: {firmware_path}")
        return FirmwareValidation(ok=True, message=f"{len(data)} bytes", data=data)

    def read_block(self, data: bytes, offset: int, length: int) -> bytes:
        if offset < 0 or length <= 0 or offset >= len(data):
            return b""
        return data[offset : offset + length]

    def crc16(self, data: bytes) -> int:
        return crc16_modbus(data)

    def describe(self, data: bytes) -> FirmwareInfo:
        return FirmwareInfo(size=len(data), crc16=crc16_modbus(data), header=data[:FIRMWARE_HEADER_SIZE])


def crc16_modbus(data: bytes) -> int:
    crc = 0xFFFF
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 1:
                crc = (crc >> 1) ^ 0xA001
            else:
                crc >>= 1
    return crc
