from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from rcspota.core.model import OtaConfig, mac_to_int
from rcspota.protocol.packet import FLAG_IS_COMMAND, FLAG_NEEDS_RESPONSE, Frame, OpCode, encode
from rcspota.protocol.parser import FrameParser


def target_info_body(
    *,
    name: str = "JL-Buds",
    version: str = "1.0.0",
    version_code: int = 0x0100,
    battery: int = 80,
    dual_bank: bool = False,
    mac: str = "10:20:30:40:50:60",
    needs_bootloader: bool = False,
    mandatory: bool = False,
    new_reboot_way: bool = True,
) -> bytes:
    name_raw = name.encode()
    version_raw = version.encode()
    return b"".join(
        (
            bytes((len(name_raw),)),
            name_raw,
            bytes((len(version_raw),)),
            version_raw,
            version_code.to_bytes(4, "little"),
            bytes((0x02, battery, 1 if dual_bank else 0)),
            mac_to_int(mac).to_bytes(6, "big"),
            bytes((0x00, int(needs_bootloader), int(mandatory), int(new_reboot_way))),
        )
    )


class FakeAccessory:
    """Scripted RCSP accessory answering host frames through loop callbacks."""

    def __init__(
        self,
        device_id: str = "10:20:30:40:50:60",
        *,
        name: str = "JL-Buds",
        dual_bank: bool = True,
        needs_bootloader: bool = False,
        mandatory: bool = False,
        new_reboot_way: bool = True,
        version: str = "1.0.0",
        can_update: int = 0,
        update_result: int = 0,
        file_offset: int = 0,
        block_size: int = 256,
        drive_transfer: bool = True,
        duplicate_first_request: bool = False,
        announce_size: bool = False,
        disconnect_on_reboot: bool = True,
        disconnect_on_comm_change: bool = True,
        refuse_connect: bool = False,
    ) -> None:
        self._device_id = device_id
        self._name = name
        self.info = target_info_body(
            name=name,
            version=version,
            dual_bank=dual_bank,
            mac=device_id,
            needs_bootloader=needs_bootloader,
            mandatory=mandatory,
            new_reboot_way=new_reboot_way,
        )
        self.can_update = can_update
        self.update_result = update_result
        self.file_offset = file_offset
        self.block_size = block_size
        self.drive_transfer = drive_transfer
        self.duplicate_first_request = duplicate_first_request
        self.announce_size = announce_size
        self.disconnect_on_reboot = disconnect_on_reboot
        self.disconnect_on_comm_change = disconnect_on_comm_change
        self.refuse_connect = refuse_connect
        self.silent: set[int] = set()
        self.written: list[Frame] = []
        self.connected = False
        self.connect_calls = 0
        self.total = 0
        self.served = bytearray()
        self._high_water = 0
        self._notify: Callable[[bytes], None] | None = None
        self._listeners: list[Callable[[bool], None]] = []
        self._parser = FrameParser()
        self._sequence = 0

    @property
    def device_id(self) -> str:
        return self._device_id

    @property
    def name(self) -> str:
        return self._name

    @property
    def address(self) -> int:
        return mac_to_int(self._device_id)

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> bool:
        self.connect_calls += 1
        if self.refuse_connect:
            return False
        self.connected = True
        for listener in list(self._listeners):
            listener(True)
        return True

    async def disconnect(self) -> None:
        self._drop()

    async def write(self, data: bytes) -> bool:
        if not self.connected:
            return False
        self._parser.feed(data)
        for frame in self._parser.frames():
            self.written.append(frame)
            self._handle(frame)
        return True

    async def subscribe_notify(self, callback: Callable[[bytes], None]) -> bool:
        self._notify = callback
        return True

    async def unsubscribe_notify(self) -> None:
        self._notify = None

    async def request_mtu(self, size: int) -> int:
        return min(size, 247)

    def add_connection_listener(self, callback: Callable[[bool], None]) -> None:
        self._listeners.append(callback)

    def remove_connection_listener(self, callback: Callable[[bool], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def commands(self, opcode: int) -> list[Frame]:
        return [f for f in self.written if f.is_command and f.opcode == opcode]

    def push_command(self, opcode: int, body: bytes) -> int:
        sequence = self._sequence
        self._sequence = (self._sequence + 1) & 0xFF
        frame = Frame(flag=FLAG_IS_COMMAND | FLAG_NEEDS_RESPONSE, opcode=opcode, payload=bytes((sequence,)) + body)
        self._send(frame)
        return sequence

    def request_block(self, offset: int, length: int) -> int:
        return self.push_command(OpCode.FILE_BLOCK, offset.to_bytes(4, "little") + length.to_bytes(2, "little"))

    def _reply(self, request: Frame, body: bytes = b"", status: int = 0) -> None:
        self._send(Frame(flag=0x00, opcode=request.opcode, payload=bytes((status, request.payload[0])) + body))

    def _send(self, frame: Frame) -> None:
        asyncio.get_running_loop().call_soon(self._deliver, encode(frame))

    def _deliver(self, data: bytes) -> None:
        if self.connected and self._notify is not None:
            self._notify(data)

    def _drop(self) -> None:
        if not self.connected:
            return
        self.connected = False
        for listener in list(self._listeners):
            listener(False)

    def _schedule_drop(self) -> None:
        asyncio.get_running_loop().call_soon(self._drop)

    def _next_block(self, offset: int) -> None:
        if offset >= self.total:
            self.request_block(0, 0)
            return
        self.request_block(offset, min(self.block_size, self.total - offset))

    def _handle(self, frame: Frame) -> None:
        if not frame.is_command:
            if frame.opcode == OpCode.FILE_BLOCK:
                self._on_block_response(frame)
            return
        if frame.opcode in self.silent:
            return

        opcode = frame.opcode
        if opcode == OpCode.GET_TARGET_INFO:
            self._reply(frame, self.info)
        elif opcode == OpCode.INQUIRE_CAN_UPDATE:
            self._reply(frame, bytes((self.can_update,)))
        elif opcode == OpCode.READ_FILE_OFFSET:
            self._reply(frame, self.file_offset.to_bytes(4, "little"))
        elif opcode == OpCode.ENTER_UPDATE_MODE:
            self._reply(frame, b"\x00")
            if self.announce_size:
                self.push_command(OpCode.NOTIFY_FILE_SIZE, (0x1234).to_bytes(4, "big"))
        elif opcode == OpCode.EXIT_UPDATE_MODE:
            self._reply(frame, b"\x00")
        elif opcode == OpCode.NOTIFY_FILE_SIZE:
            self.total = int.from_bytes(frame.payload[1:5], "big")
            self._reply(frame)
            if self.drive_transfer:
                self._next_block(self.file_offset)
                if self.duplicate_first_request:
                    self._sequence = (self._sequence - 1) & 0xFF
                    self._next_block(self.file_offset)
        elif opcode == OpCode.QUERY_UPDATE_RESULT:
            self._reply(frame, bytes((self.update_result,)))
        elif opcode == OpCode.CHANGE_COMMUNICATION_WAY:
            self._reply(frame, (0x0200).to_bytes(2, "little"))
            if self.disconnect_on_comm_change:
                self._schedule_drop()
        elif opcode == OpCode.REBOOT_DEVICE:
            if self.disconnect_on_reboot:
                self._schedule_drop()

    def _on_block_response(self, frame: Frame) -> None:
        status = frame.payload[0]
        offset = int.from_bytes(frame.payload[2:6], "little")
        length = int.from_bytes(frame.payload[6:8], "little")
        data = frame.payload[8:]
        if status != 0 or (offset == 0 and length == 0):
            return
        end = offset + len(data)
        if end <= self._high_water:
            return
        self._high_water = end
        self.served.extend(data)
        if self.drive_transfer:
            self._next_block(end)


class FakeScanner:
    def __init__(self, *devices: FakeAccessory, advertised: tuple[FakeAccessory, ...] = ()) -> None:
        self.devices = {device.device_id: device for device in devices}
        self.advertised = list(advertised)
        self.scanning = False
        self.scan_starts = 0
        self._callback: Callable[[FakeAccessory], None] | None = None

    async def find_device(self, device_id: str) -> FakeAccessory | None:
        return self.devices.get(device_id)

    async def start_scan(self, callback: Callable[[FakeAccessory], None]) -> None:
        self.scanning = True
        self.scan_starts += 1
        self._callback = callback
        loop = asyncio.get_running_loop()
        for device in self.advertised:
            loop.call_soon(self._report, device)

    async def stop_scan(self) -> None:
        self.scanning = False
        self._callback = None

    def _report(self, device: FakeAccessory) -> None:
        if self._callback is not None:
            self._callback(device)


@pytest.fixture
def firmware_file(tmp_path: Path) -> Path:
    path = tmp_path / "update.ufw"
    path.write_bytes(bytes(i % 251 for i in range(1000)))
    return path


@pytest.fixture
def large_firmware_file(tmp_path: Path) -> Path:
    path = tmp_path / "large.ufw"
    path.write_bytes(bytes(i % 253 for i in range(10240)))
    return path


@pytest.fixture
def fast_config() -> OtaConfig:
    return OtaConfig(
        command_timeout_s=1.0,
        reconnect_timeout_s=2.0,
        offline_timeout_s=0.5,
        reconnect_settle_s=0.0,
        max_retries=2,
    )
