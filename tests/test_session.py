from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable

import pytest

from rcspota.core.errors import CommandTimeoutError, InvariantViolationError, TransportError
from rcspota.core.session import RcspSession
from rcspota.protocol.commands import ReadFileOffset, RebootDevice, response_frame
from rcspota.protocol.packet import Frame, OpCode, encode, parse


class ScriptedDevice:
    """Records writes; tests inject notifications by hand."""

    def __init__(self) -> None:
        self.writes: list[bytes] = []
        self.callback: Callable[[bytes], None] | None = None
        self.unsubscribed = False

    device_id = "AA:BB:CC:DD:EE:FF"
    name = "scripted"
    address = 0xAABBCCDDEEFF
    is_connected = True

    async def write(self, data: bytes) -> bool:
        self.writes.append(data)
        return True

    async def subscribe_notify(self, callback: Callable[[bytes], None]) -> bool:
        self.callback = callback
        return True

    async def unsubscribe_notify(self) -> None:
        self.unsubscribed = True

    def inject(self, frame: Frame) -> None:
        assert self.callback is not None
        self.callback(encode(frame))

    def last_sequence(self) -> int:
        frame = parse(self.writes[-1])
        assert frame is not None
        return frame.payload[0]


async def _ready_session() -> tuple[RcspSession, ScriptedDevice]:
    device = ScriptedDevice()
    session = RcspSession(device)  # type: ignore[arg-type]
    await session.initialize()
    return session, device


async def _until_written(device: ScriptedDevice, count: int) -> None:
    while len(device.writes) < count:
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_response_is_matched_by_opcode_and_sequence() -> None:
    session, device = await _ready_session()
    task = asyncio.create_task(session.send_command(ReadFileOffset(), timeout=1.0))
    await _until_written(device, 1)
    sequence = device.last_sequence()

    device.inject(response_frame(OpCode.READ_FILE_OFFSET, 0, (sequence + 1) & 0xFF, bytes(4)))
    device.inject(response_frame(OpCode.QUERY_UPDATE_RESULT, 0, sequence, b"\x00"))
    device.inject(response_frame(OpCode.READ_FILE_OFFSET, 0, sequence, (512).to_bytes(4, "little")))

    response = await task
    assert response.offset == 512
    assert session.pending_count == 0


@pytest.mark.asyncio
async def test_fragmented_response_is_reassembled() -> None:
    session, device = await _ready_session()
    task = asyncio.create_task(session.send_command(ReadFileOffset(), timeout=1.0))
    await _until_written(device, 1)
    raw = encode(response_frame(OpCode.READ_FILE_OFFSET, 0, device.last_sequence(), (7).to_bytes(4, "little")))

    assert device.callback is not None
    for start in range(0, len(raw), 3):
        device.callback(raw[start : start + 3])

    assert (await task).offset == 7


@pytest.mark.asyncio
async def test_timeout_removes_pending_entry() -> None:
    session, _ = await _ready_session()
    with pytest.raises(CommandTimeoutError):
        await session.send_command(ReadFileOffset(), timeout=0.05)
    assert session.pending_count == 0


@pytest.mark.asyncio
async def test_requests_are_serialized() -> None:
    session, device = await _ready_session()
    first = asyncio.create_task(session.send_command(ReadFileOffset(), timeout=1.0))
    second = asyncio.create_task(session.send_command(ReadFileOffset(), timeout=1.0))
    await _until_written(device, 1)
    for _ in range(5):
        await asyncio.sleep(0)
    assert len(device.writes) == 1

    device.inject(response_frame(OpCode.READ_FILE_OFFSET, 0, device.last_sequence(), bytes(4)))
    await first
    await _until_written(device, 2)
    device.inject(response_frame(OpCode.READ_FILE_OFFSET, 0, device.last_sequence(), bytes(4)))
    await second


def test_sequence_wraps_after_255() -> None:
    session = RcspSession(ScriptedDevice())  # type: ignore[arg-type]
    sequences = [session.next_sequence() for _ in range(258)]
    assert sequences[0] == 0
    assert sequences[255] == 255
    assert sequences[256:] == [0, 1]


@pytest.mark.asyncio
async def test_initialize_twice_is_rejected() -> None:
    session, _ = await _ready_session()
    with pytest.raises(InvariantViolationError):
        await session.initialize()


@pytest.mark.asyncio
async def test_use_before_initialize_is_rejected() -> None:
    session = RcspSession(ScriptedDevice())  # type: ignore[arg-type]
    with pytest.raises(InvariantViolationError):
        await session.send_command(ReadFileOffset(), timeout=0.1)


@pytest.mark.asyncio
async def test_device_commands_reach_listeners_not_waiters() -> None:
    session, device = await _ready_session()
    seen: list[Frame] = []
    remove = session.add_command_listener(seen.append)

    command = Frame(flag=0xC0, opcode=OpCode.FILE_BLOCK, payload=bytes.fromhex("03 00000000 0002"))
    device.inject(command)
    assert seen == [command]

    remove()
    device.inject(command)
    assert seen == [command]


@pytest.mark.asyncio
async def test_foreign_thread_notifications_are_marshalled() -> None:
    session, device = await _ready_session()
    task = asyncio.create_task(session.send_command(ReadFileOffset(), timeout=1.0))
    await _until_written(device, 1)
    reply = response_frame(OpCode.READ_FILE_OFFSET, 0, device.last_sequence(), (3).to_bytes(4, "little"))

    thread = threading.Thread(target=device.inject, args=(reply,))
    thread.start()
    thread.join()

    assert (await task).offset == 3


@pytest.mark.asyncio
async def test_post_and_send_response_write_frames() -> None:
    session, device = await _ready_session()
    await session.post(RebootDevice())
    await session.send_response(OpCode.NOTIFY_FILE_SIZE, 0, 0x21)

    reboot, answer = (parse(raw) for raw in device.writes)
    assert reboot is not None and reboot.opcode == OpCode.REBOOT_DEVICE and not reboot.needs_response
    assert answer == Frame(flag=0x00, opcode=OpCode.NOTIFY_FILE_SIZE, payload=b"\x00\x21")


@pytest.mark.asyncio
async def test_close_fails_pending_waiters() -> None:
    session, device = await _ready_session()
    task = asyncio.create_task(session.send_command(ReadFileOffset(), timeout=5.0))
    await _until_written(device, 1)

    await session.close()

    with pytest.raises(TransportError):
        await task
    assert device.unsubscribed
    with pytest.raises(InvariantViolationError):
        await session.post(RebootDevice())
