"""RCSP protocol session: sequencing, send gate and response correlation."""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from collections.abc import Callable
from typing import cast

from rcspota.core.errors import (
    CommandTimeoutError,
    InvariantViolationError,
    TransportConnectError,
    TransportError,
    TransportSendError,
)
from rcspota.protocol.commands import Command, R, response_frame
from rcspota.protocol.packet import Frame, encode
from rcspota.protocol.parser import FrameParser
from rcspota.transports.base import BluetoothDevice

LOGGER = logging.getLogger(__name__)

CommandListener = Callable[[Frame], None]


class RcspSession:
    """One RCSP conversation over one connected device.

    Only one request is in flight at a time. Responses are matched to their
    request by ``(opcode, sequence)``; command frames sent by the device are
    handed to the registered command listeners instead.
    """

    def __init__(self, device: BluetoothDevice) -> None:
        self._device = device
        self._parser = FrameParser()
        self._pending: dict[tuple[int, int], asyncio.Future[Frame]] = {}
        self._gate = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._sequences = itertools.cycle(range(256))
        self._command_listeners: list[CommandListener] = []
        self._initialized = False
        self._closed = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: int | None = None

    @property
    def device(self) -> BluetoothDevice:
        return self._device

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def next_sequence(self) -> int:
        return next(self._sequences)

    async def initialize(self) -> None:
        if self._initialized:
            raise InvariantViolationError("RCSP session already initialized")
        self._initialized = True
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        if not await self._device.subscribe_notify(self._on_notify):
            raise TransportConnectError(f"Could not subscribe to notifications on {self._device.device_id}")
        LOGGER.debug("RCSP session initialized on %s", self._device.device_id)

    def add_command_listener(self, listener: CommandListener) -> Callable[[], None]:
        self._command_listeners.append(listener)

        def _remove() -> None:
            if listener in self._command_listeners:
                self._command_listeners.remove(listener)

        return _remove

    async def send_command(self, command: Command[R], timeout: float) -> R:
        self._ensure_ready()
        if not command.needs_response:
            raise InvariantViolationError(f"{type(command).__name__} expects no response; use post()")

        async with self._gate:
            sequence = self.next_sequence()
            key = (int(command.opcode), sequence)
            if key in self._pending:
                raise InvariantViolationError(f"Request op=0x{key[0]:02X} sn={sequence} already pending")
            future: asyncio.Future[Frame] = asyncio.get_running_loop().create_future()
            self._pending[key] = future
            try:
                await self._write(command.to_frame(sequence))
                frame = await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError:
                raise CommandTimeoutError(
                    f"No response to {type(command).__name__} (op=0x{key[0]:02X}, sn={sequence}) "
                    f"within {timeout:.1f}s"
                ) from None
            finally:
                if self._pending.get(key) is future:
                    del self._pending[key]

        response = command.response_cls.from_frame(frame)
        LOGGER.debug("Response to %s: status=0x%02X", type(command).__name__, response.status)
        return cast(R, response)

    async def post(self, command: Command[R]) -> None:
        """Write a command without waiting for (or expecting) a response."""
        self._ensure_ready()
        async with self._gate:
            await self._write(command.to_frame(self.next_sequence()))

    async def send_response(self, opcode: int, status: int, sequence: int, body: bytes = b"") -> None:
        """Answer a device-initiated command; bypasses the request gate."""
        self._ensure_ready()
        await self._write(response_frame(opcode, status, sequence, body))

    def feed(self, data: bytes) -> None:
        LOGGER.debug("RX %s", data.hex(" "))
        self._parser.feed(data)
        for frame in self._parser.frames():
            self._dispatch(frame)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for key, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(TransportError(f"Session closed while op=0x{key[0]:02X} was pending"))
        self._pending.clear()
        self._command_listeners.clear()
        self._parser.clear()
        if self._initialized:
            await self._device.unsubscribe_notify()
        LOGGER.debug("RCSP session on %s closed", self._device.device_id)

    def _ensure_ready(self) -> None:
        if not self._initialized:
            raise InvariantViolationError("RCSP session used before initialize()")
        if self._closed:
            raise InvariantViolationError("RCSP session used after close()")

    async def _write(self, frame: Frame) -> None:
        data = encode(frame)
        async with self._write_lock:
            LOGGER.debug("TX %s", frame)
            if not await self._device.write(data):
                raise TransportSendError(f"Write of op=0x{frame.opcode:02X} to {self._device.device_id} failed")

    def _on_notify(self, data: bytes) -> None:
        if self._closed:
            return
        if self._loop is not None and threading.get_ident() != self._loop_thread:
            self._loop.call_soon_threadsafe(self.feed, bytes(data))
            return
        self.feed(bytes(data))

    def _dispatch(self, frame: Frame) -> None:
        if frame.is_command:
            for listener in list(self._command_listeners):
                try:
                    listener(frame)
                except Exception:
                    LOGGER.exception("Command listener failed for op=0x%02X", frame.opcode)
            return

        if len(frame.payload) < 2:
            LOGGER.warning("Dropping short response: %s", frame)
            return
        key = (frame.opcode, frame.payload[1])
        future = self._pending.pop(key, None)
        if future is None or future.done():
            LOGGER.warning("Unmatched response op=0x%02X sn=%d", key[0], key[1])
            return
        future.set_result(frame)
