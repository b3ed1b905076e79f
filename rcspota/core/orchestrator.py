"""Upgrade orchestrator: the OTA state machine driving one device."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from rcspota.core.errors import (
    CommandTimeoutError,
    DeviceReportedError,
    DeviceSelectionError,
    FirmwareValidationError,
    InvariantViolationError,
    MalformedFrameError,
    OtaErrorCode,
    ProtocolError,
    RcspOtaError,
    ReconnectTimeoutError,
    TransportConnectError,
    TransportError,
    describe_error,
)
from rcspota.core.firmware import FIRMWARE_HEADER_SIZE, FirmwareService
from rcspota.core.model import (
    AddressScheme,
    DeviceInfo,
    OtaConfig,
    OtaProgress,
    OtaResult,
    OtaState,
    ReconnectInfo,
)
from rcspota.core.reconnect import ReconnectMatcher
from rcspota.core.session import RcspSession
from rcspota.core.timers import OneShotTimer
from rcspota.protocol.commands import (
    STATUS_FAILED,
    STATUS_SUCCESS,
    ChangeCommunicationWay,
    Command,
    EnterUpdateMode,
    ExitUpdateMode,
    FileBlockRequest,
    GetTargetInfo,
    InquireCanUpdate,
    NotifyFileSize,
    QueryUpdateResult,
    R,
    ReadFileOffset,
    RebootDevice,
    UpdateResultResponse,
    file_block_body,
)
from rcspota.protocol.packet import Frame, OpCode
from rcspota.transports.base import BluetoothDevice, DeviceScanner

LOGGER = logging.getLogger(__name__)

DUPLICATE_WINDOW_S = 0.05

StateListener = Callable[[OtaState], None]
ProgressListener = Callable[[OtaProgress], None]


class UpgradePath(str, Enum):
    """Branch taken after the device reported its capabilities."""

    DUAL_BANK = "dual_bank"
    BOOTLOADER = "bootloader"
    MANDATORY = "mandatory"
    SINGLE_BANK = "single_bank"

    @property
    def completes_after_first_reboot(self) -> bool:
        return self in (UpgradePath.DUAL_BANK, UpgradePath.MANDATORY)


class OtaManager:
    """Runs one firmware upgrade at a time against a BLE accessory.

    ``start_ota`` drives the session until it ends, except for the bootloader
    and single-bank paths: those need the device to reboot before any firmware
    is sent, so ``start_ota`` returns a pending result and the upgrade carries
    on from the transport's disconnect event. ``wait_for_completion`` returns
    the terminal result in every case.

    Three one-shot timers bound the session: the command timer (device silent
    while it should be driving the transfer), the offline timer (device still
    connected after it was told to reboot) and the reconnect timer (rebooted
    device not found again).
    """

    def __init__(
        self,
        scanner: DeviceScanner,
        *,
        firmware: FirmwareService | None = None,
        config: OtaConfig | None = None,
        matcher: ReconnectMatcher | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._scanner = scanner
        self._firmware = firmware or FirmwareService()
        self._config = config or OtaConfig()
        self._matcher = matcher or ReconnectMatcher(scanner)
        self._clock = clock
        self._state = OtaState.IDLE
        self._state_listeners: list[StateListener] = []
        self._progress_listeners: list[ProgressListener] = []
        self._command_timer = OneShotTimer("command")
        self._offline_timer = OneShotTimer("offline")
        self._reconnect_timer = OneShotTimer("reconnect")
        self._continuation_lock = asyncio.Lock()
        self._background: set[asyncio.Task[Any]] = set()
        self._finished: asyncio.Future[OtaResult] | None = None
        self._reset()

    def _reset(self) -> None:
        self._device: BluetoothDevice | None = None
        self._session: RcspSession | None = None
        self._remove_command_listener: Callable[[], None] | None = None
        self._device_info: DeviceInfo | None = None
        self._path: UpgradePath | None = None
        self._firmware_data = b""
        self._total = 0
        self._transferred = 0
        self._transfer_base = 0
        self._started_at = 0.0
        self._transfer_started_at = 0.0
        self._reconnect_info: ReconnectInfo | None = None
        self._reconnect_cycles = 0
        self._in_update_mode = False
        self._serving_blocks = False
        self._last_block: tuple[int, float] | None = None
        self._transfer_complete = asyncio.Event()
        self._update_result: UpdateResultResponse | None = None
        self._task: asyncio.Task[None] | None = None
        self._abort_error: RcspOtaError | None = None
        self._finishing = False
        self._pending_result: OtaResult | None = None
        self._cancel_event: asyncio.Event | None = None
        self._cancel_watch: asyncio.Task[None] | None = None

    @property
    def state(self) -> OtaState:
        return self._state

    @property
    def config(self) -> OtaConfig:
        return self._config

    @property
    def device_info(self) -> DeviceInfo | None:
        return self._device_info

    @property
    def progress(self) -> OtaProgress:
        elapsed = self._clock() - self._transfer_started_at if self._transfer_started_at else 0.0
        sent = self._transferred - self._transfer_base
        speed = sent / elapsed if elapsed > 0 and sent > 0 else 0.0
        return OtaProgress(
            total_bytes=self._total,
            transferred_bytes=self._transferred,
            speed=speed,
            state=self._state,
            elapsed_s=self._elapsed(),
        )

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        return _subscribe(self._state_listeners, listener)

    def add_progress_listener(self, listener: ProgressListener) -> Callable[[], None]:
        return _subscribe(self._progress_listeners, listener)

    async def start_ota(
        self,
        device_id: str,
        firmware_path: str,
        cancel_event: asyncio.Event | None = None,
    ) -> OtaResult:
        if not self._state.is_terminal:
            LOGGER.warning("Upgrade already running (%s), rejecting new request", self._state.value)
            return OtaResult(
                success=False,
                error_code=OtaErrorCode.BUSY,
                message=describe_error(OtaErrorCode.BUSY),
                final_state=self._state,
                elapsed_s=0.0,
                device_info=self._device_info,
            )

        self._reset()
        loop = asyncio.get_running_loop()
        finished = self._finished = loop.create_future()
        self._started_at = self._clock()
        # Must be non-terminal before the first await.
        self._set_state(OtaState.VALIDATING_FIRMWARE)
        self._cancel_event = cancel_event
        if cancel_event is not None:
            self._cancel_watch = loop.create_task(self._watch_cancel(cancel_event))

        task = self._run(self._initial_phase, device_id, firmware_path)
        try:
            await asyncio.shield(task)
            if finished.done():
                return finished.result()
            if self._pending_result is not None:
                return self._pending_result
            return await asyncio.shield(finished)
        except asyncio.CancelledError:
            self.cancel_ota()
            await asyncio.shield(finished)
            raise

    async def wait_for_completion(self) -> OtaResult:
        if self._finished is None:
            raise InvariantViolationError("No upgrade has been started")
        return await asyncio.shield(self._finished)

    def cancel_ota(self) -> bool:
        if self._finishing or self._state.is_terminal:
            return False
        LOGGER.info("Cancelling upgrade in state %s", self._state.value)
        self._abort_error = None
        self._interrupt()
        return True

    # Phases

    async def _initial_phase(self, device_id: str, firmware_path: str) -> None:
        validation = self._firmware.validate(firmware_path)
        if not validation.ok:
            raise FirmwareValidationError(validation.message)
        self._firmware_data = validation.data
        self._total = len(validation.data)
        LOGGER.info(
            "Firmware %s: %d bytes, crc16=0x%04X",
            firmware_path,
            self._total,
            self._firmware.crc16(validation.data),
        )

        self._set_state(OtaState.CONNECTING)
        device = await self._scanner.find_device(device_id)
        if device is None:
            raise DeviceSelectionError(f"Device '{device_id}' not found")
        if not await device.connect():
            raise TransportConnectError(f"Could not connect to {device_id}")
        await self._attach(device)

        self._set_state(OtaState.GETTING_DEVICE_INFO)
        info = await self._fetch_device_info()
        header = self._firmware_data[:FIRMWARE_HEADER_SIZE]
        verdict = await self._require_session().send_command(
            InquireCanUpdate(firmware_header=header), self._config.command_timeout_s
        )
        if not verdict.can_update:
            raise DeviceReportedError(f"Device refused the upgrade: {verdict.description}", code=verdict.error_code)

        if info.supports_dual_bank:
            self._path = UpgradePath.DUAL_BANK
        elif info.needs_bootloader:
            self._path = UpgradePath.BOOTLOADER
        elif info.mandatory_upgrade:
            self._path = UpgradePath.MANDATORY
        else:
            self._path = UpgradePath.SINGLE_BANK
        LOGGER.info("Upgrade path: %s", self._path.value)

        if self._path is UpgradePath.BOOTLOADER:
            await self._await_bootloader()
        elif self._path is UpgradePath.SINGLE_BANK:
            await self._prepare_single_bank(info)
        else:
            self._set_state(OtaState.READING_FILE_OFFSET)
            offset = await self._read_file_offset()
            self._set_state(OtaState.ENTERING_UPDATE_MODE)
            await self._enter_update_mode()
            await self._transfer(offset, resume=offset > 0)

    async def _await_bootloader(self) -> None:
        device = self._require_device()
        try:
            mtu = await device.request_mtu(self._config.transfer_block_size)
            LOGGER.info("Negotiated transfer unit: %d", mtu)
        except TransportError as exc:
            LOGGER.warning("Transfer unit negotiation failed: %s", exc)
        self._prepare_reconnect(offline_wait=False)
        self._command_timer.start(self._config.command_timeout_s, self._on_command_timeout)
        self._pending_result = self._build_result(OtaErrorCode.IN_PROGRESS, pending=True)

    async def _prepare_single_bank(self, info: DeviceInfo) -> None:
        session = self._require_session()
        # The device may drop the link as soon as it reads the request.
        self._prepare_reconnect(offline_wait=True)
        command = ChangeCommunicationWay(supports_new_reboot_way=info.supports_new_reboot_way)
        try:
            response = await session.send_command(command, self._config.command_timeout_s)
            LOGGER.info("Communication way change answered: status=0x%02X value=%d", response.status, response.value)
        except RcspOtaError as exc:
            LOGGER.warning("Communication way change failed, continuing: %s", exc)
        self._pending_result = self._build_result(OtaErrorCode.IN_PROGRESS, pending=True)

    async def _continue_after_disconnect(self, info: ReconnectInfo) -> None:
        async with self._continuation_lock:
            self._offline_timer.cancel()
            self._command_timer.cancel()
            await self._release_device()
            if self._config.reconnect_settle_s > 0:
                await asyncio.sleep(self._config.reconnect_settle_s)

            self._reconnect_timer.start(self._config.reconnect_timeout_s, self._on_reconnect_timeout)
            device = await self._matcher.wait_for_device(
                info, self._config.reconnect_timeout_s, self._cancel_event
            )
            self._reconnect_timer.cancel()
            if device is None:
                if self._cancel_event is not None and self._cancel_event.is_set():
                    raise asyncio.CancelledError()
                raise ReconnectTimeoutError(
                    f"Device did not reconnect within {self._config.reconnect_timeout_s:.0f}s"
                )
            self._reconnect_cycles += 1
            await self._attach(device)

            if self._path is None:
                raise InvariantViolationError("Reconnected before an upgrade path was chosen")
            if self._path.completes_after_first_reboot:
                await self._refresh_device_info()
                await self._finish(OtaState.COMPLETED, OtaErrorCode.SUCCESS)
            elif self._reconnect_cycles == 1:
                await self._resume_after_reboot()
            else:
                await self._refresh_device_info()
                self._set_state(OtaState.QUERYING_RESULT)
                result = await self._query_update_result()
                if not result.succeeded:
                    raise DeviceReportedError(
                        f"Device reported upgrade failure (0x{result.result:02X})", code=result.error_code
                    )
                await self._finish(OtaState.COMPLETED, OtaErrorCode.SUCCESS)

    async def _resume_after_reboot(self) -> None:
        self._set_state(OtaState.GETTING_DEVICE_INFO)
        info = await self._fetch_device_info()
        self._set_state(OtaState.READING_FILE_OFFSET)
        offset = await self._read_file_offset()
        if info.mandatory_upgrade or info.needs_bootloader:
            self._set_state(OtaState.ENTERING_UPDATE_MODE)
            await self._enter_update_mode()
        await self._transfer(offset, resume=True)

    async def _transfer(self, offset: int, *, resume: bool) -> None:
        self._transferred = offset
        self._transfer_base = offset
        self._transfer_started_at = self._clock()
        self._transfer_complete.clear()
        self._update_result = None
        self._last_block = None
        self._serving_blocks = True

        command = NotifyFileSize(total_size=self._total, current_offset=offset if resume else None)
        ack = await self._require_session().send_command(command, self._config.command_timeout_s)
        if not ack.ok:
            raise DeviceReportedError(f"Device rejected the file size (status 0x{ack.status:02X})")

        self._set_state(OtaState.TRANSFERRING_FILE)
        self._command_timer.start(self._config.command_timeout_s, self._on_command_timeout)
        await self._transfer_complete.wait()
        self._command_timer.cancel()
        self._serving_blocks = False

        result = self._update_result
        if result is None:
            raise InvariantViolationError("Transfer finished without an update result")
        if not result.succeeded:
            raise DeviceReportedError(f"Device reported upgrade failure (0x{result.result:02X})", code=result.error_code)
        LOGGER.info("Transfer verified by device, rebooting it")

        self._prepare_reconnect(offline_wait=True)
        try:
            await self._require_session().post(RebootDevice())
        except RcspOtaError as exc:
            LOGGER.warning("Reboot command failed: %s", exc)

    # Device-initiated commands

    def _on_device_command(self, frame: Frame) -> None:
        if frame.opcode == OpCode.FILE_BLOCK:
            try:
                request = FileBlockRequest.from_frame(frame)
            except MalformedFrameError as exc:
                LOGGER.warning("Ignoring malformed file block request: %s", exc)
                return
            now = self._clock()
            last = self._last_block
            if last is not None and last[0] == request.sequence and now - last[1] < DUPLICATE_WINDOW_S:
                LOGGER.debug("Duplicate file block request sn=%d ignored", request.sequence)
                return
            self._last_block = (request.sequence, now)
            self._spawn(self._handle_file_block(request))
        elif frame.opcode == OpCode.NOTIFY_FILE_SIZE:
            sequence = frame.payload[0] if frame.payload else 0
            self._spawn(self._acknowledge(frame.opcode, sequence))
        else:
            LOGGER.debug("Unhandled device command op=0x%02X", frame.opcode)

    async def _handle_file_block(self, request: FileBlockRequest) -> None:
        session = self._session
        if session is None or not self._serving_blocks:
            LOGGER.warning("File block request outside a transfer (offset=%d), ignored", request.offset)
            return
        self._set_state(OtaState.TRANSFERRING_FILE)
        self._command_timer.start(self._config.command_timeout_s, self._on_command_timeout)

        if request.is_result_query:
            # The acknowledgement must reach the device before the query.
            await session.send_response(OpCode.FILE_BLOCK, STATUS_SUCCESS, request.sequence, file_block_body(request))
            self._update_result = await self._query_update_result()
            self._transferred = self._total
            self._emit_progress()
            self._transfer_complete.set()
            return

        data = self._firmware.read_block(self._firmware_data, request.offset, request.length)
        if not data and request.offset > 0 and request.length > 0:
            LOGGER.warning("No firmware data at offset=%d length=%d", request.offset, request.length)
            await session.send_response(OpCode.FILE_BLOCK, STATUS_FAILED, request.sequence, file_block_body(request))
            return

        await session.send_response(
            OpCode.FILE_BLOCK, STATUS_SUCCESS, request.sequence, file_block_body(request, data)
        )
        self._transferred = min(self._transferred + len(data), self._total)
        self._emit_progress()

    async def _acknowledge(self, opcode: int, sequence: int) -> None:
        session = self._session
        if session is not None:
            await session.send_response(opcode, STATUS_SUCCESS, sequence)

    # Commands

    async def _send_with_retry(self, command: Command[R]) -> R:
        session = self._require_session()
        attempts = max(1, self._config.max_retries)
        for attempt in range(1, attempts):
            try:
                return await session.send_command(command, self._config.command_timeout_s)
            except CommandTimeoutError:
                LOGGER.warning("%s timed out (attempt %d/%d), retrying", type(command).__name__, attempt, attempts)
        return await session.send_command(command, self._config.command_timeout_s)

    async def _fetch_device_info(self) -> DeviceInfo:
        response = await self._send_with_retry(GetTargetInfo())
        if not response.ok:
            raise DeviceReportedError(f"Target info request failed (status 0x{response.status:02X})")
        info = response.device_info
        self._device_info = info
        LOGGER.info(
            "Device %s (%s) firmware %s, battery %d%%, dual-bank=%s",
            info.name,
            info.mac,
            info.version_name,
            info.battery_level,
            info.supports_dual_bank,
        )
        return info

    async def _refresh_device_info(self) -> None:
        try:
            await self._fetch_device_info()
        except (ProtocolError, DeviceReportedError) as exc:
            LOGGER.warning("Could not refresh device info after reboot: %s", exc)

    async def _read_file_offset(self) -> int:
        response = await self._send_with_retry(ReadFileOffset())
        if not response.ok:
            raise DeviceReportedError(f"File offset request failed (status 0x{response.status:02X})")
        if response.offset > self._total:
            LOGGER.warning("Device offset %d beyond firmware size %d, restarting", response.offset, self._total)
            return 0
        LOGGER.info("Device resumes at offset %d", response.offset)
        return response.offset

    async def _enter_update_mode(self) -> None:
        response = await self._require_session().send_command(EnterUpdateMode(), self._config.command_timeout_s)
        if not response.ok or response.result != 0:
            raise DeviceReportedError(
                f"Device refused to enter update mode (result 0x{response.result:02X})",
                code=OtaErrorCode.CAN_NOT_UPDATE,
            )
        self._in_update_mode = True

    async def _query_update_result(self) -> UpdateResultResponse:
        response = await self._send_with_retry(QueryUpdateResult())
        LOGGER.info("Device update result: 0x%02X", response.result)
        return response

    # Connection handling

    async def _attach(self, device: BluetoothDevice) -> None:
        self._device = device
        device.add_connection_listener(self._on_connection_changed)
        self._session = RcspSession(device)
        self._remove_command_listener = self._session.add_command_listener(self._on_device_command)
        await self._session.initialize()

    async def _release_device(self) -> None:
        session, device = self._session, self._device
        self._session = None
        self._device = None
        self._serving_blocks = False
        if self._remove_command_listener is not None:
            self._remove_command_listener()
            self._remove_command_listener = None
        if device is not None:
            device.remove_connection_listener(self._on_connection_changed)
        try:
            if session is not None:
                await session.close()
            if device is not None and device.is_connected:
                await device.disconnect()
        except RcspOtaError as exc:
            LOGGER.warning("Error while releasing device: %s", exc)

    def _prepare_reconnect(self, *, offline_wait: bool) -> None:
        device = self._require_device()
        info = self._device_info or DeviceInfo()
        scheme = AddressScheme.NEW if info.supports_new_reboot_way else AddressScheme.OLD
        self._reconnect_info = ReconnectInfo(address=device.address or info.address, scheme=scheme)
        self._set_state(OtaState.WAITING_RECONNECT)
        if offline_wait:
            self._offline_timer.start(self._config.offline_timeout_s, self._on_offline_timeout)

    def _on_connection_changed(self, connected: bool) -> None:
        if connected or self._finishing or self._state.is_terminal:
            return
        if self._reconnect_info is not None:
            LOGGER.info("Device disconnected, waiting for it to come back")
            self._schedule_continuation()
            return
        self._abort(TransportError("Connection to device lost"))

    def _schedule_continuation(self) -> None:
        info = self._reconnect_info
        if info is None or self._finishing:
            return
        self._reconnect_info = None
        self._run(self._continue_after_disconnect, info)

    def _on_offline_timeout(self) -> None:
        if self._reconnect_info is None or self._finishing:
            return
        LOGGER.info("Device still online after %.1fs, disconnecting", self._config.offline_timeout_s)
        self._spawn(self._disconnect_and_continue())

    async def _disconnect_and_continue(self) -> None:
        device = self._device
        if device is not None:
            await device.disconnect()
        self._schedule_continuation()

    def _on_command_timeout(self) -> None:
        self._abort(CommandTimeoutError(f"Device silent for {self._config.command_timeout_s:.0f}s"))

    def _on_reconnect_timeout(self) -> None:
        self._abort(ReconnectTimeoutError(f"Device did not reconnect within {self._config.reconnect_timeout_s:.0f}s"))

    async def _watch_cancel(self, event: asyncio.Event) -> None:
        await event.wait()
        self.cancel_ota()

    # Task plumbing and termination

    def _run(self, phase: Callable[..., Awaitable[None]], *args: Any) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(self._guarded(phase, *args))
        task.add_done_callback(self._on_phase_done)
        self._task = task
        return task

    async def _guarded(self, phase: Callable[..., Awaitable[None]], *args: Any) -> None:
        try:
            await phase(*args)
        except asyncio.CancelledError:
            if not self._finishing:
                await self._finish_interrupted()
        except RcspOtaError as exc:
            if not self._finishing:
                await self._finish(OtaState.FAILED, exc.code, str(exc))
        except Exception as exc:
            LOGGER.exception("Unexpected error during upgrade")
            if not self._finishing:
                await self._finish(OtaState.FAILED, OtaErrorCode.INTERNAL_ERROR, str(exc))

    def _on_phase_done(self, task: asyncio.Task[None]) -> None:
        # A task cancelled before its first step never reaches _guarded.
        if task.cancelled() and not self._finishing:
            self._spawn(self._finish_interrupted())

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, RcspOtaError):
            self._abort(exc)
        else:
            LOGGER.error("Background handler failed", exc_info=exc)
            self._abort(RcspOtaError(str(exc), code=OtaErrorCode.INTERNAL_ERROR))

    def _abort(self, error: RcspOtaError) -> None:
        if self._finishing or self._state.is_terminal:
            return
        LOGGER.warning("Aborting upgrade: %s", error)
        self._abort_error = error
        self._interrupt()

    def _interrupt(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        else:
            self._spawn(self._finish_interrupted())

    async def _finish_interrupted(self) -> None:
        if self._finishing:
            return
        error = self._abort_error
        if error is None:
            await self._finish(OtaState.CANCELLED, OtaErrorCode.USER_CANCELLED)
        else:
            await self._finish(OtaState.FAILED, error.code, str(error))

    async def _finish(self, state: OtaState, code: OtaErrorCode, message: str = "") -> OtaResult:
        if self._finishing:
            raise InvariantViolationError("Upgrade already finishing")
        self._finishing = True
        for timer in (self._command_timer, self._offline_timer, self._reconnect_timer):
            timer.cancel()
        self._reconnect_info = None
        self._serving_blocks = False
        current = asyncio.current_task()
        for task in list(self._background):
            if task is not current:
                task.cancel()
        if self._cancel_watch is not None and self._cancel_watch is not current:
            self._cancel_watch.cancel()

        session = self._session
        exit_update_mode = (
            state is OtaState.CANCELLED and self._path is UpgradePath.DUAL_BANK and self._in_update_mode
        )
        if exit_update_mode and session is not None:
            try:
                await session.send_command(ExitUpdateMode(), self._config.command_timeout_s)
            except RcspOtaError as exc:
                LOGGER.warning("Exit update mode failed: %s", exc)
        await self._release_device()

        if state is OtaState.COMPLETED:
            self._transferred = self._total
        result = self._build_result(code, message=message, state=state)
        self._set_state(state)
        self._emit_progress()
        if result.success:
            LOGGER.info("Upgrade completed in %.1fs", result.elapsed_s)
        else:
            LOGGER.error("Upgrade ended %s: %s (%d)", state.value, result.message, int(code))
        if self._finished is not None and not self._finished.done():
            self._finished.set_result(result)
        return result

    # Helpers

    def _build_result(
        self,
        code: OtaErrorCode,
        *,
        message: str = "",
        state: OtaState | None = None,
        pending: bool = False,
    ) -> OtaResult:
        return OtaResult(
            success=code is OtaErrorCode.SUCCESS,
            error_code=code,
            message=message or describe_error(code),
            final_state=state or self._state,
            elapsed_s=self._elapsed(),
            device_info=self._device_info,
            pending=pending,
        )

    def _elapsed(self) -> float:
        return self._clock() - self._started_at if self._started_at else 0.0

    def _require_session(self) -> RcspSession:
        if self._session is None:
            raise InvariantViolationError("No active RCSP session")
        return self._session

    def _require_device(self) -> BluetoothDevice:
        if self._device is None:
            raise InvariantViolationError("No connected device")
        return self._device

    def _set_state(self, state: OtaState) -> None:
        if state is self._state:
            return
        LOGGER.info("OTA state %s -> %s", self._state.value, state.value)
        self._state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                LOGGER.exception("State listener failed")

    def _emit_progress(self) -> None:
        if not self._progress_listeners:
            return
        progress = self.progress
        for listener in list(self._progress_listeners):
            try:
                listener(progress)
            except Exception:
                LOGGER.exception("Progress listener failed")


def _subscribe(listeners: list[Any], listener: Any) -> Callable[[], None]:
    listeners.append(listener)

    def _unsubscribe() -> None:
        if listener in listeners:
            listeners.remove(listener)

    return _unsubscribe
