"""Stable public API for building tooling on top of rcspota.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from rcspota.core.config import LoadedConfig, load_config
from rcspota.core.errors import (
    CommandTimeoutError,
    ConfigLoadError,
    ConfigValidationError,
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
    TransportSendError,
    describe_error,
)
from rcspota.core.firmware import FirmwareInfo, FirmwareService
from rcspota.core.model import (
    DeviceInfo,
    DiscoveredDevice,
    OtaConfig,
    OtaProgress,
    OtaResult,
    OtaState,
    TransportSpec,
)
from rcspota.core.orchestrator import OtaManager, ProgressListener, StateListener
from rcspota.transports.base import DeviceScanner
from rcspota.transports.ble_gatt import BleakDevice, BleakDeviceScanner

__all__ = [
    "RcspOtaError",
    "CommandTimeoutError",
    "ConfigLoadError",
    "ConfigValidationError",
    "DeviceReportedError",
    "DeviceSelectionError",
    "FirmwareValidationError",
    "InvariantViolationError",
    "MalformedFrameError",
    "ProtocolError",
    "ReconnectTimeoutError",
    "TransportError",
    "TransportConnectError",
    "TransportSendError",
    "OtaErrorCode",
    "describe_error",
    "DeviceInfo",
    "DiscoveredDevice",
    "FirmwareInfo",
    "LoadedConfig",
    "OtaConfig",
    "OtaProgress",
    "OtaResult",
    "OtaState",
    "TransportSpec",
    "OtaManager",
    "BleakDevice",
    "BleakDeviceScanner",
    "Client",
]


class Client:
    """Public client for scanning, firmware inspection and upgrades.

    A `Client` wraps configuration loading, the bleak transport and the OTA
    state machine behind a blocking API for scripts and CLIs. Async callers can
    use `upgrade_async` from their own event loop.
    """

    def __init__(
        self,
        *,
        scanner: DeviceScanner | None = None,
        config: OtaConfig | None = None,
        config_path: str | Path | None = None,
        firmware: FirmwareService | None = None,
    ) -> None:
        if config is None:
            loaded = load_config(config_path)
            config = loaded.config
            self.config_source = loaded.source
        else:
            self.config_source = None
        self._config = config
        self._scanner = scanner or BleakDeviceScanner(config.transport)
        self._firmware = firmware or FirmwareService()
        self._manager: OtaManager | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def config(self) -> OtaConfig:
        return self._config

    def scan(self, timeout: float | None = None) -> list[DiscoveredDevice]:
        discover = getattr(self._scanner, "discover", None)
        if discover is None:
            raise DeviceSelectionError("Configured scanner cannot list nearby devices")
        return asyncio.run(discover(timeout))

    def inspect_firmware(self, path: str | Path) -> FirmwareInfo:
        validation = self._firmware.validate(path)
        if not validation.ok:
            raise FirmwareValidationError(validation.message)
        return self._firmware.describe(validation.data)

    def upgrade(
        self,
        device_id: str,
        firmware_path: str | Path,
        *,
        on_state: StateListener | None = None,
        on_progress: ProgressListener | None = None,
    ) -> OtaResult:
        return asyncio.run(
            self.upgrade_async(device_id, firmware_path, on_state=on_state, on_progress=on_progress)
        )

    async def upgrade_async(
        self,
        device_id: str,
        firmware_path: str | Path,
        *,
        on_state: StateListener | None = None,
        on_progress: ProgressListener | None = None,
    ) -> OtaResult:
        manager = OtaManager(self._scanner, firmware=self._firmware, config=self._config)
        removers = []
        if on_state is not None:
            removers.append(manager.add_state_listener(on_state))
        if on_progress is not None:
            removers.append(manager.add_progress_listener(on_progress))
        self._manager = manager
        self._loop = asyncio.get_running_loop()
        try:
            result = await manager.start_ota(device_id, str(firmware_path))
            if result.pending:
                try:
                    result = await manager.wait_for_completion()
                except asyncio.CancelledError:
                    manager.cancel_ota()
                    await manager.wait_for_completion()
                    raise
            return result
        finally:
            for remove in removers:
                remove()
            self._manager = None
            self._loop = None

    def cancel(self) -> bool:
        """Cancel a running upgrade; safe to call from another thread."""
        manager, loop = self._manager, self._loop
        if manager is None or loop is None:
            return False
        loop.call_soon_threadsafe(manager.cancel_ota)
        return True
