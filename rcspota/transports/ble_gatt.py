"""BLE GATT transport implementation backed by bleak."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from rcspota.core.model import DiscoveredDevice, TransportSpec, mac_to_int
from rcspota.transports.base import ConnectionCallback, DiscoveryCallback, NotifyCallback

_MAC_RE = re.compile(r"^[0-9A-F]{2}(?::[0-9A-F]{2}){5}$", re.IGNORECASE)
_ATT_HEADER_SIZE = 3
_MIN_CHUNK = 20
LOGGER = logging.getLogger(__name__)


class BleakDevice:
    """One accessory reached through a BleakClient."""

    def __init__(self, device: BLEDevice | str, spec: TransportSpec | None = None, name: str = "") -> None:
        self._spec = spec or TransportSpec()
        self._target = device
        self._device_id = device if isinstance(device, str) else device.address
        self._name = name or (getattr(device, "name", None) or "")
        self._client = BleakClient(device, disconnected_callback=self._on_disconnect)
        self._listeners: list[ConnectionCallback] = []
        self._notifying = False

    @property
    def device_id(self) -> str:
        return self._device_id

    @property
    def name(self) -> str:
        return self._name

    @property
    def address(self) -> int:
        # CoreBluetooth hides the MAC behind a per-host UUID.
        if not _MAC_RE.match(self._device_id):
            return 0
        return mac_to_int(self._device_id)

    @property
    def is_connected(self) -> bool:
        return self._client.is_connected

    async def connect(self) -> bool:
        LOGGER.debug("Connecting to %s", self._device_id)
        try:
            await self._client.connect(timeout=self._spec.connect_timeout_s)
        except (BleakError, asyncio.TimeoutError, OSError) as exc:
            LOGGER.warning("BLE connect failed for %s: %s", self._device_id, exc)
            return False
        LOGGER.info("Connected to %s (mtu=%d)", self._device_id, self._client.mtu_size)
        self._notify_listeners(True)
        return True

    async def disconnect(self) -> None:
        if not self._client.is_connected:
            return
        try:
            await self._client.disconnect()
        except BleakError as exc:
            LOGGER.warning("BLE disconnect failed for %s: %s", self._device_id, exc)

    async def write(self, data: bytes) -> bool:
        if not self._client.is_connected:
            LOGGER.warning("Write to %s while disconnected", self._device_id)
            return False
        chunk_size = max(_MIN_CHUNK, self._client.mtu_size - _ATT_HEADER_SIZE)
        try:
            for start in range(0, len(data), chunk_size):
                await self._client.write_gatt_char(
                    self._spec.write_char_uuid,
                    data[start : start + chunk_size],
                    response=self._spec.write_with_response,
                )
        except BleakError as exc:
            LOGGER.warning("BLE write to %s failed: %s", self._device_id, exc)
            return False
        return True

    async def subscribe_notify(self, callback: NotifyCallback) -> bool:
        def _handler(_: Any, data: bytearray) -> None:
            callback(bytes(data))

        try:
            await self._client.start_notify(self._spec.notify_char_uuid, _handler)
        except BleakError as exc:
            LOGGER.warning("Could not subscribe to %s on %s: %s", self._spec.notify_char_uuid, self._device_id, exc)
            return False
        self._notifying = True
        return True

    async def unsubscribe_notify(self) -> None:
        if not self._notifying:
            return
        self._notifying = False
        if not self._client.is_connected:
            return
        try:
            await self._client.stop_notify(self._spec.notify_char_uuid)
        except BleakError as exc:
            LOGGER.debug("stop_notify on %s failed: %s", self._device_id, exc)

    async def request_mtu(self, size: int) -> int:
        # bleak negotiates the MTU during connect; report what it settled on.
        mtu = self._client.mtu_size
        if mtu < size:
            LOGGER.info("Requested transfer unit %d, link offers %d", size, mtu)
        return mtu

    def add_connection_listener(self, callback: ConnectionCallback) -> None:
        self._listeners.append(callback)

    def remove_connection_listener(self, callback: ConnectionCallback) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _on_disconnect(self, _: BleakClient) -> None:
        LOGGER.info("%s disconnected", self._device_id)
        self._notifying = False
        self._notify_listeners(False)

    def _notify_listeners(self, connected: bool) -> None:
        for listener in list(self._listeners):
            listener(connected)


class BleakDeviceScanner:
    """Device lookup and advertisement scanning through BleakScanner."""

    def __init__(self, spec: TransportSpec | None = None, *, scan_timeout_s: float = 10.0) -> None:
        self._spec = spec or TransportSpec()
        self._scan_timeout_s = scan_timeout_s
        self._scanner: BleakScanner | None = None

    async def find_device(self, device_id: str) -> BleakDevice | None:
        LOGGER.debug("Looking up %s", device_id)
        found = await BleakScanner.find_device_by_address(device_id, timeout=self._scan_timeout_s)
        if found is None:
            return None
        return BleakDevice(found, self._spec)

    async def start_scan(self, callback: DiscoveryCallback) -> None:
        await self.stop_scan()

        def _on_detect(device: BLEDevice, advertisement: AdvertisementData) -> None:
            callback(BleakDevice(device, self._spec, name=advertisement.local_name or ""))

        self._scanner = BleakScanner(detection_callback=_on_detect)
        await self._scanner.start()

    async def stop_scan(self) -> None:
        scanner = self._scanner
        self._scanner = None
        if scanner is None:
            return
        try:
            await scanner.stop()
        except BleakError as exc:
            LOGGER.debug("Scanner stop failed: %s", exc)

    async def discover(self, timeout: float | None = None) -> list[DiscoveredDevice]:
        found = await BleakScanner.discover(timeout=timeout or self._scan_timeout_s, return_adv=True)
        devices = [
            DiscoveredDevice(
                device_id=device.address,
                name=advertisement.local_name or device.name or "",
                rssi=advertisement.rssi,
            )
            for device, advertisement in found.values()
        ]
        return sorted(devices, key=lambda d: d.rssi if d.rssi is not None else -999, reverse=True)
