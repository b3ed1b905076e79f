"""Transport interfaces consumed by the protocol session and orchestrator."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

NotifyCallback = Callable[[bytes], None]
ConnectionCallback = Callable[[bool], None]


class BluetoothDevice(Protocol):
    @property
    def device_id(self) -> str:
        """Stable identifier used to look the device up (MAC on most platforms)."""

    @property
    def name(self) -> str:
        """Advertised name."""

    @property
    def address(self) -> int:
        """48-bit Bluetooth address as an integer, 0 when unknown."""

    @property
    def is_connected(self) -> bool:
        """Whether the GATT link is up."""

    async def connect(self) -> bool:
        """Connect to the device; return False instead of raising on failure."""

    async def disconnect(self) -> None:
        """Drop the link; a no-op when already disconnected."""

    async def write(self, data: bytes) -> bool:
        """Write raw bytes to the RCSP write characteristic."""

    async def subscribe_notify(self, callback: NotifyCallback) -> bool:
        """Route RCSP notifications to ``callback``."""

    async def unsubscribe_notify(self) -> None:
        """Stop routing notifications."""

    async def request_mtu(self, size: int) -> int:
        """Ask for a larger transfer unit and return the effective one."""

    def add_connection_listener(self, callback: ConnectionCallback) -> None:
        """Register a callback receiving connection status changes."""

    def remove_connection_listener(self, callback: ConnectionCallback) -> None:
        """Unregister a connection status callback."""


DiscoveryCallback = Callable[[BluetoothDevice], None]


class DeviceScanner(Protocol):
    async def find_device(self, device_id: str) -> BluetoothDevice | None:
        """Resolve a device id to a connectable device."""

    async def start_scan(self, callback: DiscoveryCallback) -> None:
        """Start scanning and report every advertisement to ``callback``."""

    async def stop_scan(self) -> None:
        """Stop a scan started with ``start_scan``."""
