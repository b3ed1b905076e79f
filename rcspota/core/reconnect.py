"""Rediscovery of a device whose advertised address changed across a reboot."""

from __future__ import annotations

import asyncio
import logging

from rcspota.core.device_match import matches
from rcspota.core.model import ReconnectInfo, int_to_mac
from rcspota.transports.base import BluetoothDevice, DeviceScanner

LOGGER = logging.getLogger(__name__)


class ReconnectMatcher:
    def __init__(self, scanner: DeviceScanner) -> None:
        self._scanner = scanner

    async def wait_for_device(
        self,
        info: ReconnectInfo,
        timeout: float,
        cancel_event: asyncio.Event | None = None,
    ) -> BluetoothDevice | None:
        """Scan until a matching device accepts a connection.

        Returns the first connected match, or ``None`` on timeout or when
        ``cancel_event`` is set. The scan is stopped on every exit path.
        """
        loop = asyncio.get_running_loop()
        found: asyncio.Future[BluetoothDevice] = loop.create_future()
        attempts: set[asyncio.Task[None]] = set()
        tried: set[str] = set()

        async def _connect(device: BluetoothDevice) -> None:
            LOGGER.info("Connecting to reconnect candidate %s", device.device_id)
            try:
                connected = await device.connect()
            except Exception as exc:
                LOGGER.warning("Connecting to candidate %s failed: %s", device.device_id, exc)
                connected = False
            if not connected:
                LOGGER.info("Candidate %s refused the connection", device.device_id)
                tried.discard(device.device_id)
                return
            if found.done():
                await device.disconnect()
                return
            found.set_result(device)

        def _on_discovered(device: BluetoothDevice) -> None:
            if found.done() or device.device_id in tried:
                return
            if not matches(info, device.address):
                return
            tried.add(device.device_id)
            task = loop.create_task(_connect(device))
            attempts.add(task)
            task.add_done_callback(attempts.discard)

        LOGGER.info(
            "Waiting up to %.0fs for %s to reappear (%s scheme)",
            timeout,
            int_to_mac(info.address),
            info.scheme.value,
        )
        await self._scanner.start_scan(_on_discovered)
        cancel_wait: asyncio.Future[bool] | None = None
        try:
            waiters: set[asyncio.Future] = {found}
            if cancel_event is not None:
                cancel_wait = asyncio.ensure_future(cancel_event.wait())
                waiters.add(cancel_wait)
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            if found in done:
                device = found.result()
                LOGGER.info("Reconnected to %s", device.device_id)
                return device
            if cancel_wait is not None and cancel_wait in done:
                LOGGER.info("Reconnect wait cancelled")
            else:
                LOGGER.warning("No matching device reconnected within %.0fs", timeout)
            return None
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()
            for task in list(attempts):
                task.cancel()
            if not found.done():
                found.cancel()
            await self._scanner.stop_scan()
