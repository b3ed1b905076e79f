"""Cancellable one-shot timers for the upgrade timeout domains."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

LOGGER = logging.getLogger(__name__)


class OneShotTimer:
    """A named timer that fires ``callback`` once after ``delay`` seconds.

    Starting a running timer replaces it. The callback runs on the event loop
    the timer was started from.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._handle: asyncio.TimerHandle | None = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    def start(self, delay: float, callback: Callable[[], None]) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay, self._fire, callback)
        LOGGER.debug("Timer %s started (%.2fs)", self.name, delay)

    def cancel(self) -> bool:
        if self._handle is None:
            return False
        self._handle.cancel()
        self._handle = None
        LOGGER.debug("Timer %s cleared", self.name)
        return True

    def _fire(self, callback: Callable[[], None]) -> None:
        self._handle = None
        LOGGER.debug("Timer %s expired", self.name)
        callback()
