"""Core data models shared by the protocol, orchestrator and CLI."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from rcspota.core.errors import OtaErrorCode

JIELI_SERVICE_UUID = "0000ae00-0000-1000-8000-00805f9b34fb"
JIELI_WRITE_CHAR_UUID = "0000ae01-0000-1000-8000-00805f9b34fb"
JIELI_NOTIFY_CHAR_UUID = "0000ae02-0000-1000-8000-00805f9b34fb"


class OtaState(str, Enum):
    IDLE = "idle"
    VALIDATING_FIRMWARE = "validating_firmware"
    CONNECTING = "connecting"
    GETTING_DEVICE_INFO = "getting_device_info"
    READING_FILE_OFFSET = "reading_file_offset"
    ENTERING_UPDATE_MODE = "entering_update_mode"
    TRANSFERRING_FILE = "transferring_file"
    WAITING_RECONNECT = "waiting_reconnect"
    QUERYING_RESULT = "querying_result"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {OtaState.IDLE, OtaState.COMPLETED, OtaState.FAILED, OtaState.CANCELLED}
)


class AddressScheme(str, Enum):
    """How a rebooted device derives its advertised address."""

    NEW = "new"
    OLD = "old"


@dataclass(frozen=True)
class TransportSpec:
    service_uuid: str = JIELI_SERVICE_UUID
    write_char_uuid: str = JIELI_WRITE_CHAR_UUID
    notify_char_uuid: str = JIELI_NOTIFY_CHAR_UUID
    write_with_response: bool = False
    connect_timeout_s: float = 10.0


@dataclass(frozen=True)
class OtaConfig:
    command_timeout_s: float = 20.0
    reconnect_timeout_s: float = 80.0
    offline_timeout_s: float = 6.0
    reconnect_settle_s: float = 1.0
    max_retries: int = 3
    transfer_block_size: int = 512
    transport: TransportSpec = TransportSpec()


@dataclass(frozen=True)
class DeviceInfo:
    name: str = ""
    version_name: str = ""
    version_code: int = 0
    device_type: int = 0
    battery_level: int = 0
    supports_dual_bank: bool = False
    mac: str = ""
    communication_way: int = 0
    needs_bootloader: bool = False
    mandatory_upgrade: bool = False
    supports_new_reboot_way: bool = False

    @property
    def address(self) -> int:
        return mac_to_int(self.mac) if self.mac else 0


@dataclass(frozen=True)
class DiscoveredDevice:
    device_id: str
    name: str
    rssi: int | None = None


@dataclass(frozen=True)
class ReconnectInfo:
    address: int
    scheme: AddressScheme


@dataclass(frozen=True)
class OtaProgress:
    total_bytes: int
    transferred_bytes: int
    speed: float
    state: OtaState
    elapsed_s: float = 0.0

    @property
    def percentage(self) -> float:
        if self.state is OtaState.COMPLETED:
            return 100.0
        if self.total_bytes <= 0:
            return 0.0
        percentage = self.transferred_bytes * 100 / self.total_bytes
        # 100% is reserved for a verified upgrade.
        return 99.9 if percentage >= 100 else percentage

    @property
    def remaining_s(self) -> float:
        if self.speed <= 0:
            return 0.0
        return max(self.total_bytes - self.transferred_bytes, 0) / self.speed


@dataclass(frozen=True)
class OtaResult:
    success: bool
    error_code: OtaErrorCode
    message: str
    final_state: OtaState
    elapsed_s: float
    device_info: DeviceInfo | None = None
    pending: bool = False


def mac_to_int(mac: str) -> int:
    return int(mac.replace(":", "").replace("-", ""), 16)


def int_to_mac(address: int) -> str:
    raw = f"{address & 0xFFFFFFFFFFFF:012X}"
    return ":".join(raw[i : i + 2] for i in range(0, 12, 2))
