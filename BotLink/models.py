"""Data types shared across discovery and connection."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class TransportKind(str, Enum):
    CLASSIC = "classic"
    LOW_ENERGY = "le"


class ScanPhase(str, Enum):
    """Discovery sub-stage. The value doubles as the progress label."""

    IDLE = ""
    CLASSIC = "Bluetooth"
    LOW_ENERGY = "Bluetooth LE"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class AttemptState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass
class DeviceRecord:
    identifier: str
    display_name: str
    transport_kind: TransportKind
    compatible: Optional[bool] = None

    @property
    def label(self) -> str:
        return f"{self.display_name}:{self.identifier}"


@dataclass
class ScanSession:
    phase: ScanPhase = ScanPhase.IDLE
    result_count: int = 0
    compatible_only: bool = True
