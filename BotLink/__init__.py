"""BotLink: find nearby robots over classic Bluetooth and Bluetooth LE, and connect to them."""

from .connect import ConnectionAttempt, ConnectionEstablisher
from .discovery import DiscoveryCoordinator
from .known import DefaultDeviceMemory, KnownDeviceCache
from .models import AttemptState, ConnectionState, DeviceRecord, ScanPhase, TransportKind
from .prefs import PreferenceStore
from .selector import DiscoverySelector
from .session import RobotSession

__version__ = "0.1.0"
