"""
Glue between a selection surface (a dialog, a console prompt) and the core.

The surface shows the live result list and the progress title, and hands
the user's choice to :meth:`DiscoverySelector.select`.
"""

import logging
from typing import Callable, Optional, Protocol

from . import config as C
from . import prefs as P
from .backends import ClassicBackend, LowEnergyBackend, SystemCapabilities, check_capabilities
from .connect import ConnectionAttempt, ConnectionEstablisher, TransportFactory
from .discovery import DiscoveryCoordinator
from .known import DefaultDeviceMemory, KnownDeviceCache
from .models import DeviceRecord, TransportKind
from .prefs import PreferenceStore
from .scan import RadioBackend
from .session import RobotSession

logger = logging.getLogger(__name__)


class SelectionSurface(Protocol):
    def set_title(self, title: str) -> None:
        ...

    def set_progress_visible(self, visible: bool) -> None:
        ...

    def show_results(self, devices: list[DeviceRecord]) -> None:
        ...

    def notify(self, message: str) -> None:
        ...

    def close(self, cancelled: bool) -> None:
        ...


class DiscoverySelector:
    """
    One discovery-and-connect flow.

    Reads the scan preferences, drops the LE phase when the radio or the
    permission is missing, and wires a DiscoveryCoordinator to a
    ConnectionEstablisher sharing one RobotSession.
    """

    def __init__(
        self,
        store: PreferenceStore,
        session: RobotSession,
        capabilities: Optional[SystemCapabilities] = None,
        classic_backend: Optional[RadioBackend] = None,
        low_energy_backend: Optional[RadioBackend] = None,
        factories: Optional[dict[TransportKind, TransportFactory]] = None,
        dispatch: Optional[Callable[..., None]] = None,
        classic_timeout: float = C.CLASSIC_SCAN_S,
        low_energy_timeout: float = C.LE_SCAN_S,
        overrides: Optional[dict[str, bool]] = None,
        **establisher_options,
    ):
        self.store = store
        self.session = session
        self.capabilities = capabilities if capabilities is not None else check_capabilities()
        self.surface: Optional[SelectionSurface] = None
        self.known = KnownDeviceCache(store)
        self.memory = DefaultDeviceMemory(store)

        # per-run overrides (command line flags) are not persisted
        settings = {key: store.get_bool(key, True) for key in (P.FILTER_INCOMPATIBLE, P.SCAN_CLASSIC, P.SCAN_LOW_ENERGY)}
        settings.update(overrides or {})
        self.compatible_only = settings[P.FILTER_INCOMPATIBLE]
        scan_classic = settings[P.SCAN_CLASSIC]
        scan_low_energy = settings[P.SCAN_LOW_ENERGY]

        # see if we have BLE
        if scan_low_energy and not self.capabilities.low_energy_supported:
            logger.info("Bluetooth LE not supported; skipping LE scan")
            scan_low_energy = False
        if scan_low_energy and not self.capabilities.discovery_permitted:
            logger.info("LE discovery not permitted; skipping LE scan")
            scan_low_energy = False

        classic = (classic_backend or ClassicBackend()) if scan_classic else None
        low_energy = (low_energy_backend or LowEnergyBackend()) if scan_low_energy else None
        self.coordinator = DiscoveryCoordinator(
            self.known,
            classic=classic,
            low_energy=low_energy,
            compatible_only=self.compatible_only,
            view=_SurfaceView(self),
            dispatch=dispatch,
            classic_timeout=classic_timeout,
            low_energy_timeout=low_energy_timeout,
        )
        self.establisher = ConnectionEstablisher(
            session,
            self.memory,
            factories=factories,
            on_connected=self._on_connected,
            on_failed=self._on_failed,
            **establisher_options,
        )

    @property
    def results(self) -> list[DeviceRecord]:
        return self.coordinator.results.snapshot()

    def open(self, surface: SelectionSurface) -> bool:
        """Start discovery for ``surface``. Returns False when there is no usable radio."""
        logger.info("Opening robot selector")
        # Disconnect from any currently connected robot
        self.session.disconnect()

        if not self.capabilities.radio_present:
            surface.notify("Bluetooth is not supported on this system")
            return False
        if not self.capabilities.radio_enabled:
            surface.notify("Bluetooth is not enabled")
            return False

        self.surface = surface
        surface.set_title("Nearby:")
        self.coordinator.start()
        return True

    def select(self, device: DeviceRecord) -> ConnectionAttempt:
        logger.info("Selected: %s", device.label)
        self.coordinator.stop()
        if self.surface is not None:
            self.surface.set_progress_visible(True)
            self.surface.notify(f"Connecting to {device.label}")
        return self.establisher.connect(device)

    def autoconnect(self) -> Optional[ConnectionAttempt]:
        """Reconnect to the remembered default device, if there is one."""
        device = self.memory.load()
        if device is None:
            logger.info("No autoconnect device saved")
            return None
        logger.info("Autoconnecting to %s", device.label)
        return self.establisher.connect(device)

    def dismiss(self) -> None:
        self.coordinator.stop()
        self.establisher.cancel()

    def _on_connected(self, attempt: ConnectionAttempt) -> None:
        if self.surface is not None:
            self.surface.close(cancelled=False)

    def _on_failed(self, attempt: ConnectionAttempt) -> None:
        if self.surface is not None:
            self.surface.notify(f"Failed connecting to {attempt.device.label} ({attempt.reason})")
            self.surface.close(cancelled=True)


class _SurfaceView:
    """Forwards coordinator updates to whichever surface is open."""

    def __init__(self, selector: DiscoverySelector):
        self._selector = selector

    def set_title(self, title: str) -> None:
        if self._selector.surface is not None:
            self._selector.surface.set_title(title)

    def set_progress_visible(self, visible: bool) -> None:
        if self._selector.surface is not None:
            self._selector.surface.set_progress_visible(visible)

    def show_results(self, devices: list[DeviceRecord]) -> None:
        if self._selector.surface is not None:
            self._selector.surface.show_results(devices)
