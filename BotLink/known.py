import json
import logging
import threading
from typing import Dict, Optional, Tuple

from . import prefs as P
from .models import DeviceRecord, TransportKind
from .prefs import PreferenceStore

logger = logging.getLogger(__name__)


class KnownDeviceCache:
    """Address -> compatibility flag, written through to the preference store."""

    def __init__(self, store: PreferenceStore):
        self._store = store
        self._lock = threading.Lock()
        self._devices: Dict[str, bool] = self.load()
        logger.debug("Loaded known devices: %s", self._devices)

    def load(self) -> Dict[str, bool]:
        """Parse the persisted blob. Malformed or missing data yields ``{}``."""
        raw = self._store.get_string(P.KNOWN_DEVICES, "")
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except ValueError as exc:
            logger.warning("Discarding unreadable known-device cache: %s", exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Discarding known-device cache: expected an object, got %s", type(data).__name__)
            return {}

        devices = {}
        for address, compatible in data.items():
            if isinstance(compatible, bool):
                devices[address] = compatible
            else:
                logger.warning("Dropping cached entry %s: %r is not a boolean", address, compatible)
        return devices

    def record(self, identifier: str, compatible: bool) -> None:
        """Upsert one entry and persist the whole mapping before returning."""
        with self._lock:
            self._devices[identifier] = bool(compatible)
            blob = json.dumps(self._devices, sort_keys=True)
            self._store.put(P.KNOWN_DEVICES, blob)
        logger.debug("Saving known devices: %s", blob)

    def get(self, identifier: str) -> Optional[bool]:
        with self._lock:
            return self._devices.get(identifier)

    def snapshot(self) -> Dict[str, bool]:
        with self._lock:
            return dict(self._devices)

    def __contains__(self, identifier) -> bool:
        with self._lock:
            return identifier in self._devices

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)


class DefaultDeviceMemory:
    """The most recently *successfully* connected robot, used for auto-connect."""

    def __init__(self, store: PreferenceStore):
        self._store = store

    def load(self) -> Optional[DeviceRecord]:
        address = self._store.get_string(P.DEVICE_ADDR, "")
        if not address:
            return None
        try:
            kind = TransportKind(self._store.get_string(P.DEVICE_KIND, TransportKind.CLASSIC.value))
        except ValueError:
            kind = TransportKind.CLASSIC
        return DeviceRecord(
            identifier=address,
            display_name=self._store.get_string(P.DEVICE_NAME, ""),
            transport_kind=kind,
            compatible=True,
        )

    def identity(self) -> Optional[Tuple[str, str]]:
        device = self.load()
        return (device.identifier, device.display_name) if device else None

    def remember(self, device: DeviceRecord) -> None:
        with self._store.edit() as editor:
            editor.put(P.DEVICE_ADDR, device.identifier)
            editor.put(P.DEVICE_NAME, device.display_name)
            editor.put(P.DEVICE_KIND, device.transport_kind.value)
        logger.info("saved %s as autoconnect device", device.label)
