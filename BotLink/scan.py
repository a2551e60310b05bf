"""
Scan sources: one asynchronous search over a single radio.

A :class:`ScanSource` is composed with a radio backend (classic or LE) that
knows how to search and how to probe a peripheral for compatibility. The
source owns the worker thread, de-duplication, the known-device lookup and
the callback contract:

- ``on_query(device)`` when a peripheral is seen for the first time in a run
- ``on_discover(device, compatible)`` once its compatibility is known
- ``on_discovery_complete()`` exactly once when the search window ends

After :meth:`ScanSource.stop` returns, no callback fires for that run.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from .known import KnownDeviceCache
from .models import DeviceRecord, TransportKind

logger = logging.getLogger(__name__)


class RadioBackend(Protocol):
    kind: TransportKind

    def search(self, timeout: float, stop: threading.Event, on_found: Callable[[str, str, tuple], None]) -> None:
        ...

    def probe(self, device: DeviceRecord, hints: tuple) -> bool:
        ...


@dataclass
class ScanCallbacks:
    on_discover: Callable[[DeviceRecord, bool], None]
    on_query: Callable[[DeviceRecord], None]
    on_discovery_complete: Callable[[], None]


def _rank(device: DeviceRecord) -> int:
    if device.compatible is True:
        return 0
    if device.compatible is None:
        return 1
    return 2


class DeviceList:
    """Ordered, de-duplicated result sink shared by both scan sources."""

    def __init__(self):
        self._lock = threading.Lock()
        self._devices: dict[str, DeviceRecord] = {}

    def upsert(self, device: DeviceRecord) -> DeviceRecord:
        with self._lock:
            existing = self._devices.get(device.identifier)
            if existing is None:
                self._devices[device.identifier] = device
                return device
            existing.compatible = device.compatible
            if device.display_name and existing.display_name == existing.identifier:
                existing.display_name = device.display_name
            return existing

    def snapshot(self) -> list[DeviceRecord]:
        """Compatible first, then unclassified, then incompatible; discovery order within each."""
        with self._lock:
            devices = list(self._devices.values())
        return sorted(devices, key=_rank)

    def get(self, identifier: str) -> Optional[DeviceRecord]:
        with self._lock:
            return self._devices.get(identifier)

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)


class ScanSource:
    def __init__(
        self,
        backend: RadioBackend,
        sink: DeviceList,
        known: KnownDeviceCache,
        compatible_only: bool,
        callbacks: ScanCallbacks,
        timeout: float = 10.0,
    ):
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.backend = backend
        self.sink = sink
        self.known = known
        self.compatible_only = compatible_only
        self.callbacks = callbacks
        self.timeout = timeout
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._seen: set[str] = set()

    @property
    def kind(self) -> TransportKind:
        return self.backend.kind

    @property
    def running(self) -> bool:
        """True while a run that has not been stopped is in progress."""
        with self._lock:
            return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def start(self) -> None:
        with self._lock:
            if self.running:
                logger.debug("%s scan already running; ignoring start()", self.kind.value)
                return
            # A stopped run may still be winding down; it keeps its own stop
            # event, so none of its callbacks reach the new run.
            self._stop = threading.Event()
            self._seen = set()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop,),
                name=f"scan-{self.kind.value}",
                daemon=True,
            )
            logger.info("Starting %s scan (%.1f s)", self.kind.value, self.timeout)
            self._thread.start()

    def stop(self) -> None:
        with self._lock:
            if not self._stop.is_set():
                logger.info("Stopping %s scan", self.kind.value)
            self._stop.set()

    def join(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _run(self, stop: threading.Event) -> None:
        try:
            self.backend.search(self.timeout, stop, lambda a, n, h: self._found(stop, a, n, h))
        except Exception:
            logger.exception("%s scan failed", self.kind.value)

        with self._lock:
            if self._thread is threading.current_thread():
                self._thread = None
            if stop.is_set():
                return
            logger.info("%s discovery complete", self.kind.value)
            self.callbacks.on_discovery_complete()

    def _found(self, stop: threading.Event, address: str, name: str, hints: tuple) -> None:
        with self._lock:
            if stop.is_set() or address in self._seen:
                return
            self._seen.add(address)
            device = DeviceRecord(identifier=address, display_name=name or address, transport_kind=self.kind)
            self.callbacks.on_query(device)

        compatible = self.known.get(address)
        if compatible is None:
            try:
                compatible = bool(self.backend.probe(device, hints))
            except Exception as exc:
                logger.warning("Probe of %s failed: %s", device.label, exc)
                compatible = False
        else:
            logger.debug("%s known from cache: compatible=%s", device.label, compatible)

        with self._lock:
            if stop.is_set():
                return
            device.compatible = compatible
            if compatible or not self.compatible_only:
                device = self.sink.upsert(device)
            self.callbacks.on_discover(device, compatible)
