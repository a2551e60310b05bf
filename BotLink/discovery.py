"""
Two-phase discovery: classic Bluetooth first, then Bluetooth LE.

State machine::

    IDLE -> CLASSIC -> LOW_ENERGY -> IDLE

A phase without a configured backend is skipped; with neither configured
the coordinator never leaves IDLE. Both sources feed one DeviceList, and
every classification is written through to the KnownDeviceCache.
"""

import logging
import threading
from typing import Any, Callable, Optional, Protocol

from .known import KnownDeviceCache
from .models import DeviceRecord, ScanPhase, ScanSession
from .scan import DeviceList, RadioBackend, ScanCallbacks, ScanSource

logger = logging.getLogger(__name__)

MAX_DOTS = 15


class ProgressView(Protocol):
    def set_title(self, title: str) -> None:
        ...

    def set_progress_visible(self, visible: bool) -> None:
        ...

    def show_results(self, devices: list[DeviceRecord]) -> None:
        ...


def _direct(fn: Callable, *args: Any) -> None:
    fn(*args)


def format_title(phase: ScanPhase, count: int) -> str:
    return "Nearby: " + phase.value + "." * min(count, MAX_DOTS)


class DiscoveryCoordinator:
    """
    Sequence the classic and LE scan sources and aggregate their results.

    Parameters
    ----------
    known : KnownDeviceCache
        Compatibility cache, consulted by the sources and updated on every discovery.
    classic, low_energy : RadioBackend, optional
        Backends for each phase. ``None`` skips that phase.
    compatible_only : bool
        Keep incompatible devices out of the result list (they are still cached).
    view : ProgressView, optional
        Receives title, progress visibility and result updates.
    dispatch : callable, optional
        ``dispatch(fn, *args)`` runs a view update; pass a UI-thread poster to
        marshal updates off the scan threads. Defaults to a direct call.
    """

    def __init__(
        self,
        known: KnownDeviceCache,
        classic: Optional[RadioBackend] = None,
        low_energy: Optional[RadioBackend] = None,
        compatible_only: bool = True,
        view: Optional[ProgressView] = None,
        dispatch: Optional[Callable[..., None]] = None,
        classic_timeout: float = 12.0,
        low_energy_timeout: float = 10.0,
    ):
        self.known = known
        self.results = DeviceList()
        self.session = ScanSession(compatible_only=compatible_only)
        self.view = view
        self._dispatch = dispatch or _direct
        self._lock = threading.RLock()
        self._idle = threading.Event()
        self._idle.set()

        self._classic: Optional[ScanSource] = None
        self._low_energy: Optional[ScanSource] = None
        if classic is not None:
            self._classic = ScanSource(
                classic,
                self.results,
                known,
                compatible_only,
                ScanCallbacks(self._on_discover, self._on_query, self._on_classic_complete),
                timeout=classic_timeout,
            )
        if low_energy is not None:
            self._low_energy = ScanSource(
                low_energy,
                self.results,
                known,
                compatible_only,
                ScanCallbacks(self._on_discover, self._on_query, self._on_low_energy_complete),
                timeout=low_energy_timeout,
            )

    @property
    def phase(self) -> ScanPhase:
        with self._lock:
            return self.session.phase

    @property
    def title(self) -> str:
        with self._lock:
            return format_title(self.session.phase, self.session.result_count)

    @property
    def sources(self) -> list[ScanSource]:
        return [s for s in (self._classic, self._low_energy) if s is not None]

    def start(self) -> None:
        """Begin a discovery session. Ignored while one is already running."""
        # if classic is enabled, scan it first - LE starts when it completes
        if self._classic is not None:
            source, phase = self._classic, ScanPhase.CLASSIC
        elif self._low_energy is not None:
            source, phase = self._low_energy, ScanPhase.LOW_ENERGY
        else:
            logger.info("No scan phase enabled; staying idle")
            return
        with self._lock:
            if not self._idle.is_set():
                logger.debug("Discovery already running in phase %r; ignoring start()", self.session.phase.value)
                return
            logger.info("Starting discovery")
            self._idle.clear()
            self._post(self.view and self.view.set_progress_visible, True)
            self._enter(phase)
        # Source locks are never taken while holding the coordinator lock
        source.start()
        with self._lock:
            stopped_meanwhile = self._idle.is_set()
        if stopped_meanwhile:
            source.stop()

    def stop(self) -> None:
        """Stop both sources. No discovery callback fires once this returns."""
        logger.info("Stopping discovery")
        for source in self.sources:
            source.stop()
        with self._lock:
            self._finish()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self._idle.wait(timeout)

    def _post(self, fn: Optional[Callable], *args: Any) -> None:
        if fn is None:
            return
        try:
            self._dispatch(fn, *args)
        except Exception:
            logger.exception("View update failed")

    def _enter(self, phase: ScanPhase) -> None:
        self.session.phase = phase
        self.session.result_count = 0
        logger.info("Phase: %s", phase.value or "idle")
        self._post(self.view and self.view.set_title, self.title)

    def _finish(self) -> None:
        self._enter(ScanPhase.IDLE)
        self._post(self.view and self.view.set_progress_visible, False)
        self._idle.set()

    def _on_query(self, device: DeviceRecord) -> None:
        with self._lock:
            self.session.result_count += 1
            self._post(self.view and self.view.set_title, self.title)

    def _on_discover(self, device: DeviceRecord, compatible: bool) -> None:
        logger.info("Caching %s as compatible=%s", device.label, compatible)
        self.known.record(device.identifier, compatible)
        self._post(self.view and self.view.show_results, self.results.snapshot())

    def _on_classic_complete(self) -> None:
        logger.info("Classic discovery complete")
        with self._lock:
            if self._low_energy is None:
                self._finish()
                return
            self._enter(ScanPhase.LOW_ENERGY)
        # Called with the classic source lock held; stop() takes that lock
        # before it stops the LE source.
        self._low_energy.start()

    def _on_low_energy_complete(self) -> None:
        logger.info("LE discovery complete")
        with self._lock:
            self._finish()
