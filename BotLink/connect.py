import logging
import threading
from typing import Callable, Optional

from . import config as C
from .known import DefaultDeviceMemory
from .models import AttemptState, ConnectionState, DeviceRecord, TransportKind
from .session import RobotSession
from .transport import BleTransport, ClassicTransport, Transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[DeviceRecord], Transport]


def default_transport_factories() -> dict[TransportKind, TransportFactory]:
    return {
        TransportKind.CLASSIC: lambda d: ClassicTransport(d.identifier, d.display_name),
        TransportKind.LOW_ENERGY: lambda d: BleTransport(d.identifier, d.display_name),
    }


class ConnectionAttempt:
    """One in-flight connection. ``cancel()`` aborts it at the next poll."""

    def __init__(self, device: DeviceRecord, cancel: Optional[threading.Event] = None):
        self.device = device
        self.transport_kind = (
            TransportKind.LOW_ENERGY if device.transport_kind == TransportKind.LOW_ENERGY else TransportKind.CLASSIC
        )
        self.state = AttemptState.CONNECTING
        self.elapsed_ms = 0
        self.reason: Optional[str] = None
        self.transport: Optional[Transport] = None
        self._cancel = cancel if cancel is not None else threading.Event()
        self._done = threading.Event()
        self._settled = threading.Event()
        self._worker: Optional[threading.Thread] = None

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    def cancel(self) -> None:
        self._cancel.set()

    def wait(self, timeout: Optional[float] = None) -> AttemptState:
        """Block until the outcome is known and return it."""
        self._done.wait(timeout)
        return self.state

    def wait_settled(self, timeout: Optional[float] = None) -> bool:
        """Block until the worker thread is done, post-connect handshake included."""
        return self._settled.wait(timeout)

    def _sleep(self, ms: int) -> bool:
        # True when cancelled during the wait
        return self._cancel.wait(ms / 1000.0)

    def _finish(self, state: AttemptState, reason: Optional[str] = None) -> None:
        self.state = state
        self.reason = reason
        self._done.set()


class ConnectionEstablisher:
    """
    Connect to a selected robot on a background thread.

    The transport is chosen once from the device kind (LE robots use
    BleTransport, everything else ClassicTransport), then its state is polled
    every ``poll_ms`` until it connects or ``timeout_ms`` of polling has
    accumulated. Only a confirmed connection is remembered as the default
    device. After success a greeting command is sent and the robot is given
    up to ``settle_timeout_ms`` to stop being busy.
    """

    HANDOVER_TIMEOUT_S = 2.0

    def __init__(
        self,
        session: RobotSession,
        memory: DefaultDeviceMemory,
        factories: Optional[dict[TransportKind, TransportFactory]] = None,
        timeout_ms: int = C.CONNECT_TIMEOUT_MS,
        poll_ms: int = C.POLL_MS,
        settle_timeout_ms: int = C.SETTLE_TIMEOUT_MS,
        greeting: Optional[bytes] = C.GREETING_COMMAND,
        on_connected: Optional[Callable[[ConnectionAttempt], None]] = None,
        on_failed: Optional[Callable[[ConnectionAttempt], None]] = None,
    ):
        if poll_ms <= 0:
            raise ValueError("poll_ms must be positive")
        if timeout_ms < 0 or settle_timeout_ms < 0:
            raise ValueError("timeouts must not be negative")
        self.session = session
        self.memory = memory
        self.factories = factories if factories is not None else default_transport_factories()
        self.timeout_ms = timeout_ms
        self.poll_ms = poll_ms
        self.settle_timeout_ms = settle_timeout_ms
        self.greeting = greeting
        self.on_connected = on_connected
        self.on_failed = on_failed
        self._lock = threading.Lock()
        self._current: Optional[ConnectionAttempt] = None

    @property
    def current(self) -> Optional[ConnectionAttempt]:
        with self._lock:
            return self._current

    def cancel(self) -> None:
        attempt = self.current
        if attempt is not None:
            attempt.cancel()

    def connect(self, device: DeviceRecord, cancel: Optional[threading.Event] = None) -> ConnectionAttempt:
        if device is None or not device.identifier:
            raise ValueError("device must have an identifier")
        attempt = ConnectionAttempt(device, cancel)
        with self._lock:
            previous, self._current = self._current, attempt
        if previous is not None:
            self._retire(previous)
        logger.info("Connecting to %s", device.label)
        attempt._worker = threading.Thread(
            target=self._run, args=(attempt,), name=f"connect-{device.identifier}", daemon=True
        )
        attempt._worker.start()
        return attempt

    def _retire(self, previous: ConnectionAttempt) -> None:
        """Cancel ``previous`` and wait for its worker so it cannot touch the session again."""
        if previous.wait_settled(0):
            return
        previous.cancel()
        if previous._worker is threading.current_thread():
            # connect() called from one of our own listeners
            return
        if not previous.wait_settled(self.HANDOVER_TIMEOUT_S):
            logger.warning("Attempt to %s did not stop within %.1f s", previous.device.label, self.HANDOVER_TIMEOUT_S)

    def _run(self, attempt: ConnectionAttempt) -> None:
        try:
            self._attempt(attempt)
        except Exception as exc:
            logger.exception("Connection attempt to %s failed", attempt.device.label)
            if not attempt.finished:
                self._fail(attempt, f"error: {exc}")
        finally:
            with self._lock:
                if self._current is attempt:
                    self._current = None
            attempt._settled.set()

    def _attempt(self, attempt: ConnectionAttempt) -> None:
        device = attempt.device
        self.session.disconnect()

        factory = self.factories[attempt.transport_kind]
        try:
            transport = factory(device)
        except Exception as exc:
            logger.error("Could not open %s transport for %s: %s", attempt.transport_kind.value, device.label, exc)
            self._fail(attempt, f"transport: {exc}")
            return
        attempt.transport = transport
        self.session.attach(transport)

        while transport.get_connection_state() != ConnectionState.CONNECTED:
            if attempt.elapsed_ms >= self.timeout_ms:
                logger.error("Failed connecting to %s after %d ms", device.label, attempt.elapsed_ms)
                self._fail(attempt, "timeout")
                return
            if attempt._sleep(self.poll_ms):
                logger.info("Connection to %s cancelled", device.label)
                self._fail(attempt, "cancelled")
                return
            attempt.elapsed_ms += self.poll_ms

        logger.info("Connected to %s after %d ms", device.label, attempt.elapsed_ms)
        # save last connected robot
        self.memory.remember(device)
        attempt._finish(AttemptState.CONNECTED)
        self._notify(self.on_connected, attempt)
        self._settle(attempt, transport)

    def _settle(self, attempt: ConnectionAttempt, transport: Transport) -> None:
        if not self.greeting:
            return
        try:
            transport.send_command(self.greeting)
        except (ConnectionError, OSError) as exc:
            logger.warning("Greeting to %s failed: %s", attempt.device.label, exc)
            return
        waited = 0
        while transport.is_busy():
            if waited >= self.settle_timeout_ms:
                logger.warning("%s still busy after %d ms; not waiting any longer", attempt.device.label, waited)
                return
            if attempt._sleep(self.poll_ms):
                return
            waited += self.poll_ms

    def _fail(self, attempt: ConnectionAttempt, reason: str) -> None:
        transport = attempt.transport
        if transport is not None:
            self.session.detach(transport)
            try:
                transport.disconnect()
            except Exception as exc:
                logger.debug("disconnect after failure: %s", exc)
        attempt._finish(AttemptState.FAILED, reason)
        self._notify(self.on_failed, attempt)

    @staticmethod
    def _notify(callback: Optional[Callable[[ConnectionAttempt], None]], attempt: ConnectionAttempt) -> None:
        if callback is None:
            return
        try:
            callback(attempt)
        except Exception:
            logger.exception("Connection listener failed")
