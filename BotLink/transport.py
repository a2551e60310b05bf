"""
Robot transport drivers.

Both drivers start connecting as soon as they are constructed and report
progress through :meth:`get_connection_state`. A driver is *busy* from
:meth:`send_command` until the robot answers, or until the write finishes
when no answer is expected.
"""

import asyncio
import logging
import socket
import threading
from typing import Callable, Optional, Protocol

import bleak

from . import config as C
from .models import ConnectionState

logger = logging.getLogger(__name__)


class Transport(Protocol):
    address: str
    name: str

    def get_connection_state(self) -> ConnectionState:
        ...

    def disconnect(self) -> None:
        ...

    def is_busy(self) -> bool:
        ...

    def send_command(self, payload: bytes, expect_reply: bool = True) -> None:
        ...


def _check_payload(payload: bytes) -> None:
    if not isinstance(payload, (bytes, bytearray)) or not payload:
        raise ValueError("payload must be non-empty bytes")


def _rfcomm_socket() -> socket.socket:
    return socket.socket(socket.AF_BLUETOOTH, socket.SOCK_STREAM, socket.BTPROTO_RFCOMM)


class ClassicTransport:
    """Serial link to a classic Bluetooth robot over an RFCOMM socket."""

    def __init__(
        self,
        address: str,
        name: str = "",
        channel: int = C.RFCOMM_CHANNEL,
        sock_factory: Optional[Callable[[], socket.socket]] = None,
    ):
        if not address:
            raise ValueError("address must be a non-empty string")
        if sock_factory is None:
            if not hasattr(socket, "AF_BLUETOOTH"):
                raise OSError("RFCOMM sockets are not supported on this platform")
            sock_factory = _rfcomm_socket
        self.address = address
        self.name = name
        self.channel = channel
        self._sock_factory = sock_factory
        self._lock = threading.Lock()
        self._state = ConnectionState.CONNECTING
        self._busy = False
        self._closing = False
        self._sock: Optional[socket.socket] = None
        self._thread = threading.Thread(target=self._run, name=f"rfcomm-{address}", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        sock = None
        try:
            sock = self._sock_factory()
            sock.connect((self.address, self.channel))
        except OSError as exc:
            if sock is not None:
                sock.close()
            logger.warning("RFCOMM connect to %s failed: %s", self.address, exc)
            self._set_state(ConnectionState.DISCONNECTED)
            return

        with self._lock:
            if self._closing:
                sock.close()
                self._state = ConnectionState.DISCONNECTED
                return
            self._sock = sock
            self._state = ConnectionState.CONNECTED
        logger.info("RFCOMM connected to %s", self.address)

        while True:
            try:
                data = sock.recv(1024)
            except OSError:
                break
            if not data:
                break
            self._on_data(data)

        with self._lock:
            self._state = ConnectionState.DISCONNECTED
            self._busy = False
            self._sock = None
        logger.info("RFCOMM link to %s closed", self.address)

    def _set_state(self, state: ConnectionState) -> None:
        with self._lock:
            self._state = state

    def _on_data(self, data: bytes) -> None:
        logger.debug("%s <- %r", self.address, data)
        with self._lock:
            self._busy = False

    def get_connection_state(self) -> ConnectionState:
        with self._lock:
            return self._state

    def is_busy(self) -> bool:
        with self._lock:
            return self._busy

    def send_command(self, payload: bytes, expect_reply: bool = True) -> None:
        _check_payload(payload)
        with self._lock:
            sock = self._sock
            if sock is None or self._state != ConnectionState.CONNECTED:
                raise ConnectionError(f"{self.address} is not connected")
            self._busy = True
        try:
            sock.sendall(payload)
        except OSError:
            with self._lock:
                self._busy = False
            raise
        if not expect_reply:
            with self._lock:
                self._busy = False

    def disconnect(self) -> None:
        with self._lock:
            self._closing = True
            sock, self._sock = self._sock, None
            self._state = ConnectionState.DISCONNECTED
            self._busy = False
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()


class BleTransport:
    """Serial link to a Bluetooth LE robot through its GATT serial characteristic."""

    def __init__(
        self,
        address: str,
        name: str = "",
        char_uuid: str = C.BLE_SERIAL_CHAR_UUID,
        connect_timeout: float = 10.0,
        client_factory: Callable[..., bleak.BleakClient] = bleak.BleakClient,
    ):
        if not address:
            raise ValueError("address must be a non-empty string")
        self.address = address
        self.name = name
        self.char_uuid = char_uuid
        self._lock = threading.Lock()
        self._state = ConnectionState.CONNECTING
        self._busy = False
        self._closed = False

        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._loop.run_forever, name=f"ble-{address}", daemon=True)
        self._thread.start()
        self._client = client_factory(
            address,
            disconnected_callback=self._on_disconnected,
            timeout=connect_timeout,
        )
        self._connecting = asyncio.run_coroutine_threadsafe(self._connect(), self._loop)

    async def _connect(self) -> None:
        try:
            await self._client.connect()
            await self._client.start_notify(self.char_uuid, self._on_notify)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("BLE connect to %s failed: %s", self.address, exc)
            self._set_state(ConnectionState.DISCONNECTED)
            return
        logger.info("BLE connected to %s", self.address)
        self._set_state(ConnectionState.CONNECTED)

    def _set_state(self, state: ConnectionState) -> None:
        with self._lock:
            if self._closed:
                state = ConnectionState.DISCONNECTED
            self._state = state

    def _on_notify(self, _, data: bytearray) -> None:
        logger.debug("%s <- %r", self.address, bytes(data))
        with self._lock:
            self._busy = False

    def _on_disconnected(self, _client) -> None:
        logger.info("BLE link to %s closed", self.address)
        with self._lock:
            self._state = ConnectionState.DISCONNECTED
            self._busy = False

    def get_connection_state(self) -> ConnectionState:
        with self._lock:
            return self._state

    def is_busy(self) -> bool:
        with self._lock:
            return self._busy

    def send_command(self, payload: bytes, expect_reply: bool = True) -> None:
        _check_payload(payload)
        with self._lock:
            if self._state != ConnectionState.CONNECTED:
                raise ConnectionError(f"{self.address} is not connected")
            self._busy = True
        future = asyncio.run_coroutine_threadsafe(
            self._client.write_gatt_char(self.char_uuid, bytes(payload), response=False),
            self._loop,
        )

        def _written(fut) -> None:
            failed = fut.cancelled() or fut.exception() is not None
            if failed:
                logger.warning("BLE write to %s failed", self.address)
            if failed or not expect_reply:
                with self._lock:
                    self._busy = False

        future.add_done_callback(_written)

    async def _shutdown(self) -> None:
        try:
            if self._client.is_connected:
                try:
                    await self._client.stop_notify(self.char_uuid)
                except Exception:
                    pass
                await self._client.disconnect()
        except Exception as exc:
            logger.debug("BLE disconnect from %s: %s", self.address, exc)

    def disconnect(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._state = ConnectionState.DISCONNECTED
            self._busy = False
        self._connecting.cancel()
        try:
            asyncio.run_coroutine_threadsafe(self._shutdown(), self._loop).result(timeout=5.0)
        except Exception as exc:
            logger.debug("BLE shutdown for %s did not finish: %s", self.address, exc)
        self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
            if not self._thread.is_alive():
                self._loop.close()
