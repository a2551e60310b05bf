import logging
import threading
from typing import Optional

from .models import ConnectionState
from .transport import Transport

logger = logging.getLogger(__name__)


class RobotSession:
    """Owns the robot connection that is currently in use, if any."""

    def __init__(self):
        self._lock = threading.Lock()
        self._active: Optional[Transport] = None

    @property
    def active(self) -> Optional[Transport]:
        with self._lock:
            return self._active

    @property
    def is_connected(self) -> bool:
        transport = self.active
        return transport is not None and transport.get_connection_state() == ConnectionState.CONNECTED

    def attach(self, transport: Transport) -> None:
        with self._lock:
            previous, self._active = self._active, transport
        if previous is not None and previous is not transport:
            previous.disconnect()

    def detach(self, transport: Transport) -> None:
        with self._lock:
            if self._active is transport:
                self._active = None

    def disconnect(self) -> None:
        """Drop the current robot. A no-op when nothing is attached."""
        with self._lock:
            transport, self._active = self._active, None
        if transport is not None:
            logger.info("Disconnecting %s", transport.address)
            transport.disconnect()
