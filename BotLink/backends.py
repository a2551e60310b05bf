import asyncio
import atexit
import logging
import re
import shutil
import subprocess
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Optional

import bleak

from . import config as C
from .models import DeviceRecord, TransportKind

logger = logging.getLogger(__name__)

# on_found(address, name, hints); hints are lower-cased service UUIDs when known
FoundCallback = Callable[[str, str, tuple], None]

_executor: Optional[ThreadPoolExecutor] = None

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]|[\x01\x02]")
_DEVICE_RE = re.compile(r"Device\s+((?:[0-9A-Fa-f]{2}:){5}[0-9A-Fa-f]{2})\s*(.*)$")
_UUID_RE = re.compile(r"UUID:.*\(([0-9a-fA-F-]{36})\)")


def _run(coro: Any):
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    # Running inside an event loop; execute in a separate thread
    global _executor
    if _executor is None:
        _executor = ThreadPoolExecutor(max_workers=1)
        # Ensure the executor is cleaned up on interpreter exit
        atexit.register(lambda: _executor and _executor.shutdown(wait=False))
    return _executor.submit(asyncio.run, coro).result()


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def parse_device_line(line: str) -> Optional[tuple[str, str]]:
    """Extract ``(address, name)`` from one line of ``bluetoothctl scan`` output."""
    clean = strip_ansi(line).strip()
    if not clean or "[DEL]" in clean:
        return None
    match = _DEVICE_RE.search(clean)
    if not match:
        return None
    address = match.group(1).upper()
    rest = match.group(2).strip()
    if "[CHG]" in clean:
        # Property change for a device BlueZ already knew about, e.g. "RSSI: -61"
        if rest.startswith("Name:"):
            return address, rest[len("Name:"):].strip()
        return address, ""
    # An unnamed device is reported with its address (dashes) in place of a name
    if rest.replace("-", ":").upper() == address:
        rest = ""
    return address, rest


def parse_service_uuids(info: str) -> tuple[str, ...]:
    """Service UUIDs listed by ``bluetoothctl info <address>``."""
    uuids = []
    for line in strip_ansi(info).splitlines():
        match = _UUID_RE.search(line)
        if match:
            uuids.append(match.group(1).lower())
    return tuple(uuids)


def _terminate(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    try:
        proc.terminate()
        proc.wait(timeout=2.0)
    except subprocess.TimeoutExpired:
        proc.kill()
    except OSError:
        pass


class ClassicBackend:
    """Classic (BR/EDR) inquiry and SDP probing through ``bluetoothctl``."""

    kind = TransportKind.CLASSIC

    def __init__(self, binary: str = "bluetoothctl", scan_mode: str = "bredr", probe_timeout: float = 5.0):
        self.binary = binary
        self.scan_mode = scan_mode
        self.probe_timeout = probe_timeout

    def _watch(self, proc: subprocess.Popen, stop: threading.Event, deadline: float) -> None:
        while proc.poll() is None:
            if stop.wait(0.1) or time.monotonic() > deadline:
                _terminate(proc)
                return

    def search(self, timeout: float, stop: threading.Event, on_found: FoundCallback) -> None:
        cmd = [self.binary, "--timeout", str(max(1, int(round(timeout)))), "scan", self.scan_mode]
        logger.debug("Running %s", " ".join(cmd))
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            stdin=subprocess.DEVNULL,
            text=True,
        )
        # bluetoothctl exits on its own; the watcher only enforces stop() and a hard deadline
        watcher = threading.Thread(
            target=self._watch,
            args=(proc, stop, time.monotonic() + timeout + 2.0),
            name="bluetoothctl-watch",
            daemon=True,
        )
        watcher.start()
        try:
            for line in proc.stdout:  # type: ignore[union-attr]
                if stop.is_set():
                    break
                parsed = parse_device_line(line)
                if parsed:
                    on_found(parsed[0], parsed[1], ())
        finally:
            _terminate(proc)

    def probe(self, device: DeviceRecord, hints: tuple) -> bool:
        uuids = hints
        if not uuids:
            result = subprocess.run(
                [self.binary, "info", device.identifier],
                capture_output=True,
                text=True,
                timeout=self.probe_timeout,
                check=False,
            )
            uuids = parse_service_uuids(result.stdout)
        return C.SPP_UUID in uuids


class LowEnergyBackend:
    """Bluetooth LE discovery via bleak. Compatibility comes from the advertisement."""

    kind = TransportKind.LOW_ENERGY

    def __init__(self, service_uuid: str = C.BLE_SERIAL_SERVICE_UUID):
        self.service_uuid = service_uuid.lower()

    async def _search_async(self, timeout: float, stop: threading.Event, on_found: FoundCallback) -> None:
        def _on_detect(device, adv):
            address = getattr(device, "address", "")
            if not address:
                return
            name = getattr(device, "name", None) or getattr(adv, "local_name", None) or ""
            uuids = tuple(str(u).lower() for u in (getattr(adv, "service_uuids", None) or ()))
            on_found(address, name, uuids)

        scanner = bleak.BleakScanner(detection_callback=_on_detect)
        await scanner.start()
        loop = asyncio.get_running_loop()
        start = loop.time()
        try:
            while not stop.is_set() and loop.time() - start < timeout:
                await asyncio.sleep(0.1)
        finally:
            await scanner.stop()

    def search(self, timeout: float, stop: threading.Event, on_found: FoundCallback) -> None:
        _run(self._search_async(timeout, stop, on_found))

    def probe(self, device: DeviceRecord, hints: tuple) -> bool:
        return self.service_uuid in hints


@dataclass
class SystemCapabilities:
    radio_present: bool = False
    radio_enabled: bool = False
    low_energy_supported: bool = False
    discovery_permitted: bool = False


def check_capabilities(binary: str = "bluetoothctl", timeout: float = 5.0) -> SystemCapabilities:
    """Ask BlueZ what the default controller can do."""
    if not shutil.which(binary):
        logger.info("%s not found; no Bluetooth stack available", binary)
        return SystemCapabilities()
    try:
        result = subprocess.run(
            [binary, "show"],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except (subprocess.SubprocessError, OSError) as exc:
        logger.warning("%s show failed: %s", binary, exc)
        return SystemCapabilities()

    out = strip_ansi(result.stdout or "")
    err = strip_ansi(result.stderr or "")
    present = "Controller" in out and "No default controller" not in out + err
    if "Roles:" in out:
        low_energy = present and "Roles: central" in out
    else:
        low_energy = present
    permitted = result.returncode == 0 and "NotPermitted" not in err and "Access denied" not in err
    return SystemCapabilities(
        radio_present=present,
        radio_enabled=present and "Powered: yes" in out,
        low_energy_supported=low_energy,
        discovery_permitted=permitted,
    )
