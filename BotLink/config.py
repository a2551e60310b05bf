import os
import pathlib


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


# ---------- Persisted preferences ----------
PREFS_PATH = pathlib.Path(
    os.getenv("BOTLINK_PREFS", "") or pathlib.Path.home() / ".config" / "botlink" / "prefs.json"
)

# ---------- Scan windows (seconds) ----------
CLASSIC_SCAN_S = _env_float("BOTLINK_CLASSIC_SCAN_S", 12.0)
LE_SCAN_S = _env_float("BOTLINK_LE_SCAN_S", 10.0)

# ---------- Connection timing (milliseconds) ----------
CONNECT_TIMEOUT_MS = _env_int("BOTLINK_CONNECT_TIMEOUT_MS", 5000)
POLL_MS = _env_int("BOTLINK_POLL_MS", 100)
# Cap on the post-connect busy-wait.
SETTLE_TIMEOUT_MS = _env_int("BOTLINK_SETTLE_TIMEOUT_MS", 10000)

# Sent once after connecting so the robot acknowledges the new link.
GREETING_COMMAND = os.getenv("BOTLINK_GREETING", "bounce").encode("ascii", errors="ignore") + b"\n"

# ---------- Identity of compatible robots ----------
# Classic robots expose the Serial Port Profile.
SPP_UUID = "00001101-0000-1000-8000-00805f9b34fb"
# LE robots expose the Bluno serial service and characteristic.
BLE_SERIAL_SERVICE_UUID = "0000dfb0-0000-1000-8000-00805f9b34fb"
BLE_SERIAL_CHAR_UUID = "0000dfb1-0000-1000-8000-00805f9b34fb"
RFCOMM_CHANNEL = _env_int("BOTLINK_RFCOMM_CHANNEL", 1)
