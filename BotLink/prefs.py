"""
Key-value preference store backed by a JSON file.

Keys used by BotLink:

- ``pref_filterincompatible`` (bool): hide incompatible devices from results
- ``pref_scanBT`` (bool): run the classic Bluetooth phase
- ``pref_scanBLE`` (bool): run the Bluetooth LE phase
- ``pref_knowncompatibledevs`` (str): JSON object, address -> compatible
- ``device_addr`` / ``device_name`` / ``device_kind`` (str): last successfully
  connected robot

Every ``put`` is written to disk before it returns. Use :meth:`edit` to
commit several keys in one write.
"""

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

FILTER_INCOMPATIBLE = "pref_filterincompatible"
SCAN_CLASSIC = "pref_scanBT"
SCAN_LOW_ENERGY = "pref_scanBLE"
KNOWN_DEVICES = "pref_knowncompatibledevs"
DEVICE_ADDR = "device_addr"
DEVICE_NAME = "device_name"
DEVICE_KIND = "device_kind"


class PreferenceStore:
    """String-keyed store. ``path=None`` keeps everything in memory."""

    def __init__(self, path: Optional[str] = None):
        self.path = os.fspath(path) if path is not None else None
        self._lock = threading.RLock()
        self._values: Dict[str, Any] = self._read()
        self._batch = 0

    def _read(self) -> Dict[str, Any]:
        if self.path is None or not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                values = json.load(f)
        except (OSError, ValueError) as exc:
            logger.warning("Could not read preferences from %s: %s", self.path, exc)
            return {}
        if not isinstance(values, dict):
            logger.warning("Ignoring preferences file %s: not a JSON object", self.path)
            return {}
        return values

    def _commit(self) -> None:
        if self.path is None:
            return
        outdir = os.path.dirname(os.path.abspath(self.path))
        if outdir and not os.path.exists(outdir):
            os.makedirs(outdir, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".prefs_", suffix=".json", dir=outdir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._values, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except Exception:
            try:
                os.remove(tmp_path)
            except OSError:
                pass
            raise

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._values.get(key, default)

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key, default)
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return default

    def get_string(self, key: str, default: str = "") -> str:
        value = self.get(key, default)
        return value if isinstance(value, str) else default

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._values[key] = value
            if self._batch == 0:
                self._commit()

    @contextmanager
    def edit(self):
        """Group several ``put`` calls into a single write."""
        with self._lock:
            self._batch += 1
            try:
                yield self
            finally:
                self._batch -= 1
            if self._batch == 0:
                self._commit()

    def as_dict(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._values)
