import contextlib
import io
import json
import os
import tempfile
import unittest
from unittest import mock

from BotLink import cli
from BotLink import prefs as P
from BotLink.backends import SystemCapabilities
from BotLink.known import DefaultDeviceMemory
from BotLink.models import AttemptState, DeviceRecord, TransportKind
from BotLink.prefs import PreferenceStore
from BotLink.session import RobotSession

import fakes


class CliTests(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.prefs = os.path.join(tmp.name, "prefs.json")

    def _main(self, *argv):
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            code = cli.main(["--prefs", self.prefs, *argv])
        return code, out.getvalue()

    def test_known_empty(self):
        code, out = self._main("known")
        self.assertEqual(code, 0)
        self.assertIn("No devices cached yet.", out)

    def test_known_lists_cache_and_default(self):
        store = PreferenceStore(self.prefs)
        store.put(P.KNOWN_DEVICES, json.dumps({"AA:BB:CC:DD:EE:FF": True, "11:22:33:44:55:66": False}))
        DefaultDeviceMemory(store).remember(DeviceRecord("AA:BB:CC:DD:EE:FF", "Mobbob", TransportKind.CLASSIC, True))
        code, out = self._main("known")
        self.assertEqual(code, 0)
        self.assertIn("AA:BB:CC:DD:EE:FF  compatible", out)
        self.assertIn("11:22:33:44:55:66  incompatible", out)
        self.assertIn("Autoconnect device: Mobbob:AA:BB:CC:DD:EE:FF [classic]", out)

    def test_autoconnect_without_saved_device(self):
        with mock.patch("BotLink.selector.check_capabilities", return_value=SystemCapabilities()):
            code, out = self._main("autoconnect")
        self.assertEqual(code, 1)
        self.assertIn("No autoconnect device saved", out)

    def test_find_without_radio(self):
        with mock.patch("BotLink.selector.check_capabilities", return_value=SystemCapabilities()):
            code, out = self._main("find")
        self.assertEqual(code, 1)
        self.assertIn("Bluetooth is not supported on this system", out)

    def test_find_with_radio_off(self):
        caps = SystemCapabilities(radio_present=True)
        with mock.patch("BotLink.selector.check_capabilities", return_value=caps):
            code, out = self._main("find")
        self.assertEqual(code, 1)
        self.assertIn("Bluetooth is not enabled", out)

    def test_report_checks_the_link_after_the_handshake(self):
        attempt = mock.Mock(elapsed_ms=300, device=DeviceRecord("AA:BB:CC:DD:EE:FF", "Mobbob", TransportKind.CLASSIC))
        attempt.wait.return_value = AttemptState.CONNECTED
        session = RobotSession()
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            self.assertEqual(cli._report(attempt, session), 1)
            session.attach(fakes.FakeTransport("AA:BB:CC:DD:EE:FF"))
            self.assertEqual(cli._report(attempt, session), 0)
        self.assertIn("Lost the link to Mobbob:AA:BB:CC:DD:EE:FF", out.getvalue())

    def test_print_devices(self):
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            cli._print_devices([])
            cli._print_devices([DeviceRecord("C8:FD:19:00:00:01", "Bluno", TransportKind.LOW_ENERGY, True)])
        text = out.getvalue()
        self.assertIn("No robots found.", text)
        self.assertIn(" 1. Bluno  C8:FD:19:00:00:01  [le, compatible]", text)

    def test_console_surface_prints_each_phase_once(self):
        surface = cli.ConsoleSurface()
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            for title in ("Nearby:", "Nearby: Bluetooth", "Nearby: Bluetooth.", "Nearby: Bluetooth..", "Nearby: Bluetooth LE"):
                surface.set_title(title)
        self.assertEqual(out.getvalue().splitlines(), ["Nearby:", "Nearby: Bluetooth", "Nearby: Bluetooth LE"])


if __name__ == "__main__":
    unittest.main()
