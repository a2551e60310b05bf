import threading
import time
import unittest

from BotLink import prefs as P
from BotLink.connect import ConnectionEstablisher
from BotLink.known import DefaultDeviceMemory
from BotLink.models import AttemptState, DeviceRecord, TransportKind
from BotLink.prefs import PreferenceStore
from BotLink.session import RobotSession

import fakes

ROBOT = DeviceRecord("AA:BB:CC:DD:EE:FF", "Mobbob", TransportKind.CLASSIC, True)
BLUNO = DeviceRecord("C8:FD:19:00:00:01", "Bluno", TransportKind.LOW_ENERGY, True)


class ConnectionEstablisherTests(unittest.TestCase):
    def setUp(self):
        self.store = PreferenceStore()
        self.store.put(P.DEVICE_ADDR, "00:00:00:00:00:01")
        self.store.put(P.DEVICE_NAME, "Previous")
        self.memory = DefaultDeviceMemory(self.store)
        self.session = RobotSession()
        self.clock = fakes.FakeClock()
        self.transports = []
        self.connected = []
        self.failed = []

    def _factory(self, connect_at_ms=0, busy_for_ms=0):
        def make(device):
            transport = fakes.FakeTransport(
                device.identifier, device.display_name, self.clock, connect_at_ms, busy_for_ms
            )
            self.transports.append((device.transport_kind, transport))
            return transport

        return make

    def _establisher(self, connect_at_ms=0, busy_for_ms=0, **kwargs):
        factory = self._factory(connect_at_ms, busy_for_ms)
        return ConnectionEstablisher(
            self.session,
            self.memory,
            factories={TransportKind.CLASSIC: factory, TransportKind.LOW_ENERGY: factory},
            on_connected=self.connected.append,
            on_failed=self.failed.append,
            **kwargs,
        )

    def _connect(self, establisher, device=ROBOT):
        attempt = establisher.connect(device, cancel=fakes.TickingEvent(self.clock))
        self.assertTrue(attempt.wait_settled(5.0))
        return attempt

    def test_connected_at_next_poll(self):
        attempt = self._connect(self._establisher(connect_at_ms=1200))
        self.assertEqual(attempt.state, AttemptState.CONNECTED)
        self.assertEqual(attempt.elapsed_ms, 1200)
        self.assertEqual(self.memory.identity(), ("AA:BB:CC:DD:EE:FF", "Mobbob"))
        self.assertEqual(self.connected, [attempt])
        self.assertIs(self.session.active, attempt.transport)

    def test_connection_between_polls_is_seen_on_the_boundary(self):
        attempt = self._connect(self._establisher(connect_at_ms=1150))
        self.assertEqual(attempt.elapsed_ms, 1200)

    def test_timeout_fails_at_five_seconds(self):
        attempt = self._connect(self._establisher(connect_at_ms=None))
        self.assertEqual(attempt.state, AttemptState.FAILED)
        self.assertEqual(attempt.reason, "timeout")
        self.assertEqual(attempt.elapsed_ms, 5000)
        self.assertEqual(self.clock.waits, 50)
        self.assertEqual(self.failed, [attempt])

    def test_connecting_just_before_the_deadline_succeeds(self):
        attempt = self._connect(self._establisher(connect_at_ms=5000))
        self.assertEqual(attempt.state, AttemptState.CONNECTED)

    def test_failure_leaves_default_device_untouched(self):
        before = self.memory.identity()
        self._connect(self._establisher(connect_at_ms=None))
        self.assertEqual(self.memory.identity(), before)

    def test_failure_releases_transport(self):
        attempt = self._connect(self._establisher(connect_at_ms=None))
        self.assertTrue(attempt.transport.disconnected)
        self.assertIsNone(self.session.active)

    def test_transport_chosen_by_device_kind(self):
        classic_made, le_made = [], []
        establisher = ConnectionEstablisher(
            self.session,
            self.memory,
            factories={
                TransportKind.CLASSIC: lambda d: classic_made.append(d) or fakes.FakeTransport(d.identifier),
                TransportKind.LOW_ENERGY: lambda d: le_made.append(d) or fakes.FakeTransport(d.identifier),
            },
            greeting=None,
        )
        establisher.connect(BLUNO, cancel=fakes.TickingEvent(self.clock)).wait_settled(5.0)
        establisher.connect(ROBOT, cancel=fakes.TickingEvent(self.clock)).wait_settled(5.0)
        self.assertEqual(le_made, [BLUNO])
        self.assertEqual(classic_made, [ROBOT])

    def test_transport_construction_failure(self):
        def broken(device):
            raise OSError("RFCOMM sockets are not supported on this platform")

        establisher = ConnectionEstablisher(
            self.session,
            self.memory,
            factories={TransportKind.CLASSIC: broken, TransportKind.LOW_ENERGY: broken},
            on_failed=self.failed.append,
        )
        attempt = establisher.connect(ROBOT, cancel=fakes.TickingEvent(self.clock))
        self.assertEqual(attempt.wait(5.0), AttemptState.FAILED)
        self.assertTrue(attempt.reason.startswith("transport"))
        self.assertEqual(self.memory.identity(), ("00:00:00:00:00:01", "Previous"))
        self.assertEqual(len(self.failed), 1)

    def test_cancel_aborts_the_wait(self):
        establisher = self._establisher(connect_at_ms=None)
        cancel = threading.Event()
        attempt = establisher.connect(ROBOT, cancel=cancel)
        attempt.cancel()
        self.assertEqual(attempt.wait(2.0), AttemptState.FAILED)
        self.assertEqual(attempt.reason, "cancelled")
        self.assertEqual(self.memory.identity(), ("00:00:00:00:00:01", "Previous"))

    def test_new_attempt_cancels_previous(self):
        establisher = self._establisher(connect_at_ms=None)
        first = establisher.connect(ROBOT, cancel=threading.Event())
        second = establisher.connect(BLUNO, cancel=threading.Event())
        self.assertEqual(first.wait(0), AttemptState.FAILED)
        self.assertEqual(first.reason, "cancelled")
        second.cancel()
        second.wait_settled(2.0)

    def test_previous_attempt_has_exited_before_the_next_starts(self):
        establisher = self._establisher(connect_at_ms=None)
        first = establisher.connect(ROBOT, cancel=threading.Event())
        for _ in range(200):
            if first.transport is not None:
                break
            time.sleep(0.01)
        second = establisher.connect(BLUNO, cancel=threading.Event())
        self.assertTrue(first.wait_settled(0))
        self.assertTrue(first.transport.disconnected)
        for _ in range(200):
            if second.transport is not None and self.session.active is second.transport:
                break
            time.sleep(0.01)
        self.assertIs(self.session.active, second.transport)
        self.assertFalse(second.transport.disconnected)
        second.cancel()
        second.wait_settled(2.0)

    def test_existing_robot_is_disconnected_first(self):
        previous = fakes.FakeTransport("00:00:00:00:00:01")
        self.session.attach(previous)
        self._connect(self._establisher())
        self.assertTrue(previous.disconnected)

    def test_greeting_is_sent_after_connect(self):
        attempt = self._connect(self._establisher(busy_for_ms=300, greeting=b"bounce\n"))
        self.assertEqual(attempt.transport.sent, [b"bounce\n"])
        self.assertEqual(attempt.state, AttemptState.CONNECTED)

    def test_busy_wait_is_capped(self):
        attempt = self._connect(self._establisher(busy_for_ms=None, settle_timeout_ms=1000))
        self.assertEqual(attempt.state, AttemptState.CONNECTED)
        # ten polls for the handshake, none needed to connect
        self.assertEqual(self.clock.waits, 10)

    def test_rejects_bad_arguments(self):
        with self.assertRaises(ValueError):
            ConnectionEstablisher(self.session, self.memory, factories={}, poll_ms=0)
        with self.assertRaises(ValueError):
            self._establisher().connect(DeviceRecord("", "", TransportKind.CLASSIC))


class ConnectionTimeoutWallClockTests(unittest.TestCase):
    def test_timeout_bound(self):
        establisher = ConnectionEstablisher(
            RobotSession(),
            DefaultDeviceMemory(PreferenceStore()),
            factories={TransportKind.CLASSIC: lambda d: fakes.FakeTransport(d.identifier, connect_at_ms=None)},
        )
        start = time.monotonic()
        attempt = establisher.connect(ROBOT)
        state = attempt.wait(10.0)
        elapsed = time.monotonic() - start
        self.assertEqual(state, AttemptState.FAILED)
        self.assertGreaterEqual(elapsed, 4.9)
        self.assertLessEqual(elapsed, 6.0)


if __name__ == "__main__":
    unittest.main()
