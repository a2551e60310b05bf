import argparse
import logging
import sys
import threading
from typing import Optional

from . import config as C
from . import prefs as P
from .known import DefaultDeviceMemory, KnownDeviceCache
from .models import AttemptState, DeviceRecord, TransportKind
from .prefs import PreferenceStore
from .selector import DiscoverySelector
from .session import RobotSession


class ConsoleSurface:
    """Selection surface that prints progress and keeps the latest result list."""

    def __init__(self, verbose: bool = True):
        self.verbose = verbose
        self.devices: list[DeviceRecord] = []
        self.closed = threading.Event()
        self.cancelled = False
        self._last_phase: Optional[str] = None

    def set_title(self, title: str) -> None:
        phase = title.rstrip(".")
        if self.verbose and phase != self._last_phase:
            print(phase)
        self._last_phase = phase

    def set_progress_visible(self, visible: bool) -> None:
        pass

    def show_results(self, devices: list[DeviceRecord]) -> None:
        self.devices = list(devices)

    def notify(self, message: str) -> None:
        print(message)

    def close(self, cancelled: bool) -> None:
        self.cancelled = cancelled
        self.closed.set()


def _print_devices(devices: list[DeviceRecord]) -> None:
    if not devices:
        print("No robots found. Ensure the robot is on and Bluetooth is enabled.")
        return
    for i, d in enumerate(devices, start=1):
        flag = {True: "compatible", False: "incompatible", None: "unknown"}[d.compatible]
        print(f"{i:2d}. {d.display_name}  {d.identifier}  [{d.transport_kind.value}, {flag}]")


def _add_scan_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-t",
        "--timeout",
        type=float,
        default=None,
        help=f"Scan window per radio in seconds (default: {C.CLASSIC_SCAN_S:g} classic, {C.LE_SCAN_S:g} LE)",
    )
    parser.add_argument("--all", action="store_true", help="Also list devices that are not robots")
    parser.add_argument("--no-classic", action="store_true", help="Skip the classic Bluetooth phase")
    parser.add_argument("--no-le", action="store_true", help="Skip the Bluetooth LE phase")


def _build_selector(ns, store: PreferenceStore, session: RobotSession) -> DiscoverySelector:
    overrides = {}
    if getattr(ns, "all", False):
        overrides[P.FILTER_INCOMPATIBLE] = False
    if getattr(ns, "no_classic", False):
        overrides[P.SCAN_CLASSIC] = False
    if getattr(ns, "no_le", False):
        overrides[P.SCAN_LOW_ENERGY] = False
    timeout = getattr(ns, "timeout", None)
    return DiscoverySelector(
        store,
        session,
        classic_timeout=timeout or C.CLASSIC_SCAN_S,
        low_energy_timeout=timeout or C.LE_SCAN_S,
        overrides=overrides,
    )


def _report(attempt, session: RobotSession) -> int:
    state = attempt.wait()
    if state == AttemptState.CONNECTED:
        print(f"Connected to {attempt.device.label} in {attempt.elapsed_ms} ms")
        attempt.wait_settled()
        if not session.is_connected:
            print(f"Lost the link to {attempt.device.label}")
            return 1
        return 0
    print(f"Could not connect to {attempt.device.label}: {attempt.reason}")
    return 1


def main(argv=None):
    parser = argparse.ArgumentParser(prog="botlink", description="Find and connect to nearby robots")
    parser.add_argument(
        "--prefs",
        default=str(C.PREFS_PATH),
        help=f"Preferences file (default: {C.PREFS_PATH})",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress details")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # find subcommand
    p_find = subparsers.add_parser("find", help="Scan for nearby robots")
    _add_scan_args(p_find)

    def handle_find(ns, store, session):
        selector = _build_selector(ns, store, session)
        surface = ConsoleSurface()
        if not selector.open(surface):
            return 1
        try:
            selector.coordinator.wait_idle()
        finally:
            selector.dismiss()
        _print_devices(selector.results)
        return 0

    p_find.set_defaults(func=handle_find)

    # connect subcommand
    p_conn = subparsers.add_parser("connect", help="Scan, pick a robot and connect to it")
    _add_scan_args(p_conn)
    p_conn.add_argument("--address", required=False, help="Robot address. Omit to scan and choose.")
    p_conn.add_argument("--name", default="", help="Display name used with --address")
    p_conn.add_argument("--le", action="store_true", help="The --address robot uses Bluetooth LE")

    def handle_connect(ns, store, session):
        if ns.timeout is not None and ns.timeout <= 0:
            parser.error("--timeout must be positive")
        selector = _build_selector(ns, store, session)

        if ns.address:
            device = DeviceRecord(
                identifier=ns.address.replace("-", ":").upper(),
                display_name=ns.name or ns.address,
                transport_kind=TransportKind.LOW_ENERGY if ns.le else TransportKind.CLASSIC,
            )
            return _report(selector.select(device), session)

        surface = ConsoleSurface()
        if not selector.open(surface):
            return 1
        try:
            selector.coordinator.wait_idle()
        except KeyboardInterrupt:
            selector.dismiss()
            print()
        devices = selector.results
        _print_devices(devices)
        if not devices:
            return 1

        choice = input(f"Select a robot [1-{len(devices)}]: ").strip()
        try:
            index = int(choice) - 1
            if not 0 <= index < len(devices):
                raise ValueError(choice)
        except ValueError:
            raise ValueError(f"invalid selection: {choice!r}") from None
        return _report(selector.select(devices[index]), session)

    p_conn.set_defaults(func=handle_connect)

    # autoconnect subcommand
    p_auto = subparsers.add_parser("autoconnect", help="Connect to the last robot used")

    def handle_autoconnect(ns, store, session):
        selector = _build_selector(ns, store, session)
        attempt = selector.autoconnect()
        if attempt is None:
            print("No autoconnect device saved. Run 'botlink connect' first.")
            return 1
        return _report(attempt, session)

    p_auto.set_defaults(func=handle_autoconnect)

    # known subcommand
    p_known = subparsers.add_parser("known", help="List devices classified in earlier scans")

    def handle_known(ns, store, session):
        known = KnownDeviceCache(store).snapshot()
        for address, compatible in sorted(known.items()):
            print(f"{address}  {'compatible' if compatible else 'incompatible'}")
        if not known:
            print("No devices cached yet.")
        default = DefaultDeviceMemory(store).load()
        if default is not None:
            print(f"Autoconnect device: {default.label} [{default.transport_kind.value}]")
        return 0

    p_known.set_defaults(func=handle_known)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store = PreferenceStore(args.prefs)
    session = RobotSession()
    try:
        return args.func(args, store, session)
    except KeyboardInterrupt:
        print("Interrupted.")
        return 130
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        session.disconnect()


if __name__ == "__main__":
    sys.exit(main())
