import threading

import pytest

from flash_monitor.channels import Mailbox
from flash_monitor.config import Baud, DeviceConfig
from flash_monitor.dashboard import Dashboard
from flash_monitor.errors import PortOpenError
from flash_monitor.messages import (
    DISCONNECT,
    AppCommand,
    CommandKind,
    DeviceConnected,
    Key,
    KeyKind,
    LineStatus,
    NewPopup,
    SerialCommand,
    SerialCommandKind,
    SerialEvent,
    SerialEventKind,
    Severity,
    WatcherReply,
    WatcherRequest,
)
from flash_monitor.popups import Notification
from flash_monitor.router import App
from flash_monitor.watcher import FlashResult, FlashWatcher
from flash_monitor.wizards import connect_device


class Recorder:
    """Popup that records what it was offered."""

    title = "rec"

    def __init__(self, name, handles, seen):
        self.name = name
        self.handles = handles
        self.seen = seen
        self.closed = False

    def handle(self, event):
        self.seen.append(self.name)
        return self.handles

    def render(self, width, height):
        return []

    def alive(self):
        return not self.closed

    def close(self):
        self.closed = True


class FakeRunner:
    def __init__(self, returncode=0):
        self.calls = []
        self.returncode = returncode

    def __call__(self, argv):
        self.calls.append(list(argv))
        return FlashResult(tuple(argv), self.returncode, "written 4096 bytes\n", "")


def _spawned():
    calls = []

    def spawner(target, *args, **kwargs):
        calls.append((target, args, kwargs))

    return calls, spawner


@pytest.fixture
def app(opener):
    calls, spawner = _spawned()
    a = App(DeviceConfig(path=""), ["flasher", "#BIN#"], opener=opener, spawner=spawner)
    a.spawned = calls
    return a


def _send(app, cmd):
    return app.handle(AppCommand(CommandKind.SEND_TO_DEVICE, cmd))


# ---------------- SendToDevice ----------------


def test_disconnect_without_device_is_silent(app, get_notices):
    for _ in range(3):
        _send(app, DISCONNECT)
    assert get_notices(app) == []


@pytest.mark.parametrize(
    "cmd",
    [SerialCommand.write(b"x"), SerialCommand.set_dtr(True), SerialCommand.set_flow_signal(False)],
)
def test_send_without_device_reports_not_connected_once(app, get_notices, cmd):
    _send(app, cmd)
    msgs = get_notices(app)
    assert len(msgs) == 1
    assert msgs[0].severity == Severity.ERROR
    assert "Not currently connected" in msgs[0].text


def test_send_is_forwarded_to_the_link(app, link):
    app.handle(AppCommand(CommandKind.DEVICE_CONNECTED, DeviceConnected(link, DeviceConfig("/dev/ttyUSB0"))))
    _send(app, SerialCommand.write(b"abc"))
    assert link.receive(timeout=1) == SerialCommand.write(b"abc")


def test_failed_send_drops_the_link(app, link, get_notices):
    app.handle(AppCommand(CommandKind.DEVICE_CONNECTED, DeviceConnected(link, DeviceConfig("/dev/ttyUSB0"))))
    link.close()
    _send(app, SerialCommand.write(b"abc"))
    assert app.serial is None
    assert len(get_notices(app, Severity.ERROR)) == 1
    # Now nothing is held: Disconnect is a quiet no-op.
    _send(app, DISCONNECT)
    assert len(get_notices(app)) == 1


def test_failed_disconnect_send_is_quiet(app, link, get_notices):
    app.handle(AppCommand(CommandKind.DEVICE_CONNECTED, DeviceConnected(link, DeviceConfig("/dev/ttyUSB0"))))
    link.close()
    _send(app, DISCONNECT)
    assert app.serial is None
    assert get_notices(app) == []


# ---------------- device / serial events ----------------


def test_device_connected_stores_link_and_config(app, link):
    cfg = DeviceConfig("/dev/ttyUSB0", baud=Baud.B9600)
    app.handle(AppCommand(CommandKind.DEVICE_CONNECTED, DeviceConnected(link, cfg)))
    assert app.serial is link
    assert app.serial_cfg == cfg


def test_new_device_retires_previous_actor(app, link):
    app.handle(AppCommand(CommandKind.DEVICE_CONNECTED, DeviceConnected(link, DeviceConfig("/dev/ttyUSB0"))))
    other = Mailbox("other")
    app.handle(AppCommand(CommandKind.DEVICE_CONNECTED, DeviceConnected(other, DeviceConfig("/dev/ttyACM0"))))
    assert link.receive(timeout=1) == DISCONNECT
    assert app.serial is other


def test_serial_events_update_state(app, link, get_notices):
    app.handle(AppCommand(CommandKind.DEVICE_CONNECTED, DeviceConnected(link, DeviceConfig("/dev/ttyUSB0"))))
    app.handle(SerialEvent(SerialEventKind.CONNECTED, "/dev/ttyUSB0", link))
    assert app.state.device == "/dev/ttyUSB0"
    assert "Connected: /dev/ttyUSB0" in [n.text for n in get_notices(app)]
    # connect triggers a line status readback
    assert link.receive(timeout=1).kind == SerialCommandKind.REQUEST_STATUS

    app.handle(SerialEvent(SerialEventKind.DATA, b"boot ok\nprom", link))
    app.handle(SerialEvent(SerialEventKind.DATA, b"pt> ", link))
    assert list(app.state.terminal.lines)[-2:] == ["boot ok", "prompt> "]

    app.handle(SerialEvent(SerialEventKind.LINE_STATUS, LineStatus(dtr=True, cts=False), link))
    assert (app.state.dtr, app.state.cts) == (True, False)

    app.handle(SerialEvent(SerialEventKind.GONE, None, link))
    assert app.serial is None
    assert app.state.device is None
    # remembered config survives the disconnect
    assert app.serial_cfg == DeviceConfig("/dev/ttyUSB0")


def test_events_from_a_retired_actor_are_ignored(app, link):
    old = Mailbox("old")
    app.handle(AppCommand(CommandKind.DEVICE_CONNECTED, DeviceConnected(link, DeviceConfig("/dev/ttyUSB0"))))
    app.handle(SerialEvent(SerialEventKind.DATA, b"stale\n", old))
    app.handle(SerialEvent(SerialEventKind.GONE, None, old))
    assert app.serial is link
    assert "stale" not in list(app.state.terminal.lines)


# ---------------- popups and keys ----------------


def test_popup_dispatch_is_top_down(app):
    seen = []
    p1 = Recorder("p1", False, seen)
    p2 = Recorder("p2", True, seen)
    app.handle(NewPopup(p1))
    app.handle(NewPopup(p2))
    app.handle(Key("a"))
    assert seen == ["p2"]


def test_unhandled_key_falls_through_to_lower_popup_then_global(app):
    seen = []
    app.handle(NewPopup(Recorder("p1", False, seen)))
    app.handle(NewPopup(Recorder("p2", False, seen)))
    app.handle(Key("c", ctrl=True))
    assert seen == ["p2", "p1"]
    assert app.running is False


def test_handled_key_skips_global_bindings(app):
    seen = []
    app.handle(NewPopup(Recorder("p", True, seen)))
    app.handle(Key("c", ctrl=True))
    assert app.running is True


def test_key_release_is_ignored(app):
    seen = []
    app.handle(NewPopup(Recorder("p", True, seen)))
    app.handle(Key("a", kind=KeyKind.RELEASE))
    assert seen == []


def test_global_bindings_spawn_wizards(app):
    app.handle(Key("f", ctrl=True))
    app.handle(Key("u", ctrl=True))
    targets = [t.__name__ for t, _, _ in app.spawned]
    assert targets == ["device_wizard", "auto_flash_wizard"]


def test_dismiss_top_closes_popup(app):
    rec = Recorder("p", False, [])
    app.handle(NewPopup(rec))
    assert app.handle(Key("esc")) is True
    assert rec.closed
    assert len(app.stack) == 1


def test_dismissing_the_last_component_ends_the_app(app):
    assert isinstance(app.stack[0], Dashboard)
    assert app.handle(AppCommand(CommandKind.DISMISS_TOP)) is False
    assert app.stack == []
    assert app.running is False


def test_dead_popups_are_dropped_on_draw(app):
    rec = Recorder("p", False, [])
    app.handle(NewPopup(rec))
    rec.closed = True
    app.draw()
    assert rec not in app.stack


def test_help_popup(app):
    app.handle(Key("k", ctrl=True))
    assert isinstance(app.stack[-1], Notification)
    app.handle(Key("esc"))
    assert len(app.stack) == 1


def test_quit_allows_a_final_iteration(app):
    app.inbox.put(AppCommand(CommandKind.QUIT))
    app.run()
    assert app.running is False


# ---------------- auto-flash handshake ----------------


class StubWatcher:
    def __init__(self):
        self.replies = Mailbox("replies")
        self.display_path = "firmware.bin"
        self.stopped = False

    def stop(self):
        self.stopped = True
        self.replies.close()


def test_disconnect_request_without_device_replies_no_device(app):
    w = StubWatcher()
    app.handle(AppCommand(CommandKind.AUTO_FLASH_ARMED, w))
    app.handle(AppCommand(CommandKind.WATCHER_REQUEST, WatcherRequest.DISCONNECT))
    assert w.replies.receive(timeout=1) == WatcherReply.NO_DEVICE


def test_disconnect_request_waits_for_gone(app, link):
    w = StubWatcher()
    app.handle(AppCommand(CommandKind.AUTO_FLASH_ARMED, w))
    app.handle(AppCommand(CommandKind.DEVICE_CONNECTED, DeviceConnected(link, DeviceConfig("/dev/ttyUSB0"))))
    app.handle(AppCommand(CommandKind.WATCHER_REQUEST, WatcherRequest.DISCONNECT))
    assert link.receive(timeout=1) == DISCONNECT
    assert w.replies.receive_nowait() is None
    app.handle(SerialEvent(SerialEventKind.GONE, None, link))
    assert w.replies.receive(timeout=1) == WatcherReply.DISCONNECTED
    assert app.serial is None


def test_reconnect_reuses_remembered_config(app, link, opener):
    cfg = DeviceConfig("/dev/ttyUSB0", baud=Baud.B57600, dtr=False)
    app.handle(AppCommand(CommandKind.DEVICE_CONNECTED, DeviceConnected(link, cfg)))
    app.handle(SerialEvent(SerialEventKind.GONE, None, link))
    app.handle(AppCommand(CommandKind.WATCHER_REQUEST, WatcherRequest.RECONNECT))
    assert opener.configs == [cfg]
    assert app.serial is not None and app.serial is not link
    app.serial.send(DISCONNECT)


def test_reconnect_failure_is_reported_and_not_retried(app, link, make_opener, get_notices):
    app.opener = make_opener(error=PortOpenError("device busy"))
    app.handle(AppCommand(CommandKind.DEVICE_CONNECTED, DeviceConnected(link, DeviceConfig("/dev/ttyUSB0"))))
    app.handle(SerialEvent(SerialEventKind.GONE, None, link))
    app.handle(AppCommand(CommandKind.WATCHER_REQUEST, WatcherRequest.RECONNECT))
    assert app.serial is None
    errors = get_notices(app, Severity.ERROR)
    assert len(errors) == 1
    assert "device busy" in errors[0].text
    assert app.inbox.empty()
    assert len(app.opener.configs) == 1


def test_rearming_replaces_previous_watcher(app):
    first, second = StubWatcher(), StubWatcher()
    app.handle(AppCommand(CommandKind.AUTO_FLASH_ARMED, first))
    app.handle(AppCommand(CommandKind.AUTO_FLASH_ARMED, second))
    assert first.stopped and not second.stopped
    assert app.watcher is second


def test_disarm(app, get_notices):
    w = StubWatcher()
    app.handle(AppCommand(CommandKind.AUTO_FLASH_ARMED, w))
    app.handle(Key("x", ctrl=True))
    assert w.stopped


def test_disarm_during_handshake_gives_the_port_back(app, link, opener):
    w = StubWatcher()
    cfg = DeviceConfig("/dev/ttyUSB0")
    app.handle(AppCommand(CommandKind.AUTO_FLASH_ARMED, w))
    app.handle(AppCommand(CommandKind.DEVICE_CONNECTED, DeviceConnected(link, cfg)))
    app.handle(AppCommand(CommandKind.WATCHER_REQUEST, WatcherRequest.DISCONNECT, w.replies))
    app.handle(Key("x", ctrl=True))
    assert app.watcher is None
    app.handle(SerialEvent(SerialEventKind.GONE, None, link))
    assert opener.configs == [cfg]
    assert app.serial is not None and app.serial is not link
    app.serial.send(DISCONNECT)


def test_rearm_during_handshake_does_not_answer_the_new_watcher(app, link, opener):
    first, second = StubWatcher(), StubWatcher()
    cfg = DeviceConfig("/dev/ttyUSB0")
    app.handle(AppCommand(CommandKind.AUTO_FLASH_ARMED, first))
    app.handle(AppCommand(CommandKind.DEVICE_CONNECTED, DeviceConnected(link, cfg)))
    app.handle(AppCommand(CommandKind.WATCHER_REQUEST, WatcherRequest.DISCONNECT, first.replies))
    app.handle(AppCommand(CommandKind.AUTO_FLASH_ARMED, second))
    app.handle(SerialEvent(SerialEventKind.GONE, None, link))
    assert second.replies.receive_nowait() is None
    # The first watcher is gone, so the router reopens the port itself.
    assert opener.configs == [cfg]
    assert app.serial is not None
    app.serial.send(DISCONNECT)


def test_reply_goes_to_the_watcher_that_asked(app, link):
    first, second = StubWatcher(), StubWatcher()
    app.handle(AppCommand(CommandKind.AUTO_FLASH_ARMED, second))
    app.handle(AppCommand(CommandKind.DEVICE_CONNECTED, DeviceConnected(link, DeviceConfig("/dev/ttyUSB0"))))
    app.handle(AppCommand(CommandKind.WATCHER_REQUEST, WatcherRequest.DISCONNECT, first.replies))
    app.handle(SerialEvent(SerialEventKind.GONE, None, link))
    assert first.replies.receive(timeout=1) == WatcherReply.DISCONNECTED
    assert second.replies.receive_nowait() is None
    assert app.watcher is None
    assert app.state.watching is None
    app.handle(Key("x", ctrl=True))
    assert get_notices(app, Severity.WARNING)


def test_flash_cycle_end_to_end(app, opener, pump, get_notices):
    cfg = DeviceConfig("/dev/ttyUSB0")
    assert connect_device(app.to_self, cfg, opener)
    pump(app, lambda: app.state.device == "/dev/ttyUSB0")
    first_port = opener.ports[0]

    runner = FakeRunner()
    watcher = FlashWatcher("firmware.bin", ["flasher", "#BIN#"], app.to_self, runner=runner)
    app.handle(AppCommand(CommandKind.AUTO_FLASH_ARMED, watcher))
    cycle = threading.Thread(target=watcher.flash_cycle)
    cycle.start()

    pump(app, lambda: len(opener.ports) == 2 and app.state.device == "/dev/ttyUSB0")
    cycle.join(2)

    assert first_port.closed
    assert runner.calls == [["flasher", "firmware.bin"]]
    assert opener.configs == [cfg, cfg]
    texts = [n.text for n in get_notices(app)]
    assert any(t.startswith("Flash succeeded (exit code 0") for t in texts)
    app.shutdown()


def test_flash_cycle_without_device(app, pump, get_notices):
    runner = FakeRunner()
    watcher = FlashWatcher("firmware.bin", ["flasher", "#BIN#"], app.to_self, runner=runner)
    app.handle(AppCommand(CommandKind.AUTO_FLASH_ARMED, watcher))
    before = len(get_notices(app))
    cycle = threading.Thread(target=watcher.flash_cycle)
    cycle.start()
    pump(app, lambda: not cycle.is_alive() and app.inbox.empty())
    cycle.join(2)

    new = get_notices(app)[before:]
    assert [n.text for n in new] == ["Cannot flash when no device is connected"]
    assert runner.calls == []
    assert app.serial is None
