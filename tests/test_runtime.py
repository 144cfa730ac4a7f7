import time

import pytest

from conftest import FakeDirectory, FakeProxy, make_service
from proxysync.coalescer import TransitionEvent
from proxysync.directory import DirectoryUnavailable
from proxysync.render import ConfigRenderer
from proxysync.runtime import ControlLoop
from proxysync.watcher import ConfigFileWatcher


def ev(service_id, state):
    return TransitionEvent(service_id=service_id, event_type="service", state=state)


@pytest.fixture
def output(tmp_path):
    return tmp_path / "conf.d" / "default.conf"


def make_loop(output, clock, directory=None, proxy=None):
    directory = directory or FakeDirectory([make_service("aaaa1111", "web", ["10.0.0.1"], host="web.example.com")])
    proxy = proxy or FakeProxy()
    loop = ControlLoop(
        directory=directory,
        renderer=ConfigRenderer(),
        proxy=proxy,
        output_path=str(output),
        settle_delay=5.0,
        reload_delay=3.0,
        clock=clock,
    )
    return loop, directory, proxy


def test_settled_events_regenerate_after_delay(output, clock):
    loop, directory, proxy = make_loop(output, clock)

    for e in (ev("A", "Starting"), ev("B", "Starting"), ev("A", "Running"), ev("B", "Running")):
        loop.post_event(e)
    loop.drain()

    state = loop.status()
    assert state["events_seen"] == 4
    assert state["regeneration_pending"] is True
    assert not output.exists()

    clock.advance(5)
    loop.drain()

    assert directory.calls == 1
    assert proxy.reloads == 1
    assert "server_name web.example.com;" in output.read_text()
    state = loop.status()
    assert state["regenerations"] == 1
    assert state["regeneration_pending"] is False
    assert state["last_regeneration_ok"] is True
    assert state["services"] == ["web"]


def test_directory_failure_skips_the_cycle(output, clock):
    loop, directory, proxy = make_loop(output, clock, directory=FakeDirectory(error=DirectoryUnavailable("down")))

    loop.post_event(ev("A", "Starting"))
    loop.post_event(ev("A", "Running"))
    loop.drain()
    clock.advance(5)
    loop.drain()

    assert directory.calls == 1
    assert not output.exists()
    assert proxy.reloads == 0
    assert loop.coalescer.dirty is False
    assert loop.coalescer.in_flight == []
    state = loop.status()
    assert state["skipped_cycles"] == 1
    assert state["last_regeneration_ok"] is False
    assert "down" in state["last_error"]


def test_failed_cycle_is_retried_by_the_next_settle(output, clock):
    directory = FakeDirectory([make_service("aaaa1111", "web", ["10.0.0.1"])], error=DirectoryUnavailable("down"))
    loop, _, proxy = make_loop(output, clock, directory=directory)

    loop.post_event(ev("A", "Starting"))
    loop.post_event(ev("A", "Running"))
    loop.drain()
    clock.advance(5)
    loop.drain()
    assert not output.exists()

    directory.error = None
    loop.post_event(ev("A", "Redeploying"))
    loop.post_event(ev("A", "Running"))
    loop.drain()
    clock.advance(5)
    loop.drain()

    assert output.exists()
    assert proxy.reloads == 1


def test_bootstrap_regenerates_immediately(output, clock):
    loop, directory, proxy = make_loop(output, clock)

    loop.post_bootstrap()
    loop.drain()

    assert output.exists()
    assert directory.calls == 1
    assert proxy.reloads == 1


def test_own_write_does_not_trigger_reload(output, clock):
    loop, _, proxy = make_loop(output, clock)
    loop.post_bootstrap()
    loop.drain()

    loop.post_file_changed()
    loop.drain()

    assert loop.status()["reload_pending"] is False
    clock.advance(10)
    loop.drain()
    assert proxy.reloads == 1


def test_external_edit_reloads_after_debounce(output, clock):
    loop, directory, proxy = make_loop(output, clock)
    loop.post_bootstrap()
    loop.drain()
    assert proxy.reloads == 1

    with open(output, "a") as f:
        f.write("# manual tweak\n")
    loop.post_file_changed()
    loop.drain()
    assert loop.status()["reload_pending"] is True

    clock.advance(2)
    loop.post_file_changed()
    loop.drain()
    clock.advance(2)
    loop.drain()
    assert proxy.reloads == 1

    clock.advance(1)
    loop.drain()
    assert proxy.reloads == 2
    # reload only: no refetch, file left as edited
    assert directory.calls == 1
    assert output.read_text().endswith("# manual tweak\n")


def test_reload_path_and_regeneration_timer_are_independent(output, clock):
    loop, _, proxy = make_loop(output, clock)
    output.parent.mkdir(parents=True)
    output.write_text("external\n")

    loop.post_event(ev("A", "Starting"))
    loop.post_event(ev("A", "Running"))
    loop.post_file_changed()
    loop.drain()

    state = loop.status()
    assert state["regeneration_pending"] is True
    assert state["reload_pending"] is True

    clock.advance(3)
    loop.drain()
    assert proxy.reloads == 1
    assert loop.status()["regeneration_pending"] is True

    clock.advance(2)
    loop.drain()
    assert proxy.reloads == 2
    assert loop.status()["regenerations"] == 1


def test_manual_request_waits_for_in_flight_services(output, clock):
    loop, directory, _ = make_loop(output, clock)

    loop.post_event(ev("A", "Scaling"))
    loop.request_regeneration()
    loop.drain()
    clock.advance(30)
    loop.drain()
    assert directory.calls == 0

    loop.post_event(ev("A", "Running"))
    loop.drain()
    clock.advance(5)
    loop.drain()
    assert directory.calls == 1


def test_unexpected_handler_error_does_not_stop_the_loop(output, clock):
    loop, _, _ = make_loop(output, clock, directory=FakeDirectory(error=RuntimeError("boom")))

    loop.post_bootstrap()
    loop.drain()

    assert "RuntimeError: boom" in loop.status()["last_error"]

    loop.directory = FakeDirectory([make_service("aaaa1111", "web", ["10.0.0.1"])])
    loop.post_bootstrap()
    loop.drain()
    assert output.exists()


def test_failed_reload_is_counted(output, clock):
    loop, _, _ = make_loop(output, clock, proxy=FakeProxy(ok=False))
    loop.post_bootstrap()
    loop.drain()

    state = loop.status()
    assert state["regenerations"] == 1
    assert state["reloads"] == 0
    assert state["failed_reloads"] == 1


def test_connected_flag_follows_stream(output, clock):
    loop, _, _ = make_loop(output, clock)
    loop.post_connected(True)
    loop.drain()
    assert loop.status()["connected"] is True
    loop.post_connected(False)
    loop.drain()
    assert loop.status()["connected"] is False


def test_step_waits_until_timer_is_due(output, clock):
    loop, directory, _ = make_loop(output, clock)
    loop.post_event(ev("A", "Starting"))
    loop.post_event(ev("A", "Running"))
    loop.step(timeout=0)
    loop.step(timeout=0)
    assert directory.calls == 0

    clock.advance(5)
    loop.step(timeout=0)
    assert directory.calls == 1


def test_thread_runs_until_stopped(output):
    loop = ControlLoop(
        directory=FakeDirectory([make_service("aaaa1111", "web", ["10.0.0.1"])]),
        renderer=ConfigRenderer(),
        proxy=FakeProxy(),
        output_path=str(output),
    )
    loop.start()
    loop.post_bootstrap()
    loop.stop(timeout=5)

    assert output.exists()
    assert loop.status()["regenerations"] == 1


def test_watch_start_runs_after_bootstrap_write(output, clock):
    loop, directory, proxy = make_loop(output, clock)
    seen = []

    loop.post_bootstrap()
    loop.post_watch_start(lambda: seen.append(output.exists()))
    loop.drain()

    assert seen == [True]
    assert proxy.reloads == 1


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def test_real_watcher_reloads_on_external_edit_only(output):
    proxy = FakeProxy()
    loop = ControlLoop(
        directory=FakeDirectory([make_service("aaaa1111", "web", ["10.0.0.1"], host="web.example.com")]),
        renderer=ConfigRenderer(),
        proxy=proxy,
        output_path=str(output),
        settle_delay=0.1,
        reload_delay=0.2,
    )
    watcher = ConfigFileWatcher(str(output), loop.post_file_changed)
    loop.start()
    try:
        loop.post_bootstrap()
        loop.post_watch_start(watcher.start)

        assert _wait_for(lambda: watcher.running and proxy.reloads == 1)
        time.sleep(0.5)
        assert proxy.reloads == 1

        with open(output, "a", encoding="utf-8") as f:
            f.write("# edited by hand\n")

        assert _wait_for(lambda: proxy.reloads >= 2)
        assert loop.status()["regenerations"] == 1
    finally:
        watcher.stop()
        loop.stop(timeout=5)
