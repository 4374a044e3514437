import shutil
import time

from filebroker.health import HealthMonitor

from conftest import FakeObserver


def echo(instruction, session_id):
    return f"ok: {instruction}"


def test_healthy_broker_reports_counts(make_broker, client):
    broker = make_broker(echo, observer_factory=FakeObserver)
    monitor = HealthMonitor(broker, interval=60)
    broker.start()
    client.enqueue("R1", session_id="h1")
    assert client.wait_for_response("h1", timeout=5, poll_interval=0.02).completed

    report = monitor.check_once()

    assert report["healthy"] is True
    assert report["directory_ok"] is True
    assert report["watcher_alive"] is True
    assert report["processed_total"] == 1
    assert report["restarted"] is False
    assert broker.restarts == 0


def test_dead_watcher_is_restarted_and_picks_up_waiting_requests(make_broker, client):
    broker = make_broker(echo, observer_factory=FakeObserver)
    monitor = HealthMonitor(broker, interval=60)
    broker.start()

    broker.watcher._observer.alive = False
    broker.watcher._stop.set()
    broker.watcher._poller.join(2)
    client.enqueue("R1 while down", session_id="orphan")

    report = monitor.check_once()

    assert report["healthy"] is False
    assert report["watcher_alive"] is False
    assert report["restarted"] is True
    assert report["restarts"] == 1
    assert broker.watcher_alive()
    assert client.wait_for_response("orphan", timeout=5, poll_interval=0.02).completed


def test_unreachable_directory_triggers_restart(make_broker):
    broker = make_broker(echo, observer_factory=FakeObserver)
    monitor = HealthMonitor(broker, interval=60)
    broker.start()
    shutil.rmtree(broker.root)

    report = monitor.check_once()

    assert report["directory_ok"] is False
    assert "unreachable" in report["reason"]
    assert report["restarted"] is True
    assert broker.directory.reachable()
    assert broker.directory.processed_dir.is_dir()


def test_notifier_fault_requests_restart(make_broker):
    created = []

    def flaky_observer():
        created.append(1)
        return FakeObserver(fail=len(created) == 1)

    broker = make_broker(echo, observer_factory=flaky_observer)
    monitor = HealthMonitor(broker, interval=60)
    broker.start()

    assert monitor._wake.is_set()
    assert not broker.watcher_alive()
    assert broker.watcher.poller_alive()

    report = monitor.check_once()

    assert report["restarted"] is True
    assert "inotify" in report["reason"]
    assert broker.watcher_alive()
    assert monitor.check_once()["healthy"] is True


def test_monitor_loop_runs_periodically(make_broker):
    broker = make_broker(echo, observer_factory=FakeObserver)
    monitor = HealthMonitor(broker, interval=0.02)
    broker.start()
    monitor.start()
    try:
        deadline = time.monotonic() + 5
        while monitor.checks < 2 and time.monotonic() < deadline:
            time.sleep(0.02)
    finally:
        monitor.stop()
    assert monitor.checks >= 2
    assert monitor.failures == 0
