import json
import signal
import threading
import time

import pytest

from log_receiver import LogBroadcaster
from profile_store import ProfileStore
from sdingest import install_signal_handlers, reload_config, start_reload_worker


@pytest.fixture
def config_file(env):
    path = env.root / "config.json"
    path.write_text(json.dumps(env.config({"CARD1": ["DCIM"], "CARD2": ["DCIM"]})))
    return path


@pytest.fixture
def restore_signals():
    names = ["SIGTERM", "SIGINT", "SIGHUP"]
    saved = {n: signal.getsignal(getattr(signal, n)) for n in names if hasattr(signal, n)}
    yield
    for name, handler in saved.items():
        signal.signal(getattr(signal, name), handler)


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.mark.skipif(not hasattr(signal, "SIGHUP"), reason="needs SIGHUP")
def test_sighup_during_publish_only_requests_reload(restore_signals):
    broadcaster = LogBroadcaster()
    stop = threading.Event()
    reload_requested = threading.Event()
    install_signal_handlers(stop, reload_requested)

    # the handler runs on this thread while it holds the fan-out lock
    with broadcaster._lock:
        signal.raise_signal(signal.SIGHUP)

    assert reload_requested.is_set()
    assert not stop.is_set()
    assert broadcaster.history() == []


def test_sigterm_sets_stop(restore_signals):
    stop = threading.Event()
    install_signal_handlers(stop, threading.Event())
    signal.raise_signal(signal.SIGTERM)
    assert stop.is_set()


def test_reload_worker_applies_requested_reload(env, config_file):
    store = ProfileStore(config_file)
    broadcaster = LogBroadcaster()
    stop = threading.Event()
    reload_requested = threading.Event()
    worker = start_reload_worker(store, broadcaster, reload_requested, stop, interval=0.01)

    config_file.write_text(json.dumps(env.config({"CARD1": ["DCIM"]})))
    reload_requested.set()

    assert wait_for(lambda: store.labels() == {"CARD1"})
    assert wait_for(lambda: any("Configuration reloaded from" in l for l in broadcaster.history()))
    stop.set()
    worker.join(5)
    assert not worker.is_alive()


def test_failed_reload_keeps_previous_profiles(config_file):
    store = ProfileStore(config_file)
    broadcaster = LogBroadcaster()
    config_file.write_text("{not json")

    assert not reload_config(store, broadcaster)
    assert store.labels() == {"CARD1", "CARD2"}
    assert "keeping previous profiles" in broadcaster.history()[-1]
