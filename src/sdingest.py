# sdingest.py
"""
sdingest.py

Entry point for the SD card ingest daemon. Loads the device profiles, starts
the web server (log stream, status, reprocess) and runs the discovery loop
that mounts, copies, proxies, verifies, clears and ejects recognised cards.

Required Python version: >=3.9
Dependencies:
- mount, umount, mountpoint, cp, find (util-linux / coreutils / findutils)
- ffmpeg (installed on the system and available on PATH)
"""
import argparse
import logging
import logging.handlers
import os
import signal
import sys
import threading
from pathlib import Path

from device_scanner import DeviceScanner
from ingest_engine import IngestEngine
from ingest_errors import ConfigurationError
from ingest_pipeline import IngestPipeline
from log_receiver import LogBroadcaster
from profile_store import ProfileStore
from proc_runner import CommandRunner
from web_server import start_web_server

CONFIG_PATH = Path(os.environ.get("SD_INGEST_CONFIG", "config.json"))
LOG_DIR = Path(os.environ.get("SD_INGEST_LOG_DIR", "logs"))
LOG_FILE = LOG_DIR / "sd-ingest.log"
WEB_PORT = 8080
SHUTDOWN_TIMEOUT = 30.0


def setup_logging(level: str = "INFO"):
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    handlers = [
        logging.StreamHandler(),
        logging.handlers.RotatingFileHandler(
            LOG_FILE, maxBytes=5 * 1024 * 1024, backupCount=2, encoding="utf-8"
        ),
    ]
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s: %(message)s",
        handlers=handlers,
    )


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Ingest SD cards: copy, proxy, verify, clear and eject.")
    parser.add_argument("--config", type=Path, default=CONFIG_PATH, help="path to config.json")
    parser.add_argument("--port", type=int, default=WEB_PORT, help="web server port")
    parser.add_argument("--log-level", default=os.environ.get("SD_INGEST_LOG_LEVEL", "INFO"))
    parser.add_argument("--no-web", action="store_true", help="do not start the web server")
    return parser.parse_args(argv)


def build_engine(store: ProfileStore, broadcaster: LogBroadcaster, runner: CommandRunner = None) -> IngestEngine:
    snapshot = store.current()
    runner = runner or CommandRunner()
    scanner = DeviceScanner(
        label_dir=snapshot.label_dir,
        mount_root=snapshot.mount_root,
        runner=runner,
        timeouts=snapshot.timeouts,
    )
    pipeline = IngestPipeline(
        scanner,
        broadcaster,
        runner=runner,
        settle_delay=snapshot.settle_delay,
        timeouts=snapshot.timeouts,
    )
    return IngestEngine(store, scanner, pipeline, broadcaster, poll_interval=snapshot.poll_interval)


def reload_config(store: ProfileStore, broadcaster: LogBroadcaster) -> bool:
    try:
        store.reload()
    except ConfigurationError as e:
        broadcaster.error("Configuration reload failed, keeping previous profiles: %s", e)
        return False
    broadcaster.publish("Configuration reloaded from %s", store.path)
    return True


def install_signal_handlers(stop: threading.Event, reload_requested: threading.Event):
    """
    Handlers only set events: they run on the main thread, which may be
    holding the broadcaster lock when the signal arrives.
    """

    def _stop(signum, _frame):
        stop.set()

    def _reload(_signum, _frame):
        reload_requested.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _reload)


def start_reload_worker(store, broadcaster, reload_requested: threading.Event, stop: threading.Event,
                        interval: float = 1.0) -> threading.Thread:
    def _run():
        while not stop.is_set():
            if reload_requested.wait(interval):
                reload_requested.clear()
                reload_config(store, broadcaster)

    t = threading.Thread(target=_run, name="config-reload", daemon=True)
    t.start()
    return t


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        store = ProfileStore(args.config)
    except ConfigurationError as e:
        logging.error("Error loading configuration: %s", e)
        return 2

    broadcaster = LogBroadcaster(tz_provider=store.timezone)
    engine = build_engine(store, broadcaster)
    if not args.no_web:
        start_web_server(broadcaster, store, engine, port=args.port)

    stop = threading.Event()
    reload_requested = threading.Event()
    install_signal_handlers(stop, reload_requested)
    start_reload_worker(store, broadcaster, reload_requested, stop)

    broadcaster.publish("Watching for %d configured devices", len(store.labels()))
    try:
        engine.run_forever(stop)
    finally:
        logging.info("Stopping discovery; waiting for lifecycle tasks")
        if not engine.shutdown(timeout=SHUTDOWN_TIMEOUT):
            logging.warning("Lifecycle tasks still running after %.0fs; exiting anyway", SHUTDOWN_TIMEOUT)
        logging.info("Exited.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
