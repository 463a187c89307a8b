import logging
import threading
import time
from collections import deque
from typing import Dict, Iterable, List, Optional, Set

from ingest_errors import RuntimeFault
from ingest_pipeline import LifecycleState, TaskResult

logger = logging.getLogger(__name__)

RESULT_HISTORY = 50


class DedupLedger:
    """
    Labels that have had a lifecycle task dispatched since they were last
    seen detached. Membership is the only gate for dispatch.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._labels: Set[str] = set()

    def mark_processing(self, label: str) -> bool:
        """Add `label`; returns False if it was already present."""
        with self._lock:
            if label in self._labels:
                return False
            self._labels.add(label)
            return True

    def clear_processed(self, label: str) -> bool:
        with self._lock:
            if label not in self._labels:
                return False
            self._labels.discard(label)
            return True

    def is_processing(self, label: str) -> bool:
        with self._lock:
            return label in self._labels

    def labels(self) -> Set[str]:
        with self._lock:
            return set(self._labels)


class IngestEngine:
    """
    Discovery loop plus supervision of one thread per device lifecycle.

    poll_once() reconciles the ledger with the connected devices: detached
    labels are released, newly seen labels get exactly one task. A task that
    raises unexpectedly is converted into a FAILED result here, so neither the
    loop nor other devices are affected.
    """

    def __init__(self, store, scanner, pipeline, broadcaster, poll_interval: Optional[float] = None):
        self.store = store
        self.scanner = scanner
        self.pipeline = pipeline
        self.broadcaster = broadcaster
        self.poll_interval = poll_interval if poll_interval is not None else store.current().poll_interval
        self.ledger = DedupLedger()
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._tasks: Dict[str, threading.Thread] = {}
        self._states: Dict[str, LifecycleState] = {}
        self._results = deque(maxlen=RESULT_HISTORY)
        self._accepting = True
        pipeline.state_listener = self._on_state

    def _on_state(self, label: str, state: LifecycleState):
        with self._lock:
            if label in self._tasks:
                self._states[label] = state

    def current_devices(self) -> Optional[Set[str]]:
        connected = self.scanner.connected_labels()
        if connected is None:
            return None
        return connected & self.store.labels()

    def poll_once(self) -> List[str]:
        """Run one discovery tick. Returns the labels dispatched."""
        devices = self.current_devices()
        if devices is None:
            logger.debug("Device enumeration failed; skipping this tick")
            return []

        for label in sorted(self.ledger.labels() - devices):
            if self.ledger.clear_processed(label):
                self.broadcaster.publish("Removed %s from processed devices", label)

        dispatched = []
        for label in sorted(devices):
            if self.ledger.is_processing(label) or self.is_active(label):
                continue
            self.broadcaster.publish("Detected new device: %s", label)
            if self.dispatch(label):
                dispatched.append(label)
        return dispatched

    def dispatch(self, label: str) -> bool:
        if not self.ledger.mark_processing(label):
            return False
        with self._lock:
            # a task from before a detach may still be running for this label
            if not self._accepting or label in self._tasks:
                self.ledger.clear_processed(label)
                return False
            t = threading.Thread(target=self._supervise, args=(label,), name=f"ingest-{label}", daemon=True)
            self._tasks[label] = t
            self._states[label] = LifecycleState.DISCOVERED
        t.start()
        return True

    def _run_task(self, label: str) -> TaskResult:
        snapshot = self.store.current()
        profile = snapshot.profile_for(label)
        if profile is None:
            raise RuntimeFault(f"No configuration found for label: {label}", label=label)
        self.broadcaster.publish("Processing SD card: %s", label)
        return self.pipeline.run(label, profile, snapshot)

    def _supervise(self, label: str):
        try:
            result = self._run_task(label)
        except Exception as e:
            logger.exception("Unexpected error while processing device %s", label)
            fault = e if isinstance(e, RuntimeFault) else RuntimeFault(
                f"Recovered from unexpected error while processing device {label}: {e!r}", label=label
            )
            result = TaskResult(label, LifecycleState.FAILED, error=fault, finished_at=time.time())
            with self._lock:
                result.failed_step = self._states.get(label)
        try:
            self._report(result)
        except Exception:
            logger.exception("Failed to report result for device %s", label)
        finally:
            with self._idle:
                self._tasks.pop(label, None)
                self._states.pop(label, None)
                self._results.append(result)
                self._idle.notify_all()

    def _report(self, result: TaskResult):
        if result.ok:
            self.broadcaster.publish("Finished processing SD card: %s (%d files)", result.label, result.copied)
            return
        step = result.failed_step.value if result.failed_step else "unknown"
        kind = result.error.kind.value if result.error else "unknown"
        self.broadcaster.error(
            "Processing failed for device %s at step %s [%s]: %s", result.label, step, kind, result.error
        )

    def wait_for_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no lifecycle task is outstanding. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while self._tasks:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(remaining)
        return True

    def run_forever(self, stop_event: threading.Event):
        logger.info("Starting device discovery; poll interval %.1fs", self.poll_interval)
        while not stop_event.wait(self.poll_interval):
            try:
                self.poll_once()
            except Exception:
                logger.exception("Discovery tick failed")
        logger.info("Device discovery stopped")

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        """Stop accepting new tasks and wait for the outstanding ones."""
        with self._lock:
            self._accepting = False
        return self.wait_for_idle(timeout)

    def is_active(self, label: str) -> bool:
        with self._lock:
            return label in self._tasks

    def active_labels(self) -> Dict[str, str]:
        with self._lock:
            return {label: state.value for label, state in self._states.items()}

    def recent_results(self) -> List[TaskResult]:
        with self._lock:
            return list(self._results)

    def reprocess(self, profiles: Iterable) -> threading.Thread:
        """Regenerate missing proxies for the given profiles in the background, without copying."""
        profiles = list(profiles)

        def _run():
            for profile in profiles:
                try:
                    created = self.pipeline.create_proxies(profile.destination)
                    self.broadcaster.publish("Reprocessed proxies for %s: %d created", profile.name, created)
                except Exception as e:
                    self.broadcaster.error("Error reprocessing proxies for SD card %s: %s", profile.name, e)

        t = threading.Thread(target=_run, name="reprocess-proxies", daemon=True)
        t.start()
        return t

    def reprocess_all(self) -> threading.Thread:
        return self.reprocess(self.store.current().profiles.values())

    def status(self):
        snapshot = self.store.current()
        return {
            "processed": sorted(self.ledger.labels()),
            "active": self.active_labels(),
            "recent": [r.to_dict() for r in reversed(self.recent_results())],  # newest first
            "profiles": {label: p.to_dict() for label, p in snapshot.profiles.items()},
            "ignored_extensions": list(snapshot.ignored_extensions),
            "timezone": snapshot.timezone_name,
            "destination": {"type": snapshot.destination_type, "path": snapshot.destination_path},
        }
