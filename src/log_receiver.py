import logging
import queue
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Iterator, List, Optional

logger = logging.getLogger(__name__)

HISTORY_SIZE = 20
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class ObserverClosed(Exception):
    """Raised by an observer that can no longer accept lines."""


class QueueObserver:
    """
    Observer backed by a bounded queue, drained by a streaming HTTP response.

    send() never blocks: a consumer that falls too far behind raises
    ObserverClosed and gets dropped by the broadcaster.
    """

    def __init__(self, maxsize: int = 500):
        self._queue = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()

    def send(self, line: str):
        if self._closed.is_set():
            raise ObserverClosed("observer closed")
        try:
            self._queue.put_nowait(line)
        except queue.Full as e:
            self._closed.set()
            raise ObserverClosed("observer queue full") from e

    def close(self):
        self._closed.set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def lines(self, keepalive: float = 15.0) -> Iterator[Optional[str]]:
        """Yield queued lines; yields None every `keepalive` seconds of silence."""
        while not self._closed.is_set():
            try:
                yield self._queue.get(timeout=keepalive)
            except queue.Empty:
                yield None
        # drain whatever was delivered before close
        while True:
            try:
                yield self._queue.get_nowait()
            except queue.Empty:
                return


class LogBroadcaster:
    """
    Thread-safe fan-out of timestamped status lines with a bounded replay history.

    Every line is stamped in the configured time zone, kept in a ring of the
    last HISTORY_SIZE entries and delivered to all attached observers while the
    lock is held, so each observer sees lines in the global publish order.
    """

    def __init__(self, tz_provider: Optional[Callable[[], object]] = None, history_size: int = HISTORY_SIZE,
                 clock: Callable[[], datetime] = None):
        self._lock = threading.Lock()
        self._history = deque(maxlen=history_size)
        self._observers = set()
        self._tz_provider = tz_provider
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _timestamp(self) -> str:
        now = self._clock()
        tz = None
        if self._tz_provider is not None:
            try:
                tz = self._tz_provider()
            except Exception:
                logger.debug("Time zone lookup failed; using UTC", exc_info=True)
        if tz is not None:
            now = now.astimezone(tz)
        return now.strftime(TIMESTAMP_FORMAT)

    def publish(self, message: str, *args, level: int = logging.INFO) -> str:
        if args:
            message = message % args
        logger.log(level, "%s", message)
        with self._lock:
            line = f"[{self._timestamp()}] {message}"
            self._history.append(line)
            dead = []
            for observer in self._observers:
                try:
                    observer.send(line)
                except Exception as e:
                    logger.warning("Dropping log observer after write failure: %s", e)
                    dead.append(observer)
            for observer in dead:
                self._observers.discard(observer)
                _close_quietly(observer)
        return line

    def error(self, message: str, *args) -> str:
        return self.publish(message, *args, level=logging.ERROR)

    def attach(self, observer) -> bool:
        """
        Replay the current history to `observer`, then subscribe it.
        Returns False (and does not subscribe) if the replay write fails.
        """
        with self._lock:
            for line in self._history:
                try:
                    observer.send(line)
                except Exception as e:
                    logger.warning("Error sending log history to observer: %s", e)
                    _close_quietly(observer)
                    return False
            self._observers.add(observer)
        logger.info("Log observer connected")
        return True

    def detach(self, observer):
        with self._lock:
            present = observer in self._observers
            self._observers.discard(observer)
        if present:
            logger.info("Log observer disconnected")

    def history(self) -> List[str]:
        with self._lock:
            return list(self._history)

    def observer_count(self) -> int:
        with self._lock:
            return len(self._observers)


def _close_quietly(observer):
    close = getattr(observer, "close", None)
    if close is None:
        return
    try:
        close()
    except Exception:
        logger.debug("Observer close failed", exc_info=True)
