"""
ingest_pipeline.py

Per-device lifecycle: mount check -> mount -> copy -> transcode proxies ->
verify -> clear the card -> eject. Every step reports to the log broadcaster;
any step error other than a proxy failure ends the run for that device with
a FAILED result, before anything destructive happens.
"""
import logging
import os
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ingest_errors import ClearError, CopyError, IngestError, MountError, TranscodeError, VerificationError
from proc_runner import DEFAULT_TIMEOUTS, CommandRunner

logger = logging.getLogger(__name__)

PROXY_DIR_NAME = "Proxy"
PROXY_EXTENSIONS = (".mp4",)
# camera-native clip extensions stored under a standard container extension
RENAMED_EXTENSIONS = {".insv": ".mp4"}
PROXY_HEIGHT = 720


class LifecycleState(str, Enum):
    DISCOVERED = "discovered"
    MOUNT_CHECK = "mount_check"
    MOUNT = "mount"
    COPY = "copy"
    TRANSCODE = "transcode"
    VERIFY = "verify"
    CLEAR = "clear"
    EJECT = "eject"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class CopiedFile:
    source: Path
    destination: Path


@dataclass
class TaskResult:
    label: str
    state: LifecycleState
    copied: int = 0
    error: Optional[IngestError] = None
    failed_step: Optional[LifecycleState] = None
    finished_at: float = 0.0

    @property
    def ok(self) -> bool:
        return self.state == LifecycleState.DONE

    def to_dict(self):
        return {
            "label": self.label,
            "state": self.state.value,
            "copied": self.copied,
            "failed_step": self.failed_step.value if self.failed_step else None,
            "error_kind": self.error.kind.value if self.error else None,
            "error": str(self.error) if self.error else None,
            "finished_at": self.finished_at,
        }


def destination_name(file_name: str) -> str:
    stem, ext = os.path.splitext(file_name)
    renamed = RENAMED_EXTENSIONS.get(ext.lower())
    return stem + renamed if renamed else file_name


def proxy_command(source: Path, output: Path) -> List[str]:
    return [
        "ffmpeg", "-nostdin", "-y",
        "-i", str(source),
        "-vf", f"scale=-2:'min({PROXY_HEIGHT},ih)'",  # cap height, keep aspect ratio
        "-c:v", "libx264", "-preset", "fast", "-crf", "23",
        "-c:a", "aac", "-b:a", "128k",
        "-f", "mp4",
        str(output),
    ]


class IngestPipeline:
    def __init__(
        self,
        scanner,
        broadcaster,
        runner: Optional[CommandRunner] = None,
        settle_delay: float = 2.0,
        timeouts: Optional[Dict[str, float]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.scanner = scanner
        self.broadcaster = broadcaster
        self.runner = runner or scanner.runner
        self.settle_delay = settle_delay
        self.timeouts = dict(DEFAULT_TIMEOUTS)
        if timeouts:
            self.timeouts.update(timeouts)
        self._sleep = sleep
        self.state_listener: Optional[Callable[[str, LifecycleState], None]] = None
        self._proxy_locks: Dict[str, threading.Lock] = {}
        self._proxy_locks_guard = threading.Lock()

    def _proxy_lock(self, directory: Path) -> threading.Lock:
        key = os.path.realpath(directory)
        with self._proxy_locks_guard:
            return self._proxy_locks.setdefault(key, threading.Lock())

    def _enter(self, label: str, state: LifecycleState) -> LifecycleState:
        logger.debug("Device %s -> %s", label, state.value)
        if self.state_listener is not None:
            self.state_listener(label, state)
        return state

    def source_path(self, label: str, source_dir: str) -> Path:
        return self.scanner.mount_point(label) / source_dir

    def check_mounted(self, label: str) -> bool:
        mp = self.scanner.mount_point(label)
        if self.scanner.is_mounted(label):
            self.broadcaster.publish("Device %s is mounted at %s", label, mp)
            return True
        self.broadcaster.publish("Device %s is not mounted at %s", label, mp)
        return False

    def mount(self, label: str):
        mp = self.scanner.mount_point(label)
        self.scanner.mount(label)
        if not self.scanner.is_mounted(label):
            raise MountError(
                f"Failed to verify mount status for device {label} after mounting attempt",
                label=label,
                step="mount",
            )
        self.broadcaster.publish("Successfully mounted device %s to %s", self.scanner.device_path(label), mp)

    def copy_files(self, label: str, profile, snapshot) -> List[CopiedFile]:
        """
        Copy every non-ignored regular file from the profile's source dirs.
        Missing source dirs are skipped; any copy failure aborts the run.
        """
        destination = Path(profile.destination)
        copied: List[CopiedFile] = []
        for source_dir in profile.source_dirs:
            src_dir = self.source_path(label, source_dir)
            if not src_dir.is_dir():
                self.broadcaster.publish("Source directory does not exist: %s", src_dir)
                continue
            try:
                entries = sorted(os.scandir(src_dir), key=lambda e: e.name)
            except OSError as e:
                raise CopyError(f"failed to read directory {src_dir}: {e}", label=label, step="copy") from e
            self.broadcaster.publish("Files found in %s: %s", src_dir, [e.name for e in entries])
            try:
                destination.mkdir(mode=0o777, parents=True, exist_ok=True)
            except OSError as e:
                raise CopyError(
                    f"failed to create destination directory {destination}: {e}", label=label, step="copy"
                ) from e

            for entry in entries:
                if entry.is_dir():
                    continue
                if snapshot.is_ignored(entry.name):
                    self.broadcaster.publish("Ignoring file: %s", entry.name)
                    continue
                src = Path(entry.path)
                dst = destination / destination_name(entry.name)
                self.runner.run(
                    ["cp", str(src), str(dst)],
                    step="copy",
                    label=label,
                    timeout=self.timeouts.get("copy"),
                    error_cls=CopyError,
                )
                self.broadcaster.publish("Copied file: %s to %s", src, dst)
                copied.append(CopiedFile(src, dst))
        return copied

    def create_proxies(self, directory, label: Optional[str] = None) -> int:
        """
        Transcode a proxy into <directory>/Proxy for each top-level .mp4 that
        has none yet. Per-file failures are logged and skipped. Returns the
        number of proxies created. Runs for the same directory are serialized.
        """
        directory = Path(directory)
        if not directory.is_dir():
            return 0
        with self._proxy_lock(directory):
            return self._create_proxies(directory, label)

    def _create_proxies(self, directory: Path, label: Optional[str]) -> int:
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError as e:
            raise TranscodeError(f"failed to read directory {directory}: {e}", label=label, step="transcode") from e
        proxy_dir = directory / PROXY_DIR_NAME
        try:
            proxy_dir.mkdir(mode=0o777, parents=True, exist_ok=True)
        except OSError as e:
            raise TranscodeError(f"failed to create Proxy folder: {e}", label=label, step="transcode") from e

        created = 0
        for entry in entries:
            if entry.is_dir():
                continue
            original = Path(entry.path)
            proxy = proxy_dir / entry.name
            if proxy.exists():
                continue
            if original.suffix.lower() not in PROXY_EXTENSIONS:
                self.broadcaster.publish("Skipping proxy creation for unsupported file: %s", original)
                continue
            partial = proxy_dir / f".{entry.name}.part"
            try:
                self.runner.run(
                    proxy_command(original, partial),
                    step="transcode",
                    label=label,
                    timeout=self.timeouts.get("transcode"),
                    error_cls=TranscodeError,
                )
                os.replace(partial, proxy)
            except (IngestError, OSError) as e:
                self.broadcaster.error("Failed to create proxy for %s: %s", original, e)
                try:
                    partial.unlink()
                except FileNotFoundError:
                    pass
                except OSError:
                    logger.debug("Could not remove partial proxy %s", partial, exc_info=True)
                continue
            created += 1
            self.broadcaster.publish("Created proxy for %s", original)
        return created

    def verify(self, label: str, copied: List[CopiedFile]):
        for item in copied:
            dst = item.destination
            if not dst.is_file():
                raise VerificationError(
                    f"File {item.source.name} not found at destination {dst}", label=label, step="verify"
                )
            try:
                src_size = item.source.stat().st_size
                dst_size = dst.stat().st_size
            except OSError as e:
                raise VerificationError(f"Could not stat {item.source} or {dst}: {e}", label=label, step="verify") from e
            if src_size != dst_size:
                raise VerificationError(
                    f"File {dst} is {dst_size} bytes, expected {src_size}", label=label, step="verify"
                )
        self.broadcaster.publish("Verified %d files at destination for %s", len(copied), label)

    def clear(self, label: str, profile):
        for source_dir in profile.source_dirs:
            path = self.source_path(label, source_dir)
            if not path.is_dir():
                continue
            self.runner.run(
                ["find", str(path), "-mindepth", "1", "-delete"],
                step="clear",
                label=label,
                timeout=self.timeouts.get("clear"),
                error_cls=ClearError,
            )
            self.broadcaster.publish("Cleared directory %s on SD card: %s", source_dir, label)
        if self.settle_delay:
            self._sleep(self.settle_delay)

    def eject(self, label: str):
        if not self.scanner.unmount(label):
            self.broadcaster.publish("Device %s is not mounted. Skipping unmount.", label)
            return
        self.broadcaster.publish("Successfully unmounted device %s", self.scanner.mount_point(label))

    def run(self, label: str, profile, snapshot) -> TaskResult:
        state = self._enter(label, LifecycleState.DISCOVERED)
        copied: List[CopiedFile] = []
        try:
            state = self._enter(label, LifecycleState.MOUNT_CHECK)
            if not self.check_mounted(label):
                state = self._enter(label, LifecycleState.MOUNT)
                self.mount(label)

            state = self._enter(label, LifecycleState.COPY)
            copied = self.copy_files(label, profile, snapshot)

            if copied:
                self.broadcaster.publish("Files were copied from %s, creating proxies...", label)
                state = self._enter(label, LifecycleState.TRANSCODE)
                try:
                    self.create_proxies(profile.destination, label)
                except IngestError as e:
                    self.broadcaster.error("Proxy creation for %s skipped: %s", label, e)

                state = self._enter(label, LifecycleState.VERIFY)
                self.verify(label, copied)

                state = self._enter(label, LifecycleState.CLEAR)
                self.clear(label, profile)
            else:
                self.broadcaster.publish("No files copied from %s. Skipping proxy creation and clearing.", label)

            state = self._enter(label, LifecycleState.EJECT)
            self.eject(label)
        except IngestError as e:
            e.label = e.label or label
            self._enter(label, LifecycleState.FAILED)
            return TaskResult(label, LifecycleState.FAILED, copied=len(copied), error=e, failed_step=state,
                              finished_at=time.time())
        self._enter(label, LifecycleState.DONE)
        return TaskResult(label, LifecycleState.DONE, copied=len(copied), finished_at=time.time())
