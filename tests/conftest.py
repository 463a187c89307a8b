import shutil
import subprocess
import threading
from pathlib import Path

import pytest

from device_scanner import DeviceScanner
from ingest_pipeline import IngestPipeline
from log_receiver import LogBroadcaster
from proc_runner import CommandRunner
from profile_store import ProfileStore, parse_config


class FakeRunner(CommandRunner):
    """Emulates mountpoint/mount/umount/cp/find/ffmpeg against a temp tree."""

    def __init__(self):
        self.calls = []
        self.mounted = set()
        self.failures = {}
        self.hang = set()
        self.dropped_copies = set()
        self._lock = threading.Lock()

    def tool_calls(self, tool):
        return [c for c in self.calls if c[0] == tool]

    def tools(self):
        return [c[0] for c in self.calls]

    def _execute(self, cmd, timeout):
        tool = cmd[0]
        with self._lock:
            self.calls.append(list(cmd))
        if tool in self.hang:
            raise subprocess.TimeoutExpired(cmd, timeout, output="still running")
        fail = self.failures.get(tool)
        if fail is True or (callable(fail) and fail(cmd)):
            return subprocess.CompletedProcess(cmd, 1, stdout=f"{tool}: simulated failure\n")
        getattr(self, "_" + tool)(cmd)
        rc = 0
        if tool == "mountpoint":
            rc = 0 if cmd[-1] in self.mounted else 1
        return subprocess.CompletedProcess(cmd, rc, stdout="")

    def _mountpoint(self, cmd):
        pass

    def _mount(self, cmd):
        self.mounted.add(cmd[-1])

    def _umount(self, cmd):
        self.mounted.discard(cmd[-1])

    def _cp(self, cmd):
        if Path(cmd[1]).name in self.dropped_copies:
            return
        shutil.copyfile(cmd[1], cmd[2])

    def _find(self, cmd):
        for child in Path(cmd[1]).iterdir():
            if child.is_dir():
                shutil.rmtree(child)
            else:
                child.unlink()

    def _ffmpeg(self, cmd):
        Path(cmd[-1]).write_bytes(b"proxy")


class ListObserver:
    def __init__(self, fail=False):
        self.lines = []
        self.fail = fail
        self.closed = False

    def send(self, line):
        if self.fail:
            raise ConnectionResetError("observer went away")
        self.lines.append(line)

    def close(self):
        self.closed = True


class CardEnv:
    def __init__(self, root: Path):
        self.root = root
        self.label_dir = root / "by-label"
        self.mount_root = root / "media"
        self.archive = root / "archive"
        self.label_dir.mkdir()
        self.mount_root.mkdir()
        self.archive.mkdir()

    def insert(self, label, files=None):
        (self.label_dir / label).write_text("")
        card = self.mount_root / label
        card.mkdir(exist_ok=True)
        for rel, data in (files or {}).items():
            path = card / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            if data is None:
                path.mkdir(exist_ok=True)
            else:
                path.write_bytes(data)
        return card

    def remove(self, label):
        (self.label_dir / label).unlink()

    def config(self, profiles, ignored=(".thm",), **extra):
        data = {
            "sdCardMappings": {
                label: {
                    "name": label,
                    "sourceDirs": list(dirs),
                    "destination": str(self.archive / label),
                }
                for label, dirs in profiles.items()
            },
            "ignoredExtensions": list(ignored),
            "timezone": "UTC",
            "destinationConfig": {"type": "local", "path": str(self.archive)},
            "labelDir": str(self.label_dir),
            "mountRoot": str(self.mount_root),
            "settleDelay": 0,
        }
        data.update(extra)
        return data

    def store(self, profiles, **kw):
        data = self.config(profiles, **kw)
        return ProfileStore(self.root / "config.json", snapshot=parse_config(data))


@pytest.fixture
def env(tmp_path):
    return CardEnv(tmp_path)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def broadcaster():
    return LogBroadcaster()


@pytest.fixture
def make_pipeline(env, runner, broadcaster):
    def _make(**kw):
        scanner = DeviceScanner(label_dir=env.label_dir, mount_root=env.mount_root, runner=runner)
        return IngestPipeline(scanner, broadcaster, runner=runner, settle_delay=kw.pop("settle_delay", 0), **kw)
    return _make
