import logging
import os
from pathlib import Path
from typing import Dict, Optional, Set

from ingest_errors import MountError
from proc_runner import DEFAULT_TIMEOUTS, CommandRunner

logger = logging.getLogger(__name__)

LABEL_DIR = "/dev/disk/by-label"
MOUNT_ROOT = "/media/videoserver"


class DeviceScanner:
    """
    Enumerates labelled block devices and mounts/unmounts them under a
    fixed root keyed by label (<mount_root>/<label>).
    """

    def __init__(self, label_dir=LABEL_DIR, mount_root=MOUNT_ROOT, runner: Optional[CommandRunner] = None,
                 timeouts: Optional[Dict[str, float]] = None):
        self.label_dir = Path(label_dir)
        self.mount_root = Path(mount_root)
        self.runner = runner or CommandRunner()
        self.timeouts = dict(DEFAULT_TIMEOUTS)
        if timeouts:
            self.timeouts.update(timeouts)

    def connected_labels(self) -> Optional[Set[str]]:
        """
        Return the labels currently present in the label namespace.

        A missing label directory means no labelled device is attached. Any
        other read error returns None so the caller can skip the tick instead
        of treating every device as removed.
        """
        try:
            return {entry.name for entry in os.scandir(self.label_dir)}
        except FileNotFoundError:
            return set()
        except OSError as e:
            logger.error("Error reading %s: %s", self.label_dir, e)
            return None

    def device_path(self, label: str) -> Path:
        return self.label_dir / label

    def mount_point(self, label: str) -> Path:
        return self.mount_root / label

    def is_mounted(self, label: str) -> bool:
        mp = self.mount_point(label)
        if not mp.exists():
            logger.debug("Mount point does not exist: %s", mp)
            return False
        mounted = self.runner.succeeds(
            ["mountpoint", "-q", str(mp)],
            step="mount check",
            label=label,
            timeout=self.timeouts.get("check"),
            error_cls=MountError,
        )
        if mounted:
            logger.debug("Device %s is mounted at %s", label, mp)
        else:
            logger.debug("Device %s is not mounted at %s", label, mp)
        return mounted

    def mount(self, label: str) -> Path:
        devpath = self.device_path(label)
        mp = self.mount_point(label)
        if not os.path.lexists(devpath):
            raise MountError(f"device {devpath} not found", label=label, step="mount")
        try:
            mp.mkdir(mode=0o777, parents=True, exist_ok=True)
        except OSError as e:
            raise MountError(f"failed to create mount point {mp}: {e}", label=label, step="mount") from e
        self.runner.run(
            ["mount", str(devpath), str(mp)],
            step="mount",
            label=label,
            timeout=self.timeouts.get("mount"),
            error_cls=MountError,
        )
        logger.info("Mounted %s -> %s", devpath, mp)
        return mp

    def unmount(self, label: str) -> bool:
        """Unmount the label's mount point. Returns False if it was not mounted."""
        if not self.is_mounted(label):
            return False
        mp = self.mount_point(label)
        self.runner.run(
            ["umount", str(mp)],
            step="unmount",
            label=label,
            timeout=self.timeouts.get("unmount"),
            error_cls=MountError,
        )
        logger.info("Unmounted %s", mp)
        return True
