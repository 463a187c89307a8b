import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ingest_errors import ConfigurationError
from proc_runner import DEFAULT_TIMEOUTS

logger = logging.getLogger(__name__)

DESTINATION_TYPES = ("local", "nfs")

# optional tunables; sdCardMappings and timezone are required
DEFAULT_CONFIG = {
    "ignoredExtensions": [],
    "destinationConfig": {"type": "local", "path": ""},
    "pollInterval": 5,
    "settleDelay": 2,
    "mountRoot": "/media/videoserver",
    "labelDir": "/dev/disk/by-label",
    "timeouts": dict(DEFAULT_TIMEOUTS),
}


@dataclass(frozen=True)
class IngestionProfile:
    name: str
    source_dirs: Tuple[str, ...]
    destination: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "sourceDirs": list(self.source_dirs), "destination": self.destination}


@dataclass(frozen=True)
class ProfileSnapshot:
    """One immutable view of the configuration; replaced wholesale on reload."""

    profiles: Dict[str, IngestionProfile]
    ignored_extensions: Tuple[str, ...]
    timezone_name: str
    timezone: Any
    destination_type: str = "local"
    destination_path: str = ""
    poll_interval: float = 5.0
    settle_delay: float = 2.0
    mount_root: str = "/media/videoserver"
    label_dir: str = "/dev/disk/by-label"
    timeouts: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_TIMEOUTS))

    def labels(self):
        return set(self.profiles)

    def profile_for(self, label: str) -> Optional[IngestionProfile]:
        return self.profiles.get(label)

    def is_ignored(self, file_name: str) -> bool:
        lower = file_name.lower()
        return any(ext and lower.endswith(ext.lower()) for ext in self.ignored_extensions)


def _parse_profile(label: str, raw: Any) -> IngestionProfile:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"profile for label {label!r} must be an object")
    name = raw.get("name")
    source_dirs = raw.get("sourceDirs")
    destination = raw.get("destination")
    if not isinstance(name, str) or not name.strip():
        raise ConfigurationError(f"profile for label {label!r} is missing a name")
    if not isinstance(source_dirs, list) or not all(isinstance(d, str) for d in source_dirs):
        raise ConfigurationError(f"profile for label {label!r} needs a sourceDirs list")
    if not isinstance(destination, str) or not destination.strip():
        raise ConfigurationError(f"profile for label {label!r} is missing a destination")
    return IngestionProfile(name=name, source_dirs=tuple(source_dirs), destination=destination)


def _parse_number(data: Dict[str, Any], key: str, positive: bool = False) -> float:
    value = data.get(key, DEFAULT_CONFIG[key])
    try:
        value = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{key} must be a number") from e
    if positive and value <= 0:
        raise ConfigurationError(f"{key} must be greater than zero")
    if value < 0:
        raise ConfigurationError(f"{key} must not be negative")
    return value


def validate_destination_and_timezone(data: Dict[str, Any]):
    dest_cfg = data.get("destinationConfig") or {}
    if not isinstance(dest_cfg, dict) or dest_cfg.get("type", "local") not in DESTINATION_TYPES:
        raise ConfigurationError("Invalid destination type")
    tz_name = data.get("timezone")
    if not isinstance(tz_name, str) or not tz_name.strip():
        raise ConfigurationError("Timezone cannot be empty")
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"failed to load timezone {tz_name!r}: {e}") from e


def parse_config(data: Any) -> ProfileSnapshot:
    if not isinstance(data, dict):
        raise ConfigurationError("configuration must be a JSON object")
    tz = validate_destination_and_timezone(data)
    mappings = data.get("sdCardMappings")
    if not isinstance(mappings, dict):
        raise ConfigurationError("sdCardMappings must be an object of label -> profile")
    profiles = {label: _parse_profile(label, raw) for label, raw in mappings.items()}

    ignored = data.get("ignoredExtensions") or []
    if isinstance(ignored, str):
        ignored = [v.strip() for v in ignored.split(",") if v.strip()]
    if not isinstance(ignored, list) or not all(isinstance(v, str) for v in ignored):
        raise ConfigurationError("ignoredExtensions must be a list of strings")

    timeouts = dict(DEFAULT_TIMEOUTS)
    raw_timeouts = data.get("timeouts") or {}
    if not isinstance(raw_timeouts, dict):
        raise ConfigurationError("timeouts must be an object")
    for step, value in raw_timeouts.items():
        try:
            timeouts[step] = float(value) if value is not None else None
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"timeout for {step!r} must be a number") from e

    dest_cfg = data.get("destinationConfig") or {}
    return ProfileSnapshot(
        profiles=profiles,
        ignored_extensions=tuple(ignored),
        timezone_name=data["timezone"],
        timezone=tz,
        destination_type=dest_cfg.get("type", "local"),
        destination_path=dest_cfg.get("path", "") or "",
        poll_interval=_parse_number(data, "pollInterval", positive=True),
        settle_delay=_parse_number(data, "settleDelay"),
        mount_root=str(data.get("mountRoot") or DEFAULT_CONFIG["mountRoot"]),
        label_dir=str(data.get("labelDir") or DEFAULT_CONFIG["labelDir"]),
        timeouts=timeouts,
    )


def load_config(path: Path) -> ProfileSnapshot:
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"failed to open config file {path}: {e}") from e
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"failed to decode config file {path}: {e}") from e
    return parse_config(data)


class ProfileStore:
    """
    Holds the current ProfileSnapshot and swaps it atomically on reload.

    Readers call current() once and keep using that snapshot, so a lifecycle
    task never sees a half-updated profile.
    """

    def __init__(self, path: Path, snapshot: Optional[ProfileSnapshot] = None):
        self.path = Path(path)
        self.lock = threading.Lock()
        self._snapshot = snapshot if snapshot is not None else load_config(self.path)

    def current(self) -> ProfileSnapshot:
        return self._snapshot

    def labels(self):
        return self._snapshot.labels()

    def profile_for(self, label: str) -> Optional[IngestionProfile]:
        return self._snapshot.profile_for(label)

    def timezone(self):
        return self._snapshot.timezone

    def reload(self) -> ProfileSnapshot:
        with self.lock:
            snapshot = load_config(self.path)
            self._snapshot = snapshot
        logger.info("Loaded %d device profiles from %s", len(snapshot.profiles), self.path)
        return snapshot

    def read_raw(self) -> Dict[str, Any]:
        with self.lock:
            with self.path.open("r", encoding="utf-8") as f:
                return json.load(f)

    def update(self, data: Dict[str, Any]) -> ProfileSnapshot:
        """Validate a full config document, persist it and make it current."""
        snapshot = parse_config(data)
        with self.lock:
            tmp = self.path.with_suffix(self.path.suffix + ".part")
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            tmp.replace(self.path)
            self._snapshot = snapshot
        logger.info("Configuration updated; %d device profiles", len(snapshot.profiles))
        return snapshot
