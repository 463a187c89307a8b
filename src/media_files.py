import errno
import logging
import os
import shutil
from pathlib import Path
from typing import Dict, List

from ingest_pipeline import PROXY_DIR_NAME

logger = logging.getLogger(__name__)


class MediaFileError(Exception):
    pass


def list_media(snapshot) -> List[Dict[str, str]]:
    """
    List every ingested file in the profile destinations, paired with its
    proxy path (empty when no proxy exists yet).
    """
    items = []
    seen = set()
    for profile in snapshot.profiles.values():
        destination = Path(profile.destination)
        if destination in seen:
            continue
        seen.add(destination)
        try:
            entries = sorted(os.scandir(destination), key=lambda e: e.name)
        except OSError as e:
            logger.error("Error reading destination folder %s: %s", destination, e)
            continue
        for entry in entries:
            if entry.is_dir() or snapshot.is_ignored(entry.name):
                continue
            proxy = destination / PROXY_DIR_NAME / entry.name
            items.append({
                "profile": profile.name,
                "original": entry.path,
                "proxy": str(proxy) if proxy.exists() else "",
            })
    return items


def _staging_path(path: Path) -> Path:
    return path.with_name(f".{path.name}.deleting")


def delete_with_proxy(original, proxy):
    """
    Delete an original and its proxy as one operation.

    Both files are first renamed to hidden staging names; if staging the
    second fails the first is renamed back and the error is raised, leaving
    both files in place. Only once both are staged are they unlinked.
    """
    original = Path(original)
    proxy = Path(proxy)
    for p in (original, proxy):
        if not p.is_file():
            raise FileNotFoundError(f"File does not exist: {p}")

    staged_original = _staging_path(original)
    staged_proxy = _staging_path(proxy)
    os.replace(original, staged_original)
    try:
        os.replace(proxy, staged_proxy)
    except OSError:
        try:
            os.replace(staged_original, original)
        except OSError:
            logger.exception("Failed to restore %s from %s", original, staged_original)
            raise
        raise

    for p in (staged_original, staged_proxy):
        try:
            p.unlink()
        except OSError:
            logger.exception("Failed to remove staged file %s", p)
            raise MediaFileError(f"Failed to remove staged file {p}")
    logger.info("Deleted video %s and proxy %s", original, proxy)


def list_destinations(base) -> List[str]:
    base = Path(base)
    return sorted(str(entry) for entry in base.iterdir() if entry.is_dir())


def _child_dir(base: Path, name: str) -> Path:
    if not name or name in (".", "..") or "/" in name or "\\" in name:
        raise MediaFileError(f"Invalid folder name: {name!r}")
    target = (base / name).resolve()
    if target.parent != base:
        raise MediaFileError(f"Invalid folder name: {name!r}")
    return target


def create_destination(base, name: str) -> Path:
    """Create a folder directly under the archive base."""
    target = _child_dir(Path(base).resolve(), name)
    target.mkdir(mode=0o777, parents=True, exist_ok=True)
    return target


def _move(src: Path, dst: Path):
    try:
        os.replace(src, dst)
        return
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise
    # cross-device: copy beside the target, swap into place, then drop the source
    tmp = dst.with_name(f".{dst.name}.part")
    shutil.copy2(src, tmp)
    os.replace(tmp, dst)
    os.unlink(src)


def _move_checked(src: Path, dst: Path):
    size = src.stat().st_size
    _move(src, dst)
    if not dst.is_file() or dst.stat().st_size != size:
        raise MediaFileError(f"File {src.name} not found at destination after move")


def move_with_proxy(base, files: List[str], destination: str = "", new_folder: str = "") -> List[str]:
    """
    Move originals, and their proxies when present, into a folder directly
    under the archive base. With `new_folder` the folder is created first.
    Stops at the first failure; files moved before it stay moved.
    """
    base = Path(base).resolve()
    if new_folder:
        target = create_destination(base, new_folder)
    else:
        target = _child_dir(base, destination)
        if not target.is_dir():
            raise FileNotFoundError(f"Destination folder does not exist: {target}")

    sources = []
    for f in files:
        src = Path(f).resolve()
        if base not in src.parents:
            raise MediaFileError(f"File is outside the archive: {f}")
        if not src.is_file():
            raise FileNotFoundError(f"File does not exist: {f}")
        if (target / src.name).exists():
            raise MediaFileError(f"File already exists at destination: {target / src.name}")
        sources.append(src)

    moved = []
    for src in sources:
        dst = target / src.name
        _move_checked(src, dst)
        proxy = src.parent / PROXY_DIR_NAME / src.name
        if proxy.is_file():
            proxy_dir = target / PROXY_DIR_NAME
            proxy_dir.mkdir(mode=0o777, exist_ok=True)
            _move_checked(proxy, proxy_dir / src.name)
        logger.info("Moved %s to %s", src, dst)
        moved.append(str(dst))
    return moved
