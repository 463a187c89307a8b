import errno
import os

import pytest

import media_files
from media_files import (
    MediaFileError,
    create_destination,
    delete_with_proxy,
    list_destinations,
    list_media,
    move_with_proxy,
)
from profile_store import parse_config


@pytest.fixture
def clip(tmp_path):
    original = tmp_path / "a.mp4"
    proxy_dir = tmp_path / "Proxy"
    proxy_dir.mkdir()
    proxy = proxy_dir / "a.mp4"
    original.write_bytes(b"original")
    proxy.write_bytes(b"proxy")
    return original, proxy


def test_delete_removes_original_and_proxy(clip):
    original, proxy = clip
    delete_with_proxy(original, proxy)
    assert not original.exists()
    assert not proxy.exists()
    assert list(original.parent.glob(".*.deleting")) == []
    assert list(proxy.parent.glob(".*.deleting")) == []


def test_delete_refuses_when_proxy_is_missing(clip):
    original, proxy = clip
    proxy.unlink()
    with pytest.raises(FileNotFoundError):
        delete_with_proxy(original, proxy)
    assert original.exists()


def test_delete_rolls_back_when_proxy_cannot_be_staged(clip, monkeypatch):
    original, proxy = clip
    real_replace = os.replace

    def flaky_replace(src, dst):
        if str(src) == str(proxy):
            raise PermissionError("read-only")
        return real_replace(src, dst)

    monkeypatch.setattr(media_files.os, "replace", flaky_replace)

    with pytest.raises(PermissionError):
        delete_with_proxy(original, proxy)
    assert original.read_bytes() == b"original"
    assert proxy.read_bytes() == b"proxy"
    assert list(original.parent.glob(".*.deleting")) == []


def test_list_media_pairs_originals_with_proxies(env):
    snapshot = parse_config(env.config({"CARD1": ["DCIM"]}))
    dest = env.archive / "CARD1"
    (dest / "Proxy").mkdir(parents=True)
    (dest / "a.mp4").write_bytes(b"a")
    (dest / "b.mp4").write_bytes(b"b")
    (dest / "c.thm").write_bytes(b"t")
    (dest / "Proxy" / "a.mp4").write_bytes(b"p")

    items = list_media(snapshot)

    assert items == [
        {"profile": "CARD1", "original": str(dest / "a.mp4"), "proxy": str(dest / "Proxy" / "a.mp4")},
        {"profile": "CARD1", "original": str(dest / "b.mp4"), "proxy": ""},
    ]


def test_list_media_skips_unreadable_destinations(env):
    snapshot = parse_config(env.config({"CARD1": ["DCIM"]}))
    assert list_media(snapshot) == []


def test_create_and_list_destinations(tmp_path):
    folder = create_destination(tmp_path, "Trip2024")
    assert folder.is_dir()
    (tmp_path / "notes.txt").write_text("x")
    assert list_destinations(tmp_path) == [str(folder)]


@pytest.mark.parametrize("name", ["", ".", "..", "../escape", "a/b", "a\\b"])
def test_create_destination_rejects_bad_names(tmp_path, name):
    with pytest.raises(MediaFileError):
        create_destination(tmp_path / "base", name)
    assert not (tmp_path / "escape").exists()


@pytest.fixture
def archive(tmp_path):
    base = (tmp_path / "archive").resolve()
    card = base / "CARD1"
    (card / "Proxy").mkdir(parents=True)
    (card / "a.mp4").write_bytes(b"aaaa")
    (card / "Proxy" / "a.mp4").write_bytes(b"p")
    (card / "b.mp4").write_bytes(b"bb")
    return base


def test_move_into_new_folder_takes_proxy_along(archive):
    card = archive / "CARD1"

    moved = move_with_proxy(archive, [str(card / "a.mp4"), str(card / "b.mp4")], new_folder="Trip")

    trip = archive / "Trip"
    assert moved == [str(trip / "a.mp4"), str(trip / "b.mp4")]
    assert (trip / "a.mp4").read_bytes() == b"aaaa"
    assert (trip / "Proxy" / "a.mp4").read_bytes() == b"p"
    assert not (trip / "Proxy" / "b.mp4").exists()
    assert not (card / "a.mp4").exists()
    assert not (card / "Proxy" / "a.mp4").exists()


def test_move_into_existing_folder(archive):
    (archive / "Keep").mkdir()
    move_with_proxy(archive, [str(archive / "CARD1" / "b.mp4")], destination="Keep")
    assert (archive / "Keep" / "b.mp4").exists()


def test_move_requires_existing_destination(archive):
    with pytest.raises(FileNotFoundError):
        move_with_proxy(archive, [str(archive / "CARD1" / "a.mp4")], destination="Nowhere")
    assert (archive / "CARD1" / "a.mp4").exists()


@pytest.mark.parametrize("destination", ["..", "../elsewhere", ""])
def test_move_keeps_target_inside_archive(archive, destination):
    with pytest.raises(MediaFileError):
        move_with_proxy(archive, [str(archive / "CARD1" / "a.mp4")], destination=destination)


def test_move_refuses_files_outside_archive(archive, tmp_path):
    stray = tmp_path / "stray.mp4"
    stray.write_bytes(b"x")
    (archive / "Keep").mkdir()
    with pytest.raises(MediaFileError):
        move_with_proxy(archive, [str(stray)], destination="Keep")
    assert stray.exists()


def test_move_refuses_to_overwrite(archive):
    keep = archive / "Keep"
    keep.mkdir()
    (keep / "a.mp4").write_bytes(b"other")
    with pytest.raises(MediaFileError):
        move_with_proxy(archive, [str(archive / "CARD1" / "b.mp4"), str(archive / "CARD1" / "a.mp4")],
                        destination="Keep")
    assert (keep / "a.mp4").read_bytes() == b"other"
    assert (archive / "CARD1" / "b.mp4").exists()


def test_move_across_devices_copies_then_removes_source(archive, monkeypatch):
    real_replace = os.replace
    card = archive / "CARD1"

    def cross_device(src, dst):
        if not str(src).endswith(".part"):
            raise OSError(errno.EXDEV, "Invalid cross-device link")
        return real_replace(src, dst)

    monkeypatch.setattr(media_files.os, "replace", cross_device)
    move_with_proxy(archive, [str(card / "a.mp4")], new_folder="Trip")

    assert (archive / "Trip" / "a.mp4").read_bytes() == b"aaaa"
    assert (archive / "Trip" / "Proxy" / "a.mp4").read_bytes() == b"p"
    assert not (card / "a.mp4").exists()
    assert list((archive / "Trip").glob(".*.part")) == []
