import os

import pytest

from errors import UpstreamFailure
from media import IncomingFile


def test_store_writes_blob_under_category(media, png):
    stored = media.store(png(), "recipes")
    assert stored.key.startswith("recipes/")
    assert stored.filename.endswith(".png")
    assert stored.url == f"/media/{stored.key}"
    assert os.path.exists(media.resolve("recipes", stored.filename))


def test_filenames_are_unique_and_increasing(media):
    names = [media.generate_filename("image/jpeg") for _ in range(50)]
    stamps = [int(n.split("-")[0]) for n in names]
    assert len(set(names)) == 50
    assert stamps == sorted(stamps)
    assert all(n.endswith(".jpg") for n in names)


def test_delete_accepts_key_url_and_bare_filename(media, png):
    first, second, third = (media.store(png(), "recipes") for _ in range(3))
    assert media.delete(first.key)
    assert media.delete(second.url)
    assert media.delete(third.filename)
    assert not os.listdir(os.path.join(media.root, "recipes"))


def test_delete_missing_blob_is_not_an_error(media):
    assert media.delete("recipes/0-deadbeef.png") is False
    assert media.delete(None) is False


def test_resolve_refuses_traversal(media):
    assert media.resolve("recipes", "../secret.txt") is None
    assert media.resolve("other", "a.png") is None


def test_store_rejects_unknown_category(media, png):
    with pytest.raises(ValueError):
        media.store(png(), "avatars")


def test_write_failure_is_upstream_failure(media, png, monkeypatch):
    def boom(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr("media.tempfile.mkstemp", boom)
    with pytest.raises(UpstreamFailure):
        media.store(IncomingFile("a.png", "image/png", b"123"), "about")
