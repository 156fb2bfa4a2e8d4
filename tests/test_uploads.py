"""Tests for the local attachment store."""

import pytest

from huddle.errors import NotFoundError, ValidationError
from huddle.uploads import LocalBlobStore, clean_filename


@pytest.fixture
def blobs(tmp_path):
    return LocalBlobStore(tmp_path / "uploads", max_bytes=16)


@pytest.mark.parametrize(
    "filename, expected",
    [
        ("notes.txt", "notes.txt"),
        ("../../etc/passwd", "passwd"),
        ("C:\\Users\\me\\my report.pdf", "my_report.pdf"),
        ("...", "upload"),
        ("", "upload"),
    ],
)
def test_clean_filename(filename, expected):
    assert clean_filename(filename) == expected


def test_save_and_resolve(blobs):
    info = blobs.save("Holiday Photo.JPG", b"jpegbytes")

    assert info["name"] == "Holiday_Photo.JPG"
    assert info["type"] == "image/jpeg"
    assert info["size"] == 9
    stored_name = info["url"].rsplit("/", 1)[1]
    assert stored_name.endswith(".jpg")
    assert blobs.path_for(stored_name).read_bytes() == b"jpegbytes"


def test_public_url_prefix(tmp_path):
    blobs = LocalBlobStore(tmp_path, max_bytes=16, public_url="https://cdn.example.com/")
    info = blobs.save("a.txt", b"x")
    assert info["url"].startswith("https://cdn.example.com/uploads/")


def test_explicit_content_type_wins(blobs):
    assert blobs.save("voice.bin", b"x", "audio/webm")["type"] == "audio/webm"


def test_unknown_extension_is_dropped(blobs):
    info = blobs.save("weird.ex+t", b"x")
    assert info["type"] == "application/octet-stream"
    assert "." not in info["url"].rsplit("/", 1)[1]


@pytest.mark.parametrize("content", [b"", b"x" * 17])
def test_rejects_empty_and_oversized(blobs, content):
    with pytest.raises(ValidationError):
        blobs.save("a.txt", content)


@pytest.mark.parametrize("name", ["passwd", "../secret", "0190c1a2-0000-7000-8000-000000000000.txt"])
def test_path_for_unknown(blobs, name):
    with pytest.raises(NotFoundError):
        blobs.path_for(name)
