import os

import pytest

from errors import ValidationError
from storage import FileStorage, IncomingFile


@pytest.fixture()
def storage(tmp_path):
    return FileStorage(root=str(tmp_path), max_bytes=1024)


@pytest.mark.parametrize("incoming", [
    IncomingFile("", "application/pdf", b"data"),
    IncomingFile("script.sh", "text/x-shellscript", b"#!/bin/sh"),
    IncomingFile("report.pdf", "image/png", b"%PDF"),
    IncomingFile("empty.pdf", "application/pdf", b""),
    IncomingFile("huge.pdf", "application/pdf", b"x" * 1025),
])
def test_rejected_files(storage, incoming):
    with pytest.raises(ValidationError):
        storage.validate(incoming)


def test_octet_stream_falls_back_to_extension(storage):
    saved = storage.save(IncomingFile("Scan.JPG", "application/octet-stream", b"\xff\xd8\xff"), folder="bookings/7")

    assert saved.mime_type == "image/jpeg"
    assert saved.original_name == "Scan.JPG"
    assert saved.filename.endswith(".jpg")
    assert os.path.exists(saved.path)
    with open(saved.path, "rb") as fh:
        assert fh.read() == b"\xff\xd8\xff"


def test_client_path_is_not_trusted(storage, tmp_path):
    saved = storage.save(IncomingFile("../../etc/invoice.pdf", "application/pdf", b"%PDF-1.4"))

    assert saved.original_name == "invoice.pdf"
    assert os.path.dirname(saved.path) == os.path.join(str(tmp_path), "documents").replace("\\", "/")


def test_save_all_writes_nothing_when_one_file_is_bad(storage, tmp_path):
    files = [
        IncomingFile("ok.pdf", "application/pdf", b"%PDF"),
        IncomingFile("bad.exe", "application/octet-stream", b"MZ"),
    ]

    with pytest.raises(ValidationError):
        storage.save_all(files, folder="bookings/1")
    assert not (tmp_path / "bookings").exists()


def test_save_all_limits_file_count(storage):
    files = [IncomingFile(f"f{i}.png", "image/png", b"\x89PNG") for i in range(6)]

    with pytest.raises(ValidationError):
        storage.save_all(files)


def test_discard_removes_file(storage):
    saved = storage.save(IncomingFile("notes.xlsx", None, b"PK"))

    storage.discard(saved)
    storage.discard(saved)

    assert not os.path.exists(saved.path)
