import io
import os
import re
from concurrent.futures import ThreadPoolExecutor

import pytest

from kutta.config import ServerConfig
from kutta.errors import BadRequest, Forbidden, StorageError
from kutta.uploads import (UploadedSet, ingest_form, ingest_raw, iter_chunked,
                           parse_multipart, raw_filename, safe_filename,
                           write_with_collision_rename)

BOUNDARY = "----kuttaBoundary42"
CTYPE = f"multipart/form-data; boundary={BOUNDARY}"


def multipart(*parts):
    """Build a multipart body from ``(name, filename or None, data)`` tuples."""
    out = b""
    for name, filename, data in parts:
        disposition = f'form-data; name="{name}"'
        if filename is not None:
            disposition += f'; filename="{filename}"'
        out += f"--{BOUNDARY}\r\nContent-Disposition: {disposition}\r\n".encode()
        if filename is not None:
            out += b"Content-Type: application/octet-stream\r\n"
        out += b"\r\n" + data + b"\r\n"
    return out + f"--{BOUNDARY}--\r\n".encode()


@pytest.fixture
def config(base_dir):
    return ServerConfig(base_dir=str(base_dir))


@pytest.fixture
def uploads():
    return UploadedSet()


def test_uploaded_set_normalises_paths(base_dir):
    uploads = UploadedSet()
    uploads.add(os.path.join(str(base_dir), "sub", "..", "a.txt"))

    assert str(base_dir / "a.txt") in uploads
    assert len(uploads) == 1

    uploads.discard(str(base_dir / "a.txt"))
    assert str(base_dir / "a.txt") not in uploads
    uploads.discard(str(base_dir / "a.txt"))


def test_uploaded_set_parallel_adds(base_dir):
    uploads = UploadedSet()
    paths = [str(base_dir / f"f{i}.txt") for i in range(400)]

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(uploads.add, paths))
    assert len(uploads) == len(paths)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(uploads.discard, paths[::2]))
    assert len(uploads) == len(paths) // 2
    assert all((p in uploads) == (i % 2 == 1) for i, p in enumerate(paths))


def test_write_new_file(base_dir):
    path = write_with_collision_rename(str(base_dir), "notes.txt", [b"hello ", b"world"])

    assert path == str(base_dir / "notes.txt")
    assert (base_dir / "notes.txt").read_bytes() == b"hello world"


def test_collision_never_overwrites(base_dir):
    (base_dir / "report.pdf").write_bytes(b"original")

    path = write_with_collision_rename(str(base_dir), "report.pdf", [b"uploaded"])

    assert re.fullmatch(r"report_\d+\.pdf", os.path.basename(path))
    assert (base_dir / "report.pdf").read_bytes() == b"original"
    with open(path, "rb") as f:
        assert f.read() == b"uploaded"


def test_collision_on_dotfile_appends_suffix(base_dir):
    (base_dir / ".bashrc").write_bytes(b"original")

    path = write_with_collision_rename(str(base_dir), ".bashrc", [b"uploaded"])

    assert re.fullmatch(r"\.bashrc_\d+", os.path.basename(path))
    assert (base_dir / ".bashrc").read_bytes() == b"original"


def test_failed_write_removes_partial_file(base_dir):
    def chunks():
        yield b"partial"
        raise ConnectionResetError("peer went away")

    with pytest.raises(StorageError):
        write_with_collision_rename(str(base_dir), "broken.bin", chunks())

    assert os.listdir(base_dir) == []


def test_unwritable_directory(base_dir):
    with pytest.raises(StorageError):
        write_with_collision_rename(str(base_dir / "missing"), "x.txt", [b"x"])


@pytest.mark.parametrize("raw,expected", [
    ("report.pdf", "report.pdf"),
    ("C:\\Users\\bob\\report.pdf", "report.pdf"),
    ("../../etc/passwd", "passwd"),
    ("..", ""),
    ("a\x00b.txt", ""),
    ("", ""),
    (None, ""),
])
def test_safe_filename(raw, expected):
    assert safe_filename(raw) == expected


def test_parse_multipart_fields():
    body = multipart(("text", None, b"hi there"), ("file", "a.bin", b"\x00\x01\r\n\x02"))

    fields = parse_multipart(body, CTYPE)

    assert fields["text"][0].filename is None
    assert fields["text"][0].data == b"hi there"
    assert fields["file"][0].filename == "a.bin"
    assert fields["file"][0].data == b"\x00\x01\r\n\x02"


def test_parse_multipart_quoted_boundary():
    body = multipart(("file", "a.txt", b"x"))

    fields = parse_multipart(body, f'multipart/form-data; boundary="{BOUNDARY}"')

    assert fields["file"][0].data == b"x"


@pytest.mark.parametrize("ctype", ["application/x-www-form-urlencoded", "multipart/form-data"])
def test_parse_multipart_rejects_bad_content_type(ctype):
    with pytest.raises(BadRequest):
        parse_multipart(b"", ctype)


def test_ingest_form(config, uploads, base_dir):
    body = multipart(("file", "hello.txt", b"hello"))

    path = ingest_form(config, uploads, body, CTYPE)

    assert path == str(base_dir / "hello.txt")
    assert (base_dir / "hello.txt").read_bytes() == b"hello"
    assert path in uploads


def test_ingest_form_missing_field(config, uploads, base_dir):
    body = multipart(("other", "hello.txt", b"hello"))

    with pytest.raises(BadRequest):
        ingest_form(config, uploads, body, CTYPE)
    assert os.listdir(base_dir) == []


def test_ingest_form_field_without_file(config, uploads):
    with pytest.raises(BadRequest):
        ingest_form(config, uploads, multipart(("file", None, b"not a file")), CTYPE)


def test_ingest_form_nul_in_filename(config, uploads, base_dir):
    with pytest.raises(BadRequest):
        ingest_form(config, uploads, multipart(("file", "a\x00b.txt", b"x")), CTYPE)
    assert os.listdir(base_dir) == []
    assert len(uploads) == 0


def test_ingest_form_too_large(base_dir, uploads):
    config = ServerConfig(base_dir=str(base_dir), max_form_bytes=16)

    with pytest.raises(BadRequest):
        ingest_form(config, uploads, multipart(("file", "big.bin", b"x" * 64)), CTYPE)
    assert os.listdir(base_dir) == []


def test_ingest_read_only(base_dir, uploads):
    config = ServerConfig(base_dir=str(base_dir), read_only=True)

    with pytest.raises(Forbidden):
        ingest_form(config, uploads, multipart(("file", "a.txt", b"a")), CTYPE)
    with pytest.raises(Forbidden):
        ingest_raw(config, uploads, "/upload/a.txt", [b"a"])
    assert os.listdir(base_dir) == []
    assert len(uploads) == 0


@pytest.mark.parametrize("url,expected", [
    ("/upload/notes.txt", "notes.txt"),
    ("/upload/my%20file.txt", "my file.txt"),
    ("/upload/deep/path/file.bin", "file.bin"),
    ("/upload/file.bin?x=1", "file.bin"),
    ("/upload/a%00b.txt", ""),
    ("/upload/bad%FF.txt", "bad\udcff.txt"),
    ("/upload/", ""),
    ("/upload", ""),
])
def test_raw_filename(url, expected):
    assert raw_filename(url) == expected


def test_ingest_raw(config, uploads, base_dir):
    path = ingest_raw(config, uploads, "/upload/notes.txt", [b"a", b"b"])

    assert (base_dir / "notes.txt").read_bytes() == b"ab"
    assert path in uploads


def test_ingest_raw_missing_filename(config, uploads):
    with pytest.raises(BadRequest):
        ingest_raw(config, uploads, "/upload", [b"a"])


def test_failed_ingest_is_not_recorded(base_dir, uploads):
    config = ServerConfig(base_dir=str(base_dir / "missing"))

    with pytest.raises(StorageError):
        ingest_raw(config, uploads, "/upload/a.txt", [b"a"])
    assert len(uploads) == 0


def test_iter_chunked():
    stream = io.BytesIO(b"3\r\nabc\r\n2;ext=1\r\nde\r\n0\r\nX-Trailer: y\r\n\r\n")

    assert b"".join(iter_chunked(stream)) == b"abcde"


def test_iter_chunked_malformed():
    with pytest.raises(BadRequest):
        list(iter_chunked(io.BytesIO(b"zz\r\n")))
