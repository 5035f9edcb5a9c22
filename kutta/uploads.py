"""Upload ingestion (multipart form and raw body) and the uploaded-files registry."""

import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote

from .errors import BadRequest, Forbidden, StorageError

logger = logging.getLogger(__name__)

BUFFER_SIZE = 1024 * 64  # 64KB chunks


class UploadedSet:
    """Absolute paths of the files written by this server process.

    Only members may be deleted. Nothing here survives a restart.
    """

    def __init__(self):
        self._paths = {}
        self._lock = threading.Lock()

    def add(self, path):
        with self._lock:
            self._paths[os.path.abspath(path)] = True

    def discard(self, path):
        with self._lock:
            self._paths.pop(os.path.abspath(path), None)

    def __contains__(self, path):
        with self._lock:
            return self._paths.get(os.path.abspath(path), False)

    def __len__(self):
        with self._lock:
            return len(self._paths)


@dataclass
class FormPart:
    name: str
    filename: Optional[str]  # None for plain fields
    content_type: str
    data: bytes


_PARAM_RE = re.compile(r';\s*(\w+)="([^"]*)"|;\s*(\w+)=([^;\s]*)')


def _header_params(value):
    params = {}
    for m in _PARAM_RE.finditer(value):
        if m.group(1):
            params[m.group(1).lower()] = m.group(2)
        else:
            params[m.group(3).lower()] = m.group(4)
    return params


def _boundary(content_type):
    if not content_type.startswith('multipart/form-data'):
        raise BadRequest("Expected multipart form data")
    boundary = _header_params(content_type).get('boundary')
    if not boundary:
        raise BadRequest("Missing multipart boundary")
    return boundary.encode('latin-1')


def parse_multipart(body, content_type):
    """Split a multipart/form-data body into ``{field name: [FormPart, ...]}``."""
    delimiter = b'--' + _boundary(content_type)
    chunks = body.split(delimiter)
    if len(chunks) < 2:
        raise BadRequest("Malformed multipart body")

    fields = {}
    for chunk in chunks[1:]:
        if chunk.startswith(b'--'):
            break
        if chunk.startswith(b'\r\n'):
            chunk = chunk[2:]
        head, sep, data = chunk.partition(b'\r\n\r\n')
        if not sep:
            raise BadRequest("Malformed multipart part")
        if data.endswith(b'\r\n'):
            data = data[:-2]

        headers = {}
        for line in head.decode('utf-8', 'replace').split('\r\n'):
            key, _, value = line.partition(':')
            headers[key.strip().lower()] = value.strip()

        params = _header_params(headers.get('content-disposition', ''))
        name = params.get('name')
        if name is None:
            continue
        fields.setdefault(name, []).append(FormPart(
            name=name,
            filename=params.get('filename'),
            content_type=headers.get('content-type', 'application/octet-stream'),
            data=data,
        ))
    return fields


def ensure_writable(config):
    if config.read_only:
        raise Forbidden("Uploads disabled in read-only mode")


def safe_filename(filename):
    # browsers on Windows may send the full client-side path
    name = os.path.basename((filename or '').replace('\\', '/'))
    if name in ('.', '..') or '\x00' in name:
        return ''
    return name


def write_with_collision_rename(directory, filename, chunks):
    """Write ``chunks`` to ``directory/filename`` without ever replacing a file.

    A taken name becomes ``<stem>_<nanoseconds><ext>``. Returns the absolute
    path written. A failed write removes the partial file and raises
    StorageError.
    """
    path = os.path.join(directory, filename)
    stem, ext = os.path.splitext(filename)
    while True:
        try:
            out = open(path, 'xb')
            break
        except FileExistsError:
            path = os.path.join(directory, f"{stem}_{time.time_ns()}{ext}")
        except OSError as e:
            logger.error("Failed to create %s: %s", path, e)
            raise StorageError("Failed to save file") from e

    try:
        with out:
            for chunk in chunks:
                out.write(chunk)
    except Exception as e:
        try:
            os.remove(path)
        except OSError:
            pass
        if isinstance(e, OSError):
            logger.error("Failed to write %s: %s", path, e)
            raise StorageError("Failed to write file") from e
        raise
    return os.path.abspath(path)


def iter_body(stream, length):
    remaining = length
    while remaining > 0:
        data = stream.read(min(BUFFER_SIZE, remaining))
        if not data:
            raise ConnectionResetError("Request body ended early")
        remaining -= len(data)
        yield data


def iter_chunked(stream):
    """Decode a ``Transfer-Encoding: chunked`` request body."""
    while True:
        line = stream.readline(1024)
        if not line:
            raise ConnectionResetError("Request body ended early")
        try:
            size = int(line.split(b';', 1)[0].strip(), 16)
        except ValueError:
            raise BadRequest("Malformed chunked body") from None
        if size == 0:
            # trailers end with an empty line
            while stream.readline(1024) not in (b'\r\n', b'\n', b''):
                pass
            return
        yield from iter_body(stream, size)
        stream.readline(1024)


def ingest_form(config, uploads, body, content_type):
    """Store the ``file`` field of a multipart form upload."""
    ensure_writable(config)
    if len(body) > config.max_form_bytes:
        raise BadRequest("Upload exceeds maximum form size")

    parts = parse_multipart(body, content_type).get('file')
    if not parts or parts[0].filename is None:
        raise BadRequest("Failed to read file")
    part = parts[0]
    filename = safe_filename(part.filename)
    if not filename:
        raise BadRequest("Failed to read file")

    path = write_with_collision_rename(config.base_dir, filename, [part.data])
    uploads.add(path)
    logger.info("Uploaded via POST: %s", path)
    return path


def raw_filename(url_path):
    """Final segment of ``/upload/<name>``; empty for a bare ``/upload``."""
    rest = url_path.split('?', 1)[0][len('/upload'):]
    return safe_filename(unquote(rest, errors='surrogateescape').rstrip('/')) if rest.startswith('/') else ''


def ingest_raw(config, uploads, url_path, chunks):
    """Store a raw request body under the name given by the URL."""
    ensure_writable(config)
    filename = raw_filename(url_path)
    if not filename:
        raise BadRequest("Missing filename in URL")

    path = write_with_collision_rename(config.base_dir, filename, chunks)
    uploads.add(path)
    logger.info("Uploaded via PUT: %s", path)
    return path
