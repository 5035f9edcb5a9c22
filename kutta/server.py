import http.server
import json
import logging
import os
import posixpath
import re
import socket
import socketserver
import urllib.parse
from http import HTTPStatus

import segno

from . import __version__
from .auth import STATIC_PREFIX, AuthGate
from .clipboard import ClipboardStore
from .config import MAX_UPLOAD_MB, PORT, STATIC_DIR
from .deletion import bulk_delete, delete_uploaded, ensure_deletable
from .errors import (BadRequest, Forbidden, KuttaError, MethodNotAllowed, NotFound,
                     RangeNotSatisfiable, StorageError)
from .listing import list_directory, resolve_path
from .pages import render_index
from .privdrop import drop_to_user
from .uploads import (BUFFER_SIZE, UploadedSet, ensure_writable, ingest_form,
                      ingest_raw, iter_body, iter_chunked, parse_multipart)

logger = logging.getLogger(__name__)
access_logger = logging.getLogger('kutta.access')

DISCARD_LIMIT = MAX_UPLOAD_MB * 1024 * 1024
RANGE_RE = re.compile(r'bytes=(\d*)-(\d*)$')


def clean_path(path):
    """Collapse dot segments and duplicate slashes, keeping a trailing slash."""
    clean = '/' + posixpath.normpath(path).lstrip('/')
    if path.endswith('/') and clean != '/':
        clean += '/'
    return clean


# For multiple users at once
class ThreadedTCPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    daemon_threads = True
    allow_reuse_address = True


class KuttaServer(ThreadedTCPServer):
    """Listening server; owns the configuration and the per-process state."""

    def __init__(self, server_address, config, bind_and_activate=True):
        self.config = config
        self.uploads = UploadedSet()
        self.clipboard = ClipboardStore()
        self.auth = AuthGate(config.auth_creds)
        super().__init__(server_address, KuttaHandler, bind_and_activate)


# Request Handler
class KuttaHandler(http.server.SimpleHTTPRequestHandler):

    server_version = "Kutta/" + __version__

    def log_message(self, format, *args):
        access_logger.info("%s - %s", self.client_address[0], format % args)

    def do_GET(self):
        self.route('GET')

    def do_HEAD(self):
        self.route('HEAD')

    def do_POST(self):
        self.route('POST')

    def do_PUT(self):
        self.route('PUT')

    def do_DELETE(self):
        self.route('DELETE')

    def route(self, method):
        # not urlsplit: a leading '//' would be taken for a netloc
        raw_path, _, query = self.path.partition('?')
        path = clean_path(urllib.parse.unquote(raw_path, errors='surrogateescape'))
        self.params = urllib.parse.parse_qs(query, errors='surrogateescape')
        self.body_started = False

        if not self.check_auth(path):
            return

        try:
            if path.startswith(STATIC_PREFIX):
                self.serve_static(method, path[len(STATIC_PREFIX):])
            elif path == '/upload' or path.startswith('/upload/'):
                self.handle_upload(method, clean_path(raw_path))
            elif path == '/delete':
                self.handle_delete()
            elif path == '/bulkdelete':
                self.handle_bulk_delete(method)
            elif path.startswith('/files/'):
                self.serve_file(method, path[len('/files/'):])
            elif path == '/clipboard':
                self.handle_clipboard(method)
            elif path == '/clipboard/export':
                self.handle_clipboard_export(method)
            elif path == '/clipboard/clear':
                self.handle_clipboard_clear(method)
            else:
                self.handle_index(method, path)
        except KuttaError as e:
            self.discard_body()
            self.close_connection = True
            self.send_error(e.status, e.message)

    def check_auth(self, path):
        gate = self.server.auth
        if gate.allows(path, self.headers.get('Authorization')):
            return True

        host, port = self.client_address[:2]
        logger.warning("Unauthorized access to %s from %s:%s", path, host, port)
        self.discard_body()
        body = b"Unauthorized\n"
        self.close_connection = True
        self.send_response(HTTPStatus.UNAUTHORIZED)
        self.send_header('WWW-Authenticate', gate.challenge)
        self.send_header('Content-Type', 'text/plain; charset=utf-8')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        if self.command != 'HEAD':
            self.wfile.write(body)
        return False

    # Responses

    def send_body(self, status, body=b'', ctype='text/plain; charset=utf-8', headers=None, head_only=False):
        self.send_response(status)
        self.send_header('Content-Type', ctype)
        self.send_header('Content-Length', str(len(body)))
        for key, value in (headers or {}).items():
            self.send_header(key, value)
        self.end_headers()
        if body and not head_only:
            self.wfile.write(body)

    def redirect(self, location):
        self.send_response(HTTPStatus.SEE_OTHER)
        self.send_header('Location', location)
        self.send_header('Content-Length', '0')
        self.end_headers()

    # Request bodies

    def content_length(self):
        try:
            length = int(self.headers.get('Content-Length', 0))
        except ValueError:
            raise BadRequest("Invalid Content-Length") from None
        if length < 0:
            raise BadRequest("Invalid Content-Length")
        return length

    def body_chunks(self):
        chunked = 'chunked' in self.headers.get('Transfer-Encoding', '').lower()
        length = None if chunked else self.content_length()

        def chunks():
            self.body_started = True
            if chunked:
                yield from iter_chunked(self.rfile)
            else:
                yield from iter_body(self.rfile, length)
        return chunks()

    def discard_body(self):
        """Drop a request body nobody read, so the reply is not cut off by a reset."""
        if self.body_started:
            return
        self.body_started = True
        try:
            length = int(self.headers.get('Content-Length', 0))
        except ValueError:
            return
        if 0 < length <= DISCARD_LIMIT:
            try:
                for _ in iter_body(self.rfile, length):
                    pass
            except OSError:
                pass

    def read_body(self, limit):
        if self.content_length() > limit:
            raise BadRequest("Upload exceeds maximum form size")
        data = bytearray()
        try:
            for chunk in self.body_chunks():
                data += chunk
                if len(data) > limit:
                    raise BadRequest("Upload exceeds maximum form size")
        except ConnectionResetError:
            raise BadRequest("Request body ended early") from None
        return bytes(data)

    def read_form(self):
        """Form fields from a urlencoded, multipart or JSON body, plus the query string."""
        ctype = self.headers.get('Content-Type', '')
        body = self.read_body(self.server.config.max_form_bytes)

        if ctype.startswith('multipart/form-data'):
            fields = {}
            for name, parts in parse_multipart(body, ctype).items():
                values = [p.data.decode('utf-8', 'replace') for p in parts if p.filename is None]
                if values:
                    fields[name] = values
        elif ctype.startswith('application/json'):
            try:
                data = json.loads(body or b'{}')
            except ValueError:
                raise BadRequest("Malformed JSON body") from None
            if not isinstance(data, dict):
                raise BadRequest("Expected a JSON object")
            fields = {}
            for name, value in data.items():
                values = value if isinstance(value, list) else [value]
                fields[name] = [v if isinstance(v, str) else json.dumps(v) for v in values]
        else:
            fields = urllib.parse.parse_qs(body.decode('utf-8', 'replace'), keep_blank_values=True)

        for name, values in self.params.items():
            fields.setdefault(name, []).extend(values)
        return fields

    # Routes

    def handle_index(self, method, path):
        config = self.server.config
        if config.upload_only:
            raise Forbidden("Access denied in upload-only mode")
        if method not in ('GET', 'HEAD'):
            raise MethodNotAllowed("Method not allowed")

        query = self.params.get('q', [''])[0]
        uploads = self.server.uploads if config.uploads_only_listing else None
        listing = list_directory(config.base_dir, path, query, uploads)
        try:
            page = render_index(listing, config, query)
        except Exception:
            logger.exception("Failed to render listing of %s", listing.directory)
            raise StorageError("Template error") from None

        self.send_body(HTTPStatus.OK, page.encode('utf-8', 'surrogateescape'),
                       ctype='text/html; charset=utf-8', head_only=method == 'HEAD')

    def handle_upload(self, method, url_path):
        config = self.server.config
        ensure_writable(config)
        if method == 'POST':
            body = self.read_body(config.max_form_bytes)
            ingest_form(config, self.server.uploads, body, self.headers.get('Content-Type', ''))
            self.redirect(self.headers.get('Referer') or '/')
        elif method == 'PUT':
            ingest_raw(config, self.server.uploads, url_path, self.body_chunks())
            self.send_body(HTTPStatus.CREATED)
        else:
            raise MethodNotAllowed("Method not allowed")

    def handle_delete(self):
        ensure_deletable(self.server.config)
        rel_path = self.params.get('file', [''])[0]
        delete_uploaded(self.server.config, self.server.uploads, rel_path)
        self.redirect('/')

    def handle_bulk_delete(self, method):
        ensure_deletable(self.server.config)
        if method != 'POST':
            raise MethodNotAllowed("Method not allowed")
        form = self.read_form()
        files = form.get('files[]', []) + form.get('files', [])
        result = bulk_delete(self.server.config, self.server.uploads, files)
        if result.skipped:
            logger.info("Bulk delete skipped %d of %d files", len(result.skipped), len(files))
        self.redirect('/')

    def handle_clipboard(self, method):
        clipboard = self.server.clipboard
        if method == 'POST':
            form = self.read_form()
            clipboard.append(form.get('text', [''])[0])
            self.send_body(HTTPStatus.CREATED)
        elif method == 'GET':
            self.send_body(HTTPStatus.OK, clipboard.to_json().encode('utf-8'), ctype='application/json')
        else:
            raise MethodNotAllowed("Method not allowed")

    def handle_clipboard_export(self, method):
        if method != 'GET':
            raise MethodNotAllowed("Method not allowed")
        self.send_body(HTTPStatus.OK, self.server.clipboard.to_json().encode('utf-8'),
                       ctype='application/json',
                       headers={'Content-Disposition': 'attachment; filename=clipboard.json'})

    def handle_clipboard_clear(self, method):
        if method != 'POST':
            raise MethodNotAllowed("Method not allowed")
        self.server.clipboard.clear()
        self.send_body(HTTPStatus.OK)

    # File serving

    def serve_file(self, method, rel_path):
        if method not in ('GET', 'HEAD'):
            raise MethodNotAllowed("Method not allowed")
        path = resolve_path(self.server.config.base_dir, rel_path)
        if os.path.isdir(path):
            rel_path = rel_path.strip('/')
            self.redirect('/' + urllib.parse.quote(rel_path, errors='surrogateescape') + '/' if rel_path else '/')
            return
        self.send_file(path, head_only=method == 'HEAD')

    def serve_static(self, method, name):
        if method not in ('GET', 'HEAD'):
            raise MethodNotAllowed("Method not allowed")
        path = resolve_path(STATIC_DIR, name)
        if os.path.dirname(path) != STATIC_DIR:
            raise NotFound("File not found")
        self.send_file(path, head_only=method == 'HEAD')

    def parse_range(self, file_size):
        """``(first, last)`` for a single byte range request, None for the whole file."""
        header = self.headers.get('Range')
        if not header:
            return None
        m = RANGE_RE.match(header.strip())
        if not m or not (m.group(1) or m.group(2)):
            raise BadRequest("Bad Range Header")

        if m.group(1):
            first = int(m.group(1))
            last = int(m.group(2)) if m.group(2) else file_size - 1
        else:
            # suffix range: the final N bytes
            first = max(file_size - int(m.group(2)), 0)
            last = file_size - 1
        last = min(last, file_size - 1)
        if first >= file_size or first > last:
            raise RangeNotSatisfiable("Requested range not satisfiable")
        return first, last

    def send_file(self, path, head_only=False):
        try:
            f = open(path, 'rb')
        except OSError:
            raise NotFound("File not found") from None

        with f:
            fs = os.fstat(f.fileno())
            byte_range = self.parse_range(fs.st_size)
            if byte_range is None:
                self.send_response(HTTPStatus.OK)
                first, length = 0, fs.st_size
            else:
                first, last = byte_range
                length = last - first + 1
                self.send_response(HTTPStatus.PARTIAL_CONTENT)
                self.send_header('Content-Range', f'bytes {first}-{last}/{fs.st_size}')
            self.send_header("Content-type", self.guess_type(path))
            self.send_header("Content-Length", str(length))
            self.send_header("Last-Modified", self.date_time_string(fs.st_mtime))
            self.send_header("Accept-Ranges", "bytes")
            self.end_headers()
            if head_only:
                return
            f.seek(first)
            self.copyfile(f, self.wfile, length)

    def copyfile(self, source, outputfile, length):
        try:
            bytes_to_read = length
            while bytes_to_read > 0:
                data = source.read(min(BUFFER_SIZE, bytes_to_read))
                if not data:
                    break
                outputfile.write(data)
                bytes_to_read -= len(data)
        except (ConnectionResetError, BrokenPipeError):
            pass


def get_local_ip():
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except OSError:
        return "127.0.0.1"


def display_qr_code(url):
    qr = segno.make_qr(url)
    print("\n" + "=" * 60)
    print("SCAN THIS QR CODE:")
    print("=" * 60)
    qr.terminal(compact=True)
    print(f"\nServer is running at: {url}")
    print("=" * 60)


def create_server(config, port=PORT, bind=''):
    return KuttaServer((bind, port), config)


def run_server(config, port=PORT, bind='', run_as_user=None, show_qr=True):
    """Bind, drop privileges if asked, then serve until interrupted.

    Bind and privilege-drop failures propagate to the caller.
    """
    with create_server(config, port, bind) as httpd:
        if run_as_user:
            drop_to_user(run_as_user)

        port = httpd.server_address[1]
        local_url = f"http://{get_local_ip()}:{port}"
        logger.info("Kutta serving on port %d (dir: %s)", port, config.base_dir)
        print(f"\n{'=' * 60}")
        print("SERVER STARTING..")
        print(f"Port: {port}")
        print(f"Local URL: http://127.0.0.1:{port}")
        print(f"Network URL: {local_url}")
        if config.uploads_only_listing:
            print("Listing only files uploaded in this session")
        if show_qr:
            display_qr_code(local_url)
        print("Press Ctrl+C to stop the server")
        print(f"{'=' * 60}\n")
        try:
            httpd.serve_forever()
        except KeyboardInterrupt:
            logger.info("Server stopped.")
