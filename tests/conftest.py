import threading

import pytest

from kutta.config import ServerConfig
from kutta.server import KuttaServer


@pytest.fixture
def base_dir(tmp_path):
    d = tmp_path / "served"
    d.mkdir()
    return d


@pytest.fixture
def serve(base_dir):
    """Start a KuttaServer on an ephemeral port; returns ``(base_url, server)``."""
    servers = []

    def start(**options):
        options.setdefault("base_dir", str(base_dir))
        httpd = KuttaServer(("127.0.0.1", 0), ServerConfig(**options))
        thread = threading.Thread(target=httpd.serve_forever, daemon=True)
        thread.start()
        servers.append((httpd, thread))
        return f"http://127.0.0.1:{httpd.server_address[1]}", httpd

    yield start

    for httpd, thread in servers:
        httpd.shutdown()
        httpd.server_close()
        thread.join(timeout=5)
