import threading

import pytest

from echo_http import EchoHandler, EchoHTTPServer
from echo_pipeline import EchoConfig


@pytest.fixture
def start_server():
    """Factory starting a live echo server on an ephemeral port."""
    started = []

    def start(**config):
        server = EchoHTTPServer(("127.0.0.1", 0), EchoHandler, EchoConfig(**config))
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        started.append((server, thread))
        return server

    yield start

    for server, thread in started:
        server.shutdown()
        server.server_close()
        thread.join(5)


@pytest.fixture
def server(start_server):
    return start_server(tag="test-echo")


def url_of(server, target="/"):
    return f"http://127.0.0.1:{server.server_address[1]}{target}"
