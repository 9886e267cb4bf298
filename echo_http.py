import logging
import signal
import socket
import sys
import threading
import time
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qsl, unquote, urlsplit

from echo_config import load_settings, warn_on_large_body
from echo_pipeline import __version__, encode_json, handle

# Bounds how long a stalled client can hold a connection thread.
REQUEST_TIMEOUT = 30
# Unread body bytes discarded after an error response before closing.
LINGER_TIMEOUT = 2
LINGER_LIMIT = 1024 * 1024

logger = logging.getLogger(__name__)
access_logger = logging.getLogger("echo.access")


def split_target(target):
    """Return the decoded path and raw query string of a request target."""
    if "://" in target:
        parts = urlsplit(target)
        path, query = parts.path, parts.query
    else:
        path, _, query = target.partition("?")
        path = path.partition("#")[0]
        query = query.partition("#")[0]
    return unquote(path) or "/", query


class EchoHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"
    server_version = f"echo-server/{__version__}"
    timeout = REQUEST_TIMEOUT

    def _echo(self):
        start = time.monotonic()
        path = self.path
        sent = "-"
        self.server.request_started()
        try:
            path, query_string = split_target(self.path)
            query = dict(parse_qsl(query_string, keep_blank_values=True))
            # http.server decodes header lines as latin-1, which maps bytes 1:1
            raw_headers = [(name, value.encode("latin-1")) for name, value in self.headers.items()]

            status, document = handle(self.command, path, query, raw_headers,
                                      self.rfile, self.server.config)
            if status != 200 or self.server.draining:
                self.close_connection = True
            self._send_json(status, document)
            sent = status
            if status != 200:
                self._linger()
        except ConnectionError as e:
            logger.debug("Client %s went away before the response was sent: %s",
                         self.client_address[0], e)
            self.close_connection = True
        except Exception:
            logger.exception("Unhandled error while echoing %s %s", self.command, path)
            self.close_connection = True
        finally:
            self._log_access(path, sent, start)
            self.server.request_finished()

    do_GET = do_HEAD = do_POST = do_PUT = do_PATCH = do_DELETE = _echo
    do_OPTIONS = do_TRACE = do_CONNECT = _echo

    def __getattr__(self, name):
        # extension methods (PROPFIND, PURGE, ...) are echoed like the rest
        if name.startswith("do_"):
            return self._echo
        raise AttributeError(name)

    def _send_json(self, status, document):
        payload = encode_json(document)
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        if self.close_connection:
            self.send_header("Connection", "close")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(payload)

    def _linger(self):
        """Half-close and discard what the client is still sending.

        Closing a socket with unread input makes the kernel send a reset,
        which can destroy the error response before the client reads it.
        """
        discarded = 0
        try:
            self.connection.shutdown(socket.SHUT_WR)
            self.connection.settimeout(LINGER_TIMEOUT)
            while discarded < LINGER_LIMIT:
                data = self.connection.recv(8192)
                if not data:
                    break
                discarded += len(data)
        except OSError as e:
            logger.debug("Lingering close for %s ended early: %s", self.client_address[0], e)

    def _log_access(self, path, status, start):
        access_logger.info(
            '%s %s "%s %s" %s %s %dms',
            datetime.now(timezone.utc).isoformat(),
            self.client_address[0],
            self.command,
            path,
            status,
            self.headers.get("Content-Length", "0"),
            (time.monotonic() - start) * 1000,
        )

    def version_string(self):
        return self.server_version

    def log_request(self, code="-", size="-"):
        """Silenced; _echo writes the access line once the response is sent."""

    def log_message(self, format, *args):
        logger.info("%s - %s", self.address_string(), format % args)

    def log_error(self, format, *args):
        logger.warning("%s - %s", self.address_string(), format % args)


class EchoHTTPServer(ThreadingHTTPServer):
    """Threaded HTTP server that can wait for in-flight requests on shutdown."""

    daemon_threads = True
    block_on_close = False

    def __init__(self, server_address, handler_class, config):
        if ":" in server_address[0]:
            self.address_family = socket.AF_INET6
        self.config = config
        self.draining = False
        self._in_flight = 0
        self._idle = threading.Condition()
        super().__init__(server_address, handler_class)

    def request_started(self):
        with self._idle:
            self._in_flight += 1

    def request_finished(self):
        with self._idle:
            self._in_flight -= 1
            self._idle.notify_all()

    @property
    def in_flight(self):
        with self._idle:
            return self._in_flight

    def begin_shutdown(self):
        """Stop accepting connections; safe to call from a signal handler."""
        self.draining = True
        # shutdown() blocks until serve_forever() returns, so it cannot run
        # on the thread that is serving.
        threading.Thread(target=self.shutdown, daemon=True).start()

    def drain(self, timeout):
        """Wait up to `timeout` seconds for in-flight requests to finish."""
        with self._idle:
            return self._idle.wait_for(lambda: self._in_flight == 0, timeout)


def run(settings, server_class=EchoHTTPServer, handler_class=EchoHandler):
    try:
        httpd = server_class((settings.host, settings.port), handler_class, settings.echo)
    except OSError as e:
        logger.error("Failed to bind to address %s: %s", settings.url, e)
        return 1

    def on_signal(signum, frame):
        print(f"\nReceived {signal.Signals(signum).name}, initiating graceful shutdown...")
        httpd.begin_shutdown()

    signal.signal(signal.SIGINT, on_signal)
    signal.signal(signal.SIGTERM, on_signal)

    host, port = httpd.server_address[:2]
    host = f"[{host}]" if ":" in host else host
    print(f"Echo server running at http://{host}:{port}")
    print("Press Ctrl+C to gracefully shutdown")
    try:
        httpd.serve_forever()
    finally:
        if not httpd.drain(settings.shutdown_timeout):
            logger.warning("Shutdown timeout of %ss elapsed with %d request(s) still in flight",
                           settings.shutdown_timeout, httpd.in_flight)
        httpd.server_close()
    print("Server shutdown complete")
    return 0


def main(argv=None):
    settings = load_settings(argv)
    logging.basicConfig(level=settings.log_level, format="%(message)s")
    warn_on_large_body(settings)
    return run(settings)


if __name__ == "__main__":
    sys.exit(main())
