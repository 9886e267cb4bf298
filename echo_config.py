"""Command-line and environment configuration for the echo server."""

import argparse
import ipaddress
import logging
import os
from dataclasses import dataclass

from echo_pipeline import DEFAULT_MAX_BODY_SIZE, DEFAULT_TAG, EchoConfig, __version__

DEFAULT_BIND = "0.0.0.0"
DEFAULT_PORT = 3000
DEFAULT_SHUTDOWN_TIMEOUT = 30.0
LARGE_BODY_WARNING = 10 * 1024 * 1024
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    host: str
    port: int
    shutdown_timeout: float
    log_level: str
    echo: EchoConfig

    @property
    def url(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"http://{host}:{self.port}"


def port_number(text):
    try:
        port = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {text!r}") from None
    if not 0 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port out of range: {port}")
    return port


def positive_int(text):
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {text!r}") from None
    if value <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: {value}")
    return value


def non_negative_float(text):
    try:
        value = float(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {text!r}") from None
    if value < 0:
        raise argparse.ArgumentTypeError(f"must not be negative: {value}")
    return value


def listen_address(text):
    """Parse `host:port` or `[v6host]:port`."""
    host, sep, port_text = text.rpartition(":")
    if not sep or not host:
        raise argparse.ArgumentTypeError(f"invalid listen address: {text!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        ipaddress.ip_address(host)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid listen address: {text!r}") from None
    return host, port_number(port_text)


def build_parser(env=None):
    if env is None:
        env = os.environ
    p = argparse.ArgumentParser(
        prog="http-echo-server",
        description="HTTP server that answers every request with a JSON description of it")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("--bind", default=env.get("BIND", DEFAULT_BIND),
                   help="listening IP address (env BIND)")
    p.add_argument("-p", "--port", type=port_number, default=env.get("PORT", DEFAULT_PORT),
                   help="port to listen on (env PORT)")
    p.add_argument("--addr", type=listen_address, default=env.get("LISTEN_ADDR"),
                   help="combined host:port, overrides --bind and --port (env LISTEN_ADDR)")
    p.add_argument("--max-body-size", type=positive_int,
                   default=env.get("MAX_BODY_SIZE", DEFAULT_MAX_BODY_SIZE),
                   help="maximum request body size in bytes (env MAX_BODY_SIZE)")
    p.add_argument("--tag", default=env.get("SERVER_TAG", DEFAULT_TAG),
                   help="server identification tag (env SERVER_TAG)")
    p.add_argument("--shutdown-timeout", type=non_negative_float,
                   default=env.get("SHUTDOWN_TIMEOUT", DEFAULT_SHUTDOWN_TIMEOUT),
                   help="seconds to wait for in-flight requests on shutdown (env SHUTDOWN_TIMEOUT)")
    p.add_argument("--log-level", type=str.upper, choices=LOG_LEVELS,
                   default=env.get("LOG_LEVEL", "INFO"),
                   help="logging level (env LOG_LEVEL)")
    return p


def load_settings(argv=None, env=None) -> Settings:
    parser = build_parser(env)
    args = parser.parse_args(argv)

    # argparse does not check choices against a default taken from LOG_LEVEL
    if args.log_level not in LOG_LEVELS:
        parser.error(f"invalid LOG_LEVEL: {args.log_level!r}")

    if args.addr is not None:
        host, port = args.addr
    else:
        try:
            ipaddress.ip_address(args.bind)
        except ValueError:
            parser.error(f"invalid BIND address: {args.bind!r}")
        host, port = args.bind, args.port

    return Settings(
        host=host,
        port=port,
        shutdown_timeout=args.shutdown_timeout,
        log_level=args.log_level,
        echo=EchoConfig(max_body_size=args.max_body_size, tag=args.tag),
    )


def warn_on_large_body(settings: Settings):
    size = settings.echo.max_body_size
    if size > LARGE_BODY_WARNING:
        logger.warning("Max body size is quite large (%dMB), consider reducing it",
                       size // (1024 * 1024))
