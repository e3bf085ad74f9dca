"""
Main application factory for webdisk
"""

import errno
import logging
import logging.handlers
import os
import socket
import sys
from pathlib import Path
from typing import List, Tuple

import uvicorn
from asgiref.wsgi import WsgiToAsgi
from fastapi import FastAPI

from . import __version__
from .config import ensure_storage_root
from .gate import MOUNT_PATH
from .middleware import setup_middleware
from .models import Config
from .ui import setup_ui_routes
from .webdav import create_webdav_app

logger = logging.getLogger(__name__)


class ListenError(Exception):
    """Raised when no listening socket could be bound"""
    pass


def setup_logging(config: Config):
    """Setup logging configuration"""
    log_config = config.logging

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_config.level.upper(), logging.INFO))

    # Clear existing handlers
    root_logger.handlers.clear()

    # Create formatter
    if log_config.json:
        formatter = logging.Formatter(
            '{"time":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s","msg":"%(message)s"}'
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # File handler if configured
    if log_config.file:
        log_file = Path(log_config.file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=log_config.max_size_mb * 1024 * 1024,
            backupCount=log_config.backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def create_directories(config: Config):
    """Create necessary directories"""
    root = ensure_storage_root(config)
    logger.info(f"Ensured storage root exists: {root}")

    if config.logging.file:
        Path(config.logging.file).parent.mkdir(parents=True, exist_ok=True)


def create_app(config: Config) -> FastAPI:
    """
    Create FastAPI application for one configuration snapshot

    The snapshot is kept for the lifetime of the app; configuration changes
    take effect on the next start.
    """
    app = FastAPI(
        title="webdisk",
        description="File server with HTTP browsing and authenticated WebDAV",
        version=__version__,
        docs_url="/docs" if os.getenv("WEBDISK_DEBUG") else None,
        redoc_url=None,
        openapi_url="/openapi.json" if os.getenv("WEBDISK_DEBUG") else None,
    )

    # Store config in app state
    app.state.config = config

    setup_middleware(app)

    # The gate answers 404 itself while WebDAV is disabled, so the prefix is
    # never handed to the browse routes
    app.mount(MOUNT_PATH, WsgiToAsgi(create_webdav_app(config)))

    # Health check endpoint
    @app.get("/healthz")
    async def health_check():
        return {"ok": True, "version": __version__}

    # Catch-all browse routes go last
    setup_ui_routes(app)

    return app


def format_address(host: str, port: int) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def describe_bind_error(error: OSError, host: str, port: int) -> str:
    """Translate a bind failure into a message for the operator"""
    address = format_address(host, port)
    if isinstance(error, socket.gaierror):
        return f"Cannot resolve listen address {host!r}"
    if error.errno == errno.EADDRINUSE:
        return f"Address {address} is already in use"
    if error.errno == errno.EACCES:
        hint = " (ports below 1024 need elevated privileges)" if port < 1024 else ""
        return f"Permission denied binding {address}{hint}"
    if error.errno == errno.EADDRNOTAVAIL:
        return f"Address {host} is not available on this machine"
    return f"Cannot bind {address}: {error.strerror or error}"


def _bind(family: int, host: str, port: int) -> socket.socket:
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        if os.name != "nt":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if family == socket.AF_INET6:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
        sock.bind((host, port))
        sock.listen(socket.SOMAXCONN)
    except OSError:
        sock.close()
        raise
    return sock


def bind_sockets(config: Config) -> List[socket.socket]:
    """
    Bind the IPv4 and, unless disabled, the IPv6 listening socket

    Either bind may fail as long as one succeeds.

    Raises:
        ListenError: If no socket could be bound
    """
    targets: List[Tuple[int, str]] = [(socket.AF_INET, config.ip)]
    if config.ipv6_enabled:
        targets.append((socket.AF_INET6, config.ipv6.strip("[]")))

    sockets = []
    errors = []
    for family, host in targets:
        try:
            sockets.append(_bind(family, host, config.port))
            logger.info(f"Listening on http://{format_address(host, config.port)}")
        except OSError as e:
            message = describe_bind_error(e, host, config.port)
            logger.warning(message)
            errors.append(message)

    if not sockets:
        raise ListenError("; ".join(errors))
    return sockets


def serve(config: Config):
    """Run the server in this process until it receives a termination signal"""
    create_directories(config)
    app = create_app(config)
    sockets = bind_sockets(config)

    logger.info(f"webdisk {__version__} serving {config.storage_root}")
    logger.info(f"WebDAV: {'enabled at ' + MOUNT_PATH if config.webdav.enabled else 'disabled'}")

    server = uvicorn.Server(uvicorn.Config(
        app,
        log_config=None,
        access_log=False,  # We handle access logging ourselves
        server_header=False,
        date_header=False,
        timeout_graceful_shutdown=2,
    ))
    try:
        server.run(sockets=sockets)
    finally:
        for sock in sockets:
            sock.close()
        logger.info("webdisk shutdown complete")
