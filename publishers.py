"""
Publishers for the container image metrics.

Exactly one publisher is active per process:

* ``HttpPublisher`` serves the registry on ``GET /metrics`` from a
  background werkzeug server.
* ``FilePublisher`` rewrites ``<dir>/docker_metrics.prom`` after every
  collection cycle, for node-exporter textfile style sidecars.
"""

import logging
import os
import threading
from typing import Optional

from flask import Flask, Response
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from werkzeug.serving import make_server

logger = logging.getLogger(__name__)

METRICS_FILE_NAME = "docker_metrics.prom"
METRICS_FILE_MODE = 0o644
DEFAULT_HOST = "0.0.0.0"


class PublishError(Exception):
    """Base class for recoverable publish failures."""


class FileWriteError(PublishError):
    """Writing the metrics file failed."""

    def __init__(self, path: str, cause: Exception):
        self.path = path
        self.cause = cause
        super().__init__(f"Error writing metrics file {path}: {cause}")


def create_app(registry: CollectorRegistry) -> Flask:
    """Flask app exposing the registry on /metrics."""
    app = Flask(__name__)

    @app.route('/metrics')
    def metrics():
        return Response(generate_latest(registry), content_type=CONTENT_TYPE_LATEST)

    return app


class Publisher:
    """Common interface of the publish modes."""

    mode = ""

    def start(self) -> None:
        """Called once before the first cycle."""

    def publish(self) -> None:
        """Called after every collection cycle."""

    def stop(self) -> None:
        """Called once on shutdown."""


class HttpPublisher(Publisher):
    """Serves the registry over HTTP for Prometheus to scrape."""

    mode = "http"

    def __init__(self, registry: CollectorRegistry, port: int, host: str = DEFAULT_HOST):
        self.registry = registry
        self.host = host
        self.port = port
        self.app = create_app(registry)
        self._server = None
        self._thread: Optional[threading.Thread] = None

    @property
    def server_port(self) -> Optional[int]:
        """Port actually bound, useful when started with port 0."""
        return self._server.server_port if self._server else None

    def start(self) -> None:
        """Bind the listening socket and serve in a daemon thread.

        Raises OSError if the socket cannot be bound.
        """
        try:
            self._server = make_server(self.host, self.port, self.app, threaded=True)
        except SystemExit as e:
            # werkzeug exits instead of raising when the bind fails
            raise OSError(f"Could not bind metrics server to {self.host}:{self.port}") from e

        self._thread = threading.Thread(
            target=self._server.serve_forever, name="metrics-http", daemon=True
        )
        self._thread.start()
        logger.info(f"Serving Prometheus metrics on http://{self.host}:{self.server_port}/metrics")

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None
        logger.info("Metrics server stopped")


class FilePublisher(Publisher):
    """Writes the registry to a text exposition file every cycle."""

    mode = "file"

    def __init__(self, registry: CollectorRegistry, directory: str):
        self.registry = registry
        self.directory = directory
        self.path = os.path.join(directory, METRICS_FILE_NAME)

    def start(self) -> None:
        logger.info(f"Metrics file path specified, writing to {self.path}")

    def publish(self) -> None:
        """Render the registry and overwrite the metrics file in place.

        Raises FileWriteError on any encode or I/O failure.
        """
        logger.debug(f"Writing metrics to file {self.path}")
        try:
            payload = generate_latest(self.registry)
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, METRICS_FILE_MODE)
            with os.fdopen(fd, 'wb') as f:
                f.write(payload)
        except (OSError, ValueError) as e:
            raise FileWriteError(self.path, e) from e
        logger.debug("Metrics written to file")


def build_publisher(registry: CollectorRegistry, port: int,
                    metrics_file_path: Optional[str] = None) -> Publisher:
    """Pick the publish mode: a metrics directory disables the HTTP endpoint."""
    if metrics_file_path:
        return FilePublisher(registry, metrics_file_path)
    return HttpPublisher(registry, port)
