#!/usr/bin/env python3
"""
Docker Container Image Exporter

Polls the local Docker daemon on a fixed interval and publishes the image
each running container was started from as the Prometheus gauge
``docker_container_image_info{container_name, image_id, image_repo} = 1``,
either on an HTTP ``/metrics`` endpoint or as a text exposition file.
"""

__version__ = "1.0.0"

import argparse
import logging
import math
import os
import re
import signal
import sys
import threading
from dataclasses import dataclass
from typing import List, Optional

from docker_api import DockerClient, DockerAPIError
from image_metrics import (
    ContainerImageCollector,
    RuntimeQueryError,
    create_registry,
)
from publishers import FileWriteError, Publisher, build_publisher

logger = logging.getLogger(__name__)

# Constants
DEFAULT_PORT = 8000
DEFAULT_INTERVAL = "10s"
LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR']

_DURATION_PART = r'(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)'
_DURATION_RE = re.compile(rf'(?:{_DURATION_PART})+')
_DURATION_PART_RE = re.compile(_DURATION_PART)
_DURATION_UNITS = {
    'ns': 1e-9,
    'us': 1e-6,
    'µs': 1e-6,
    'ms': 1e-3,
    's': 1.0,
    'm': 60.0,
    'h': 3600.0,
}


def parse_duration(value: str) -> float:
    """Parse a duration such as ``10s``, ``1m30s`` or ``250ms`` into seconds.

    A bare number is taken as seconds. Raises ValueError on anything else.
    """
    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass

    if not _DURATION_RE.fullmatch(text):
        raise ValueError(f"invalid duration '{value}'")

    return sum(
        float(number) * _DURATION_UNITS[unit]
        for number, unit in _DURATION_PART_RE.findall(text)
    )


def _interval_arg(value: str) -> float:
    try:
        seconds = parse_duration(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))
    if not math.isfinite(seconds) or seconds <= 0:
        raise argparse.ArgumentTypeError(f"interval must be a positive duration, got '{value}'")
    return seconds


def _port_arg(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port '{value}'")
    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port must be between 1 and 65535, got {port}")
    return port


@dataclass(frozen=True)
class ExporterConfig:
    """Runtime settings resolved from flags and environment."""
    port: int = DEFAULT_PORT
    metrics_file_path: Optional[str] = None
    interval: float = 10.0
    debug: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "ExporterConfig":
        return cls(
            port=args.port,
            metrics_file_path=args.metrics_file_path or None,
            interval=args.interval,
            debug=args.debug,
            log_level=args.log_level,
        )

    @property
    def mode(self) -> str:
        return "file" if self.metrics_file_path else "http"

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.debug else self.log_level.upper()


def setup_logging(level: str) -> None:
    """Configure the root logger; every module logs through it."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))

    if not root.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '%(asctime)s - [%(name)s] - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S %Z'
        )
        handler.setFormatter(formatter)
        root.addHandler(handler)

    # werkzeug logs every scrape at INFO
    if level.upper() != 'DEBUG':
        logging.getLogger('werkzeug').setLevel(logging.WARNING)


class ExporterLoop:
    """Runs collect-then-publish cycles until stopped."""

    def __init__(self, collector: ContainerImageCollector, publisher: Publisher,
                 interval: float, stop_event: Optional[threading.Event] = None):
        self.collector = collector
        self.publisher = publisher
        self.interval = interval
        self.stop_event = stop_event or threading.Event()
        self.cycles = 0

    def run_once(self) -> bool:
        """Run a single cycle. Returns True if every step succeeded."""
        ok = True
        try:
            records = self.collector.collect()
            logger.debug(f"Collected image info for {len(records)} container(s)")
        except RuntimeQueryError as e:
            logger.error(str(e))
            ok = False

        try:
            self.publisher.publish()
        except FileWriteError as e:
            logger.error(str(e))
            ok = False

        self.cycles += 1
        return ok

    def run(self) -> None:
        """Loop until ``stop()`` is called; cycles overrunning the interval run back-to-back."""
        logger.info(f"Collecting every {self.interval:g} seconds")
        while not self.stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.exception(f"Collection cycle failed unexpectedly: {e}")
            logger.debug(f"Metrics collected, sleeping for {self.interval:g} seconds")
            if self.stop_event.wait(timeout=self.interval):
                break
        logger.info("Collection loop stopped")

    def stop(self) -> None:
        self.stop_event.set()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description='Export Docker container image information as Prometheus metrics'
    )
    parser.add_argument(
        '--port',
        type=_port_arg,
        default=os.environ.get('PORT', str(DEFAULT_PORT)),
        help=f'Port to listen on for Prometheus metrics (env: PORT, default: {DEFAULT_PORT})'
    )
    parser.add_argument(
        '--metrics-file-path', '--metricsFilePath',
        dest='metrics_file_path',
        default=os.environ.get('METRICS_FILE_PATH', ''),
        help='Directory to write docker_metrics.prom to; disables the HTTP listener if set '
             '(env: METRICS_FILE_PATH)'
    )
    parser.add_argument(
        '--interval',
        type=_interval_arg,
        default=os.environ.get('INTERVAL', DEFAULT_INTERVAL),
        help=f'Interval between collections, e.g. 10s, 1m30s (env: INTERVAL, default: {DEFAULT_INTERVAL})'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        default=os.environ.get('DEBUG', '').lower() == 'true',
        help='Enable debug logging (env: DEBUG)'
    )
    parser.add_argument(
        '--log-level',
        choices=LOG_LEVELS,
        type=str.upper,
        default=os.environ.get('LOG_LEVEL', 'INFO').upper(),
        help='Logging level, overridden by --debug (env: LOG_LEVEL, default: INFO)'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None):
    args = parse_args(argv)
    config = ExporterConfig.from_args(args)
    setup_logging(config.effective_log_level)
    logger.debug(f"Configuration: {config}")

    try:
        docker = DockerClient()
        logger.debug(f"Docker client created for {docker.host}")
        registry, gauge = create_registry()
        publisher = build_publisher(registry, config.port, config.metrics_file_path)
        publisher.start()
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)

    try:
        docker.ping()
    except (DockerAPIError, OSError) as e:
        logger.warning(f"Docker daemon not reachable at {docker.host}, will retry every cycle: {e}")

    loop = ExporterLoop(ContainerImageCollector(docker, gauge), publisher, config.interval)

    def shutdown_handler(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, shutting down...")
        loop.stop()

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)

    try:
        loop.run()
    finally:
        publisher.stop()


if __name__ == '__main__':
    main()
