"""Docker Engine API client.

Talks HTTP directly to the Docker Engine API, either through the local
/var/run/docker.sock Unix socket or through the daemon named by
DOCKER_HOST (``unix://`` or plain ``tcp://``, e.g. a socket proxy sidecar).
Only the read-only calls the exporter needs are implemented.
"""

import http.client
import json
import logging
import os
import socket
import urllib.parse
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_SOCKET_PATH = "/var/run/docker.sock"
DEFAULT_HOST = f"unix://{DEFAULT_SOCKET_PATH}"
DEFAULT_TCP_PORT = 2375


class DockerAPIError(Exception):
    """Error from the Docker Engine API."""

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(f"Docker API error {status}: {message}")


class UnixHTTPConnection(http.client.HTTPConnection):
    """HTTPConnection subclass that connects via a Unix domain socket."""

    def __init__(self, socket_path: str, timeout: int = 30):
        # host is unused for the actual connection but required by HTTPConnection
        super().__init__("localhost", timeout=timeout)
        self._socket_path = socket_path

    def connect(self):
        self.sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.sock.settimeout(self.timeout)
        self.sock.connect(self._socket_path)


def parse_docker_host(host: str) -> Tuple[str, Any]:
    """Split a DOCKER_HOST value into ``("unix", path)`` or ``("tcp", (host, port))``.

    A bare path is taken as a Unix socket. Raises ValueError for schemes the
    client cannot speak (TLS, ssh, npipe).
    """
    if host.startswith("unix://"):
        return "unix", host[len("unix://"):]
    if "://" not in host:
        return "unix", host

    parts = urllib.parse.urlsplit(host)
    if parts.scheme not in ("tcp", "http") or not parts.hostname:
        raise ValueError(f"Unsupported DOCKER_HOST '{host}'")
    return "tcp", (parts.hostname, parts.port or DEFAULT_TCP_PORT)


class DockerClient:
    """Client for the Docker Engine API over a Unix socket or plain TCP.

    The API version is negotiated with the daemon on first use (the
    ``API-Version`` header of ``GET /_ping``) unless one is given.
    """

    def __init__(self, host: Optional[str] = None, timeout: int = 30,
                 api_version: Optional[str] = None):
        if host is None:
            host = os.environ.get("DOCKER_HOST", "") or DEFAULT_HOST
        self.host = host
        self.scheme, self.address = parse_docker_host(host)
        self.timeout = timeout
        self.api_version = api_version

    @property
    def socket_path(self) -> Optional[str]:
        return self.address if self.scheme == "unix" else None

    def _connection(self) -> http.client.HTTPConnection:
        if self.scheme == "unix":
            return UnixHTTPConnection(self.address, timeout=self.timeout)
        tcp_host, tcp_port = self.address
        return http.client.HTTPConnection(tcp_host, tcp_port, timeout=self.timeout)

    def _send(self, method: str, url: str) -> Tuple[http.client.HTTPResponse, str]:
        """Send one request on a fresh connection; returns (response, body).

        Raises DockerAPIError for any non-2xx status.
        """
        conn = self._connection()
        try:
            conn.request(method, url)
            response = conn.getresponse()
            raw = response.read().decode("utf-8", errors="replace")
        finally:
            conn.close()

        if response.status >= 400:
            # Try to extract message from JSON error body
            try:
                err = json.loads(raw)
                msg = err.get("message", raw)
            except (json.JSONDecodeError, AttributeError):
                msg = raw
            raise DockerAPIError(response.status, str(msg).strip())

        return response, raw

    def _api_prefix(self) -> str:
        if self.api_version is None:
            try:
                self.ping()
            except DockerAPIError as e:
                logger.warning(f"Docker API version negotiation failed, using unversioned paths: {e}")
        if self.api_version is None:
            # Daemon did not announce a version: unversioned paths use its latest
            self.api_version = ""
        return f"/v{self.api_version}" if self.api_version else ""

    def _request(self, method: str, path: str,
                 query: Optional[Dict[str, str]] = None) -> Any:
        """Send a versioned API request and return the parsed JSON body.

        Returns None for an empty body; a body that is not JSON raises
        DockerAPIError.
        """
        url = f"{self._api_prefix()}{path}"
        if query:
            url += "?" + urllib.parse.urlencode(query)

        response, raw = self._send(method, url)
        if not raw:
            return None

        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            raise DockerAPIError(response.status, f"invalid JSON response for {path}: {raw[:100]!r}")

    def ping(self) -> bool:
        """``GET /_ping``; records the daemon's API version if not set yet."""
        response, raw = self._send("GET", "/_ping")
        version = response.getheader("API-Version")
        if self.api_version is None and version:
            self.api_version = version
            logger.debug(f"Negotiated Docker API version {version}")
        return raw.strip() == "OK"

    def list_containers(self) -> List[Dict[str, Any]]:
        """List running containers.

        Returns list of dicts with keys like ``Id``, ``Names`` (list with
        ``/`` prefix), ``Image``, ``ImageID``, ``State``.
        """
        result = self._request("GET", "/containers/json")
        return result or []

    def inspect_image(self, name: str) -> Dict[str, Any]:
        """Inspect an image by name, tag or ID (``docker image inspect``).

        Returns the full image JSON, including ``Id`` and ``RepoTags``.
        """
        quoted = urllib.parse.quote(name, safe="/:@")
        return self._request("GET", f"/images/{quoted}/json")
