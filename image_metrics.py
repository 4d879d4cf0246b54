"""
Container image metrics.

Maps each container listed by the Docker daemon to one series of the
``docker_container_image_info`` gauge, labelled with the container name,
the image ID and the first repository tag of that image.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from prometheus_client import CollectorRegistry, Gauge

from docker_api import DockerAPIError, DockerClient

logger = logging.getLogger(__name__)

METRIC_NAME = "docker_container_image_info"
METRIC_HELP = "Docker container image information"
LABEL_NAMES = ("container_name", "image_id", "image_repo")
UNKNOWN_REPO = "unknown"


class ExporterError(Exception):
    """Base class for recoverable exporter failures."""


class RuntimeQueryError(ExporterError):
    """Listing containers from the Docker daemon failed."""


class ImageInspectError(ExporterError):
    """Inspecting the image of a single container failed."""

    def __init__(self, container_name: str, image: str, cause: Exception):
        self.container_name = container_name
        self.image = image
        self.cause = cause
        super().__init__(
            f"Error inspecting image '{image}' for container '{container_name}': {cause}"
        )


@dataclass(frozen=True)
class ContainerImageRecord:
    """Image identity of one running container, rebuilt every cycle."""
    container_name: str
    image_id: str
    image_repo: str

    def labels(self) -> Tuple[str, str, str]:
        return (self.container_name, self.image_id, self.image_repo)


def create_registry() -> Tuple[CollectorRegistry, Gauge]:
    """Create a private registry holding only the image info gauge."""
    registry = CollectorRegistry(auto_describe=True)
    gauge = Gauge(METRIC_NAME, METRIC_HELP, LABEL_NAMES, registry=registry)
    return registry, gauge


def repo_from_image(image: Dict[str, Any]) -> str:
    """First repository tag of an inspected image, or ``unknown``."""
    repo_tags = image.get('RepoTags')
    if isinstance(repo_tags, list) and repo_tags:
        return str(repo_tags[0])
    return UNKNOWN_REPO


class ContainerImageCollector:
    """Refreshes the image info gauge from the Docker daemon."""

    def __init__(self, docker: DockerClient, gauge: Gauge):
        self.docker = docker
        self.gauge = gauge

    def _list_containers(self) -> List[Dict[str, Any]]:
        try:
            containers = self.docker.list_containers()
        except (DockerAPIError, OSError) as e:
            raise RuntimeQueryError(f"Error listing containers: {e}") from e
        if not isinstance(containers, list):
            raise RuntimeQueryError(
                f"Error listing containers: expected a list, got {type(containers).__name__}"
            )
        return containers

    def _inspect_image(self, container_name: str, image: str) -> Dict[str, Any]:
        try:
            result = self.docker.inspect_image(image)
        except (DockerAPIError, OSError) as e:
            raise ImageInspectError(container_name, image, e) from e
        if result is None:
            return {}
        if not isinstance(result, dict):
            raise ImageInspectError(
                container_name, image,
                TypeError(f"expected an object, got {type(result).__name__}"),
            )
        return result

    def _build_record(self, container: Dict[str, Any]) -> Optional[ContainerImageRecord]:
        """Build the record for one container summary.

        Returns None (after logging) when the container has to be skipped.
        """
        if not isinstance(container, dict):
            logger.warning(f"Skipping malformed container entry: {container!r}")
            return None
        names = container.get('Names') or []
        if not names:
            logger.warning(f"Skipping container {container.get('Id', '?')}: no name reported")
            return None
        container_name = names[0]
        image_id = container.get('ImageID', '')

        try:
            image = self._inspect_image(container_name, container.get('Image', image_id))
        except ImageInspectError as e:
            logger.error(str(e))
            return None

        return ContainerImageRecord(
            container_name=container_name,
            image_id=image_id,
            image_repo=repo_from_image(image),
        )

    def collect(self) -> List[ContainerImageRecord]:
        """Run one collection pass.

        Raises RuntimeQueryError if the container list cannot be fetched, in
        which case the gauge keeps its previous series. Otherwise the gauge
        is cleared and repopulated; containers whose image cannot be
        inspected are logged and left out.
        """
        containers = self._list_containers()
        logger.debug(f"Listed {len(containers)} container(s)")

        # Drop series of containers that are gone before repopulating
        self.gauge.clear()

        records = []
        for container in containers:
            record = self._build_record(container)
            if record is None:
                continue
            self.gauge.labels(*record.labels()).set(1)
            records.append(record)
            logger.debug(
                f"{record.container_name}: image_id={record.image_id} "
                f"image_repo={record.image_repo}"
            )

        return records
