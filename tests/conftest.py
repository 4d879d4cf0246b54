"""Shared fixtures for exporter tests."""

import pytest

from docker_api import DockerAPIError
from image_metrics import ContainerImageCollector, METRIC_NAME, create_registry

# ---------------------------------------------------------------------------
# Container summaries shaped like GET /containers/json
# ---------------------------------------------------------------------------

WEB = {
    "Id": "1111",
    "Names": ["web-1"],
    "Image": "sha256:abc",
    "ImageID": "sha256:abc",
    "State": "running",
}
DB = {
    "Id": "2222",
    "Names": ["/postgres"],
    "Image": "postgres:16",
    "ImageID": "sha256:def",
    "State": "running",
}
CACHE = {
    "Id": "3333",
    "Names": ["/redis"],
    "Image": "redis:7",
    "ImageID": "sha256:789",
    "State": "running",
}

# Image inspect payloads keyed by the reference the container was started from
IMAGES = {
    "sha256:abc": {"Id": "sha256:abc", "RepoTags": ["nginx:1.25"]},
    "postgres:16": {"Id": "sha256:def", "RepoTags": ["postgres:16", "postgres:latest"]},
    "redis:7": {"Id": "sha256:789", "RepoTags": ["redis:7"]},
}


class FakeDockerClient:
    """In-memory stand-in for docker_api.DockerClient."""

    host = "unix:///tmp/fake-docker.sock"

    def __init__(self, containers=None, images=None):
        self.containers = list(containers or [])
        self.images = dict(images or {})
        self.failing_images = set()
        self.list_error = None
        self.inspected = []

    def list_containers(self):
        if self.list_error is not None:
            raise self.list_error
        return list(self.containers)

    def inspect_image(self, name):
        self.inspected.append(name)
        if name in self.failing_images or name not in self.images:
            raise DockerAPIError(404, f"No such image: {name}")
        return self.images[name]

    def ping(self):
        return True


def gauge_series(registry):
    """Return {(container_name, image_id, image_repo): value} for the image gauge."""
    series = {}
    for metric in registry.collect():
        if metric.name != METRIC_NAME:
            continue
        for sample in metric.samples:
            key = (
                sample.labels["container_name"],
                sample.labels["image_id"],
                sample.labels["image_repo"],
            )
            series[key] = sample.value
    return series


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def registry_and_gauge():
    return create_registry()


@pytest.fixture
def registry(registry_and_gauge):
    return registry_and_gauge[0]


@pytest.fixture
def fake_docker():
    return FakeDockerClient(containers=[WEB, DB, CACHE], images=IMAGES)


@pytest.fixture
def collector(fake_docker, registry_and_gauge):
    return ContainerImageCollector(fake_docker, registry_and_gauge[1])
