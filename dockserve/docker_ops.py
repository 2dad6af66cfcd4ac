from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator

import docker
from docker.errors import DockerException, NotFound

from .errors import ContainerGone, RuntimeUnavailable
from .labels import LABEL_ENABLE
from .models import ContainerInspection, short_id

LIFECYCLE_EVENTS = ("start", "stop", "die", "restart")


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str
    labels: dict[str, str] = field(default_factory=dict)


class DockerRuntime:
    """Single docker client handle shared by every reconciliation pass."""

    def __init__(self, client: docker.DockerClient | None = None, base_url: str | None = None):
        if client is None:
            try:
                client = docker.DockerClient(base_url=base_url) if base_url else docker.from_env()
            except DockerException as e:
                raise RuntimeUnavailable(f"failed to create Docker client: {e}") from e
        self.client = client

    def ping(self) -> None:
        try:
            self.client.ping()
        except DockerException as e:
            raise RuntimeUnavailable(f"Docker daemon not reachable: {e}") from e

    def close(self) -> None:
        self.client.close()

    def list_enabled_containers(self) -> list[ContainerRef]:
        try:
            containers = self.client.containers.list(filters={"label": f"{LABEL_ENABLE}=true"})
        except DockerException as e:
            raise RuntimeUnavailable(f"failed to list containers: {e}") from e
        return [ContainerRef(id=c.id, name=c.name, labels=dict(c.labels or {})) for c in containers]

    def inspect(self, container_id: str) -> ContainerInspection:
        try:
            attrs = self.client.api.inspect_container(container_id)
        except NotFound as e:
            # gone between list and inspect; only this service is affected
            raise ContainerGone(f"container {short_id(container_id)} no longer exists") from e
        except DockerException as e:
            raise RuntimeUnavailable(f"failed to inspect container {short_id(container_id)}: {e}") from e
        return ContainerInspection.from_attrs(attrs)

    def events(self, since: int | None = None) -> Iterator[dict[str, Any]]:
        """Open the lifecycle event stream.

        Returns docker-py's CancellableStream; call close() on it to unblock
        a reader. The stream ends when the daemon connection drops.
        """
        try:
            return self.client.events(
                since=since,
                decode=True,
                filters={"type": "container", "event": list(LIFECYCLE_EVENTS)},
            )
        except DockerException as e:
            raise RuntimeUnavailable(f"failed to open event stream: {e}") from e
