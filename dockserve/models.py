from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

BACKEND_PROTOCOLS = frozenset({"http", "https", "https+insecure", "tcp", "tls-terminated-tcp"})
SERVICE_PROTOCOLS = frozenset({"http", "https", "tcp", "tls-terminated-tcp"})
FUNNEL_PROTOCOLS = frozenset({"https", "tcp", "tls-terminated-tcp"})
TCP_PROTOCOLS = frozenset({"tcp", "tls-terminated-tcp"})

SERVICE_PREFIX = "svc:"


def short_id(container_id: str) -> str:
    return container_id[:12]


def is_tcp_protocol(protocol: str) -> bool:
    return protocol in TCP_PROTOCOLS


@dataclass(frozen=True)
class ContainerInspection:
    """The subset of `docker inspect` output needed to build a service.

    Port tables map "<port>/<proto>" to the list of published host ports.
    """

    id: str
    name: str
    network_mode: str = ""
    networks: dict[str, str] = field(default_factory=dict)
    port_bindings: dict[str, list[str]] = field(default_factory=dict)
    published_ports: dict[str, list[str]] = field(default_factory=dict)

    @property
    def is_host_network(self) -> bool:
        return self.network_mode == "host"

    @property
    def is_no_network(self) -> bool:
        return self.network_mode == "none"

    @classmethod
    def from_attrs(cls, attrs: dict[str, Any]) -> "ContainerInspection":
        host_config = attrs.get("HostConfig") or {}
        net_settings = attrs.get("NetworkSettings") or {}
        networks = {
            name: (cfg or {}).get("IPAddress") or ""
            for name, cfg in (net_settings.get("Networks") or {}).items()
        }
        return cls(
            id=attrs.get("Id", ""),
            name=(attrs.get("Name") or "").lstrip("/"),
            network_mode=host_config.get("NetworkMode") or "",
            networks=networks,
            port_bindings=_host_ports(host_config.get("PortBindings")),
            published_ports=_host_ports(net_settings.get("Ports")),
        )


def _host_ports(table: dict[str, Any] | None) -> dict[str, list[str]]:
    out: dict[str, list[str]] = {}
    for port, bindings in (table or {}).items():
        out[port] = [b.get("HostPort", "") for b in (bindings or []) if b.get("HostPort")]
    return out


@dataclass(frozen=True)
class FunnelSpec:
    container_port: int
    public_port: int
    protocol: str
    # Scheme used to reach the backend ("http", "https", "tcp", ...).
    target_protocol: str
    dest_ip: str
    dest_port: int


@dataclass(frozen=True)
class DesiredService:
    """One exposure intent, rebuilt from container labels on every pass."""

    container_id: str
    container_name: str
    service_name: str
    backend_protocol: str
    service_protocol: str
    service_port: int
    dest_ip: str
    dest_port: int
    tags: tuple[str, ...] = ()
    funnel: FunnelSpec | None = None
