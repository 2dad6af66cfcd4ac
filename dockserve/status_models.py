"""Typed views of `tailscale serve status --json` / `funnel status --json`."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import SERVICE_PREFIX


def is_managed_service(name: str) -> bool:
    return name.startswith(SERVICE_PREFIX) and len(name) > len(SERVICE_PREFIX)


class _Snapshot(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def _null_as_empty(cls, v, info):
        # The CLI emits null for empty tables.
        field = cls.model_fields[info.field_name]
        if v is None and field.default_factory is dict:
            return {}
        return v


class TcpPortHandler(_Snapshot):
    http: bool = Field(False, alias="HTTP")
    https: bool = Field(False, alias="HTTPS")
    tcp_forward: str = Field("", alias="TCPForward")
    terminate_tls: str = Field("", alias="TerminateTLS")

    @property
    def protocol(self) -> str:
        if self.https:
            return "https"
        if self.http:
            return "http"
        if self.tcp_forward and self.terminate_tls:
            return "tls-terminated-tcp"
        return "tcp"


class HttpHandler(_Snapshot):
    proxy: str = Field("", alias="Proxy")
    path: str = Field("", alias="Path")
    text: str = Field("", alias="Text")


class WebServerConfig(_Snapshot):
    handlers: dict[str, HttpHandler] = Field(default_factory=dict, alias="Handlers")


class ServiceConfig(_Snapshot):
    tcp: dict[str, TcpPortHandler] = Field(default_factory=dict, alias="TCP")
    web: dict[str, WebServerConfig] = Field(default_factory=dict, alias="Web")

    def proxy_for_port(self, port: str) -> str:
        """Root handler proxy of the web server listening on `port`."""
        for host_port, cfg in self.web.items():
            if host_port.rsplit(":", 1)[-1] == port:
                handler = cfg.handlers.get("/")
                if handler and handler.proxy:
                    return handler.proxy
        return ""


class ServeStatus(_Snapshot):
    services: dict[str, ServiceConfig] = Field(default_factory=dict, alias="Services")
    tcp: dict[str, TcpPortHandler] = Field(default_factory=dict, alias="TCP")
    web: dict[str, WebServerConfig] = Field(default_factory=dict, alias="Web")
    allow_funnel: dict[str, bool] = Field(default_factory=dict, alias="AllowFunnel")

    def managed(self) -> dict[str, "ManagedServiceRecord"]:
        """Owned services only; anything without the reserved prefix is invisible."""
        return {
            name: ManagedServiceRecord.from_config(name, cfg)
            for name, cfg in self.services.items()
            if is_managed_service(name)
        }


class FunnelStatus(ServiceConfig):
    allow_funnel: dict[str, bool] = Field(default_factory=dict, alias="AllowFunnel")

    def funnel_ports(self) -> list[int]:
        ports = set()
        for host_port, allowed in self.allow_funnel.items():
            if not allowed:
                continue
            try:
                ports.add(int(host_port.rsplit(":", 1)[-1]))
            except ValueError:
                continue
        return sorted(ports)

    def record(self, port: int) -> "FunnelRecord | None":
        if port not in self.funnel_ports():
            return None
        handler = self.tcp.get(str(port))
        if handler is None:
            return FunnelRecord(port=port, protocol="", target="")
        return FunnelRecord(port=port, protocol=handler.protocol, target=_target_of(self, str(port), handler))


def _target_of(cfg: ServiceConfig, port: str, handler: TcpPortHandler) -> str:
    if handler.tcp_forward:
        return f"tcp://{handler.tcp_forward}"
    return cfg.proxy_for_port(port)


@dataclass(frozen=True)
class ManagedServiceRecord:
    """An owned service as the mesh reports it.

    `tags` is None when the tags are not observable (no control-plane API).
    """

    name: str
    port: int | None
    protocol: str
    target: str
    ports: tuple[int, ...] = ()
    tags: tuple[str, ...] | None = None

    @classmethod
    def from_config(cls, name: str, cfg: ServiceConfig) -> "ManagedServiceRecord":
        ports = sorted(int(p) for p in cfg.tcp if p.isdigit())
        if not ports:
            return cls(name=name, port=None, protocol="", target="")
        port = ports[0]
        handler = cfg.tcp[str(port)]
        return cls(
            name=name,
            port=port,
            protocol=handler.protocol,
            target=_target_of(cfg, str(port), handler),
            ports=tuple(ports),
        )


@dataclass(frozen=True)
class FunnelRecord:
    port: int
    protocol: str
    target: str
