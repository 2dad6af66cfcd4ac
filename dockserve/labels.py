"""Container labels -> DesiredService.

Everything here is pure apart from the diagnostic logging and the optional
reachability probe inside the resolver; inspection data is handed in.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Mapping

from . import network
from .errors import (
    InvalidFunnelPort,
    InvalidPort,
    InvalidProtocol,
    InvalidServiceName,
    MissingRequiredField,
)
from .models import (
    BACKEND_PROTOCOLS,
    FUNNEL_PROTOCOLS,
    SERVICE_PREFIX,
    SERVICE_PROTOCOLS,
    ContainerInspection,
    DesiredService,
    FunnelSpec,
    is_tcp_protocol,
    short_id,
)

logger = logging.getLogger(__name__)

LABEL_PREFIX = "dockserve"

LABEL_ENABLE = f"{LABEL_PREFIX}.service.enable"
LABEL_SERVICE = f"{LABEL_PREFIX}.service.name"
LABEL_TARGET_PORT = f"{LABEL_PREFIX}.service.target-port"
LABEL_TARGET_PROTOCOL = f"{LABEL_PREFIX}.service.target-protocol"
LABEL_PORT = f"{LABEL_PREFIX}.service.port"
LABEL_SERVICE_PROTOCOL = f"{LABEL_PREFIX}.service.protocol"
LABEL_TAGS = f"{LABEL_PREFIX}.service.tags"
LABEL_DIRECT = f"{LABEL_PREFIX}.service.direct"
LABEL_NETWORK = f"{LABEL_PREFIX}.service.network"
LABEL_FUNNEL_ENABLE = f"{LABEL_PREFIX}.funnel.enable"
LABEL_FUNNEL_TARGET_PORT = f"{LABEL_PREFIX}.funnel.target-port"
LABEL_FUNNEL_PROTOCOL = f"{LABEL_PREFIX}.funnel.protocol"
LABEL_FUNNEL_PORT = f"{LABEL_PREFIX}.funnel.port"

FUNNEL_ALLOWED_PORTS = frozenset({443, 8443, 10000})

SERVICE_NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9\-]{0,61}[a-z0-9])?$")
TAG_PREFIX = "tag:"


class EndpointRule(str, Enum):
    """Which branch of the service port/protocol defaulting applied."""

    TCP_BACKEND = "tcp_backend"
    HTTPS_BACKEND = "https_backend"
    HTTP_DEFAULT = "http_default"
    PORT_FROM_PROTOCOL = "port_from_protocol"
    PROTOCOL_FROM_BACKEND = "protocol_from_backend"
    PROTOCOL_FROM_PORT = "protocol_from_port"
    EXPLICIT = "explicit"


@dataclass(frozen=True)
class ServiceEndpoint:
    port: int
    protocol: str
    rule: EndpointRule


def parse_port(label: str, raw: str) -> int:
    try:
        port = int(raw.strip())
    except ValueError:
        raise InvalidPort(f"invalid port for {label}: {raw!r}") from None
    if not 1 <= port <= 65535:
        raise InvalidPort(f"port out of range for {label}: {port}")
    return port


def service_name_for(raw: str) -> str:
    """Normalise a label value to the owned "svc:<name>" form."""
    name = raw.strip()
    if name.startswith(SERVICE_PREFIX):
        name = name[len(SERVICE_PREFIX):]
    if not SERVICE_NAME_RE.match(name):
        raise InvalidServiceName(
            f"invalid service name {raw!r}: use lowercase letters, digits and hyphens (max 63 chars)"
        )
    return SERVICE_PREFIX + name


def default_backend_protocol(backend_port: int) -> str:
    return "https" if backend_port == 443 else "http"


def default_port_for_protocol(protocol: str) -> int:
    return 443 if protocol == "https" else 80


def default_protocol_for_port(port: int) -> str:
    return "https" if port == 443 else "http"


def default_service_endpoint(
    backend_protocol: str,
    backend_port: int,
    service_port: int | None,
    service_protocol: str | None,
) -> ServiceEndpoint:
    """Fill in whichever of service port / protocol is unset.

    Backend protocol is consulted before the port so that a TCP-class
    backend never silently becomes an HTTP service.
    """
    if service_port is None and service_protocol is None:
        if is_tcp_protocol(backend_protocol):
            return ServiceEndpoint(80, backend_protocol, EndpointRule.TCP_BACKEND)
        # Exception to the http:80 fallback: an https backend on 443 is exposed as https:443.
        if backend_protocol == "https" and backend_port == 443:
            return ServiceEndpoint(443, "https", EndpointRule.HTTPS_BACKEND)
        return ServiceEndpoint(80, "http", EndpointRule.HTTP_DEFAULT)

    if service_port is None:
        return ServiceEndpoint(
            default_port_for_protocol(service_protocol), service_protocol, EndpointRule.PORT_FROM_PROTOCOL
        )

    if service_protocol is None:
        if is_tcp_protocol(backend_protocol):
            return ServiceEndpoint(service_port, backend_protocol, EndpointRule.PROTOCOL_FROM_BACKEND)
        return ServiceEndpoint(service_port, default_protocol_for_port(service_port), EndpointRule.PROTOCOL_FROM_PORT)

    return ServiceEndpoint(service_port, service_protocol, EndpointRule.EXPLICIT)


def parse_tags(raw: str | None, default_tags: tuple[str, ...], container_name: str = "") -> tuple[str, ...]:
    if not raw:
        return tuple(default_tags)
    tags = []
    for part in raw.split(","):
        tag = part.strip()
        if not tag:
            continue
        if not tag.startswith(TAG_PREFIX):
            logger.warning("Tag %r on %s should start with %r", tag, container_name or "container", TAG_PREFIX)
        tags.append(tag)
    return tuple(tags)


def _label(labels: Mapping[str, str], key: str) -> str | None:
    value = labels.get(key)
    if value is None:
        return None
    value = value.strip()
    return value or None


def is_enabled(labels: Mapping[str, str]) -> bool:
    return labels.get(LABEL_ENABLE) == "true"


def interpret(
    labels: Mapping[str, str],
    inspection: ContainerInspection,
    default_tags: tuple[str, ...] = (),
    probe: bool = True,
) -> DesiredService | None:
    """Build the DesiredService for one container.

    Returns None when the container does not opt in. Raises a LabelError
    or ResolutionError when it opts in with an unusable configuration.
    """
    if not is_enabled(labels):
        return None

    cid = short_id(inspection.id)
    cname = inspection.name

    raw_name = _label(labels, LABEL_SERVICE)
    if raw_name is None:
        raise MissingRequiredField(LABEL_SERVICE)
    service_name = service_name_for(raw_name)

    raw_target = _label(labels, LABEL_TARGET_PORT)
    if raw_target is None:
        raise MissingRequiredField(LABEL_TARGET_PORT)
    target_port = parse_port(LABEL_TARGET_PORT, raw_target)

    backend_protocol = _label(labels, LABEL_TARGET_PROTOCOL)
    if backend_protocol is None:
        backend_protocol = default_backend_protocol(target_port)
        logger.debug("Container %s: backend protocol defaulted to %s from port %s", cid, backend_protocol, target_port)
    if backend_protocol not in BACKEND_PROTOCOLS:
        raise InvalidProtocol(
            f"invalid protocol: {backend_protocol} (must be one of {', '.join(sorted(BACKEND_PROTOCOLS))})"
        )

    raw_port = _label(labels, LABEL_PORT)
    endpoint = default_service_endpoint(
        backend_protocol,
        target_port,
        parse_port(LABEL_PORT, raw_port) if raw_port is not None else None,
        _label(labels, LABEL_SERVICE_PROTOCOL),
    )
    if endpoint.rule is not EndpointRule.EXPLICIT:
        logger.debug(
            "Container %s: service endpoint %s:%s (%s)", cid, endpoint.protocol, endpoint.port, endpoint.rule.value
        )
    if endpoint.protocol not in SERVICE_PROTOCOLS:
        raise InvalidProtocol(
            f"invalid service-protocol: {endpoint.protocol} (must be one of {', '.join(sorted(SERVICE_PROTOCOLS))})"
        )

    direct = labels.get(LABEL_DIRECT) != "false"
    requested_network = _label(labels, LABEL_NETWORK)
    dest_ip, dest_port = network.resolve(inspection, target_port, direct, requested_network, probe=probe)

    tags = parse_tags(labels.get(LABEL_TAGS), default_tags, cname)

    funnel = None
    if labels.get(LABEL_FUNNEL_ENABLE) == "true":
        funnel = _interpret_funnel(
            labels, inspection, backend_protocol, direct, requested_network, probe, (target_port, dest_ip, dest_port)
        )

    return DesiredService(
        container_id=cid,
        container_name=cname,
        service_name=service_name,
        backend_protocol=backend_protocol,
        service_protocol=endpoint.protocol,
        service_port=endpoint.port,
        dest_ip=dest_ip,
        dest_port=dest_port,
        tags=tags,
        funnel=funnel,
    )


def _interpret_funnel(
    labels: Mapping[str, str],
    inspection: ContainerInspection,
    backend_protocol: str,
    direct: bool,
    requested_network: str | None,
    probe: bool,
    main_backend: tuple[int, str, int],
) -> FunnelSpec:
    raw_target = _label(labels, LABEL_FUNNEL_TARGET_PORT)
    if raw_target is None:
        raise MissingRequiredField(LABEL_FUNNEL_TARGET_PORT, "funnel enabled, container port required")
    container_port = parse_port(LABEL_FUNNEL_TARGET_PORT, raw_target)

    protocol = _label(labels, LABEL_FUNNEL_PROTOCOL) or "https"

    raw_public = _label(labels, LABEL_FUNNEL_PORT)
    public_port = parse_port(LABEL_FUNNEL_PORT, raw_public) if raw_public is not None else 443

    if protocol in ("https", "http") and public_port not in FUNNEL_ALLOWED_PORTS:
        raise InvalidFunnelPort(
            f"invalid funnel port: {public_port} for {protocol} (must be one of {sorted(FUNNEL_ALLOWED_PORTS)})"
        )
    if protocol not in FUNNEL_PROTOCOLS:
        raise InvalidProtocol(
            f"invalid funnel protocol: {protocol} (must be one of {', '.join(sorted(FUNNEL_PROTOCOLS))})"
        )

    if is_tcp_protocol(protocol):
        target_protocol = "tcp"
    elif backend_protocol in ("http", "https", "https+insecure"):
        target_protocol = backend_protocol
    else:
        target_protocol = "http"

    if container_port == main_backend[0]:
        _, dest_ip, dest_port = main_backend
    else:
        dest_ip, dest_port = network.resolve(inspection, container_port, direct, requested_network, probe=probe)
    logger.info(
        "Funnel enabled for %s: public %s:%s -> %s:%s", inspection.name, protocol, public_port, dest_ip, dest_port
    )
    return FunnelSpec(
        container_port=container_port,
        public_port=public_port,
        protocol=protocol,
        target_protocol=target_protocol,
        dest_ip=dest_ip,
        dest_port=dest_port,
    )
