from __future__ import annotations

import logging
import socket

from .errors import NetworkNotFound, NoAddress, NoNetworkAttachment, PortNotPublished
from .models import ContainerInspection

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"
DEFAULT_NETWORK = "bridge"


def check_reachability(ip: str, port: int, timeout_s: float = 1.0) -> bool:
    """Quick TCP dial, for diagnostics only."""
    try:
        with socket.create_connection((ip, port), timeout=timeout_s):
            return True
    except OSError:
        return False


def select_network(inspection: ContainerInspection, requested: str | None) -> tuple[str, str]:
    """Pick (network_name, ip) for direct mode.

    An explicit name matches exactly, then by "_<name>" suffix so compose
    project prefixes ("myproject_backend") still match. Without a request,
    "bridge" is preferred, then the first network holding an address.
    """
    networks = inspection.networks
    name = inspection.name

    if requested:
        if requested in networks:
            ip = networks[requested]
            if not ip:
                raise NoAddress(f"container '{name}' has no IP address on network '{requested}'")
            return requested, ip

        for net_name, ip in networks.items():
            if net_name.endswith("_" + requested):
                if not ip:
                    raise NoAddress(f"container '{name}' has no IP address on network '{net_name}'")
                logger.debug(
                    "Matched network %s for requested %s on %s (compose prefix)", net_name, requested, name
                )
                return net_name, ip

        available = sorted(networks)
        raise NetworkNotFound(
            f"container '{name}' is not connected to network '{requested}' (available: {available})",
            available=available,
        )

    if networks.get(DEFAULT_NETWORK):
        return DEFAULT_NETWORK, networks[DEFAULT_NETWORK]

    for net_name, ip in networks.items():
        if ip:
            logger.debug("Using first available network %s (%s) for %s", net_name, ip, name)
            return net_name, ip

    available = sorted(networks)
    raise NetworkNotFound(
        f"container '{name}' has no IP address on any network (available: {available})",
        available=available,
    )


def published_host_port(inspection: ContainerInspection, container_port: int) -> str | None:
    key = f"{container_port}/tcp"
    bindings = inspection.port_bindings.get(key) or []
    if bindings:
        return bindings[0]
    bindings = inspection.published_ports.get(key) or []
    if bindings:
        return bindings[0]
    return None


def available_published_ports(inspection: ContainerInspection) -> list[str]:
    ports = {p for p, b in inspection.port_bindings.items() if b}
    ports.update(p for p, b in inspection.published_ports.items() if b)
    return sorted(ports)


def resolve(
    inspection: ContainerInspection,
    container_port: int,
    direct: bool = True,
    network: str | None = None,
    probe: bool = True,
) -> tuple[str, int]:
    """Return the (address, port) the mesh must proxy to for a container port.

    Exactly one strategy applies: host networking passes the port through on
    loopback, direct mode targets the container's private address, and with
    direct mode off the published host port on loopback is used.
    """
    name = inspection.name

    if inspection.is_host_network:
        logger.info("Container %s uses host networking, port %s is reachable on %s", name, container_port, LOOPBACK)
        return LOOPBACK, container_port

    if direct:
        if inspection.is_no_network:
            raise NoNetworkAttachment(f"container '{name}' uses network_mode: none, cannot use direct mode")
        net_name, ip = select_network(inspection, network)
        if probe and not check_reachability(ip, container_port):
            logger.debug("Container %s not yet reachable at %s:%s (may still be starting)", name, ip, container_port)
        logger.info("Proxying %s directly to %s:%s on network %s", name, ip, container_port, net_name)
        return ip, container_port

    host_port = published_host_port(inspection, container_port)
    if host_port is None:
        available = available_published_ports(inspection)
        raise PortNotPublished(
            f"container port {container_port} of '{name}' is not published to the host (direct mode disabled). "
            f"Publish it (ports: [\"{container_port}:{container_port}\"]) or remove the direct=false label. "
            f"Published ports: {available}",
            available_ports=available,
        )
    logger.info("Direct mode disabled for %s, using published port %s:%s", name, LOOPBACK, host_port)
    return LOOPBACK, int(host_port)
