from __future__ import annotations

from enum import Enum


class DockserveError(Exception):
    pass


# --- label validation ---------------------------------------------------


class LabelError(DockserveError):
    pass


class MissingRequiredField(LabelError):
    def __init__(self, label: str, detail: str = ""):
        self.label = label
        msg = f"missing required label: {label}"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)


class InvalidProtocol(LabelError):
    pass


class InvalidFunnelPort(LabelError):
    pass


class InvalidPort(LabelError):
    pass


class InvalidServiceName(LabelError):
    pass


# --- destination resolution ---------------------------------------------


class ResolutionError(DockserveError):
    pass


class NoNetworkAttachment(ResolutionError):
    pass


class NetworkNotFound(ResolutionError):
    def __init__(self, message: str, available: list[str] | None = None):
        self.available = list(available or [])
        super().__init__(message)


class NoAddress(ResolutionError):
    pass


class PortNotPublished(ResolutionError):
    def __init__(self, message: str, available_ports: list[str] | None = None):
        self.available_ports = list(available_ports or [])
        super().__init__(message)


# --- mesh CLI -----------------------------------------------------------


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    CONFIG_CONFLICT = "config_conflict"
    UNTAGGED_NODE = "untagged_node"
    UNCLASSIFIED = "unclassified"


class MeshError(DockserveError):
    pass


class MeshCommandError(MeshError):
    """A tailscale CLI invocation exited non-zero."""

    def __init__(self, kind: ErrorKind, command: list[str], output: str):
        self.kind = kind
        self.command = list(command)
        self.output = output.strip()
        super().__init__(f"{' '.join(self.command)}: {self.output or 'exit status non-zero'}")


class MeshOutputError(MeshError):
    """Status output did not contain a JSON payload."""


class MeshUnavailable(MeshError):
    pass


class NotOwned(MeshError):
    pass


# --- other collaborators ------------------------------------------------


class RuntimeUnavailable(DockserveError):
    pass


class ContainerGone(DockserveError):
    pass


class ControlPlaneError(DockserveError):
    pass


def hint_for(err: Exception) -> str | None:
    """Operator hint for mesh failures that need manual action."""
    if not isinstance(err, MeshCommandError):
        return None
    if err.kind is ErrorKind.CONFIG_CONFLICT:
        return "another serve config already uses this port with a different protocol; remove the conflicting manual config (tailscale serve reset) or pick another service port"
    if err.kind is ErrorKind.UNTAGGED_NODE:
        return "service hosts must be tagged; tag this node (e.g. tailscale up --advertise-tags=tag:server) and approve it in the admin console"
    return None
