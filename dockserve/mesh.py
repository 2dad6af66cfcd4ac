"""Adapter around the tailscale CLI.

Reads come back as typed snapshots (see status_models); writes take a
DesiredService. Failures are classified from the CLI's output text.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable

from pydantic import ValidationError

from .errors import ErrorKind, MeshCommandError, MeshError, MeshOutputError, MeshUnavailable, NotOwned
from .models import DesiredService, is_tcp_protocol
from .status_models import FunnelStatus, ManagedServiceRecord, ServeStatus, is_managed_service

logger = logging.getLogger(__name__)

# Evaluated top to bottom; first match wins.
ERROR_RULES: list[tuple[str, ErrorKind]] = [
    ("service hosts must be tagged nodes", ErrorKind.UNTAGGED_NODE),
    ("port is already serving", ErrorKind.CONFIG_CONFLICT),
    ("already serving", ErrorKind.CONFIG_CONFLICT),
    ("want to serve", ErrorKind.CONFIG_CONFLICT),
    ("not found", ErrorKind.NOT_FOUND),
    ("does not exist", ErrorKind.NOT_FOUND),
    ("no services", ErrorKind.NOT_FOUND),
    ("nothing to show", ErrorKind.NOT_FOUND),
    ("no funnel", ErrorKind.NOT_FOUND),
]

_PROTOCOL_FLAGS = {
    "http": "--http",
    "https": "--https",
    "tcp": "--tcp",
    "tls-terminated-tcp": "--tls-terminated-tcp",
}


def classify_error(output: str) -> ErrorKind:
    text = output.lower()
    for pattern, kind in ERROR_RULES:
        if pattern in text:
            return kind
    return ErrorKind.UNCLASSIFIED


def strip_warnings(output: str) -> str:
    """Drop anything the CLI printed before the JSON payload."""
    idx = output.find("{")
    if idx <= 0:
        return output
    return output[idx:]


def build_destination(protocol: str, address: str, port: int | str) -> str:
    return f"{protocol}://{address}:{port}"


def service_target(svc: DesiredService) -> str:
    """Destination handed to the CLI (and compared against status)."""
    if is_tcp_protocol(svc.service_protocol) or is_tcp_protocol(svc.backend_protocol):
        return build_destination("tcp", svc.dest_ip, svc.dest_port)
    return build_destination(svc.backend_protocol, svc.dest_ip, svc.dest_port)


def funnel_target(svc: DesiredService) -> str:
    f = svc.funnel
    if f is None:
        return ""
    return build_destination(f.target_protocol, f.dest_ip, f.dest_port)


def _json_payload(output: str, command: list[str]) -> str:
    payload = strip_warnings(output)
    if "{" not in payload:
        raise MeshOutputError(f"{' '.join(command)}: output is not JSON: {output.strip()[:200]!r}")
    return payload


@dataclass
class CleanupReport:
    deleted: list[str] = field(default_factory=list)
    cleared_funnels: list[int] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


class TailscaleCLI:
    """Runs `tailscale` against the local daemon socket.

    Not thread-safe by intent: the reconciler serialises all calls.
    """

    def __init__(
        self,
        binary: str = "tailscale",
        socket: str | None = None,
        timeout_s: float = 30.0,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.binary = binary
        self.socket = socket
        self.timeout_s = timeout_s
        self._runner = runner

    def check_available(self) -> None:
        if shutil.which(self.binary) is None:
            raise MeshUnavailable(f"tailscale binary not found: {self.binary}")

    def _command(self, args: Iterable[str]) -> list[str]:
        cmd = [self.binary]
        if self.socket:
            cmd += ["--socket", self.socket]
        return cmd + list(args)

    def run(self, *args: str) -> str:
        cmd = self._command(args)
        logger.debug("Running %s", " ".join(cmd))
        try:
            result = self._runner(cmd, capture_output=True, text=True, timeout=self.timeout_s)
        except FileNotFoundError as e:
            raise MeshUnavailable(f"tailscale binary not found: {self.binary}") from e
        except subprocess.TimeoutExpired as e:
            raise MeshUnavailable(f"{' '.join(cmd)} timed out after {self.timeout_s}s") from e
        if result.returncode != 0:
            output = "\n".join(s for s in (result.stderr, result.stdout) if s)
            raise MeshCommandError(classify_error(output), cmd, output)
        return result.stdout or ""

    # --- read side ------------------------------------------------------

    def service_status(self) -> ServeStatus:
        args = ("serve", "status", "--json")
        try:
            out = self.run(*args)
        except MeshCommandError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                return ServeStatus()
            raise
        try:
            return ServeStatus.model_validate_json(_json_payload(out, self._command(args)))
        except ValidationError as e:
            raise MeshOutputError(f"unexpected serve status payload: {e}") from e

    def funnel_status(self) -> FunnelStatus:
        args = ("funnel", "status", "--json")
        try:
            out = self.run(*args)
        except MeshCommandError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                return FunnelStatus()
            raise
        try:
            return FunnelStatus.model_validate_json(_json_payload(out, self._command(args)))
        except ValidationError as e:
            raise MeshOutputError(f"unexpected funnel status payload: {e}") from e

    def managed_services(self) -> dict[str, ManagedServiceRecord]:
        return self.service_status().managed()

    # --- write side -----------------------------------------------------

    def set_service(self, svc: DesiredService) -> None:
        flag = _PROTOCOL_FLAGS[svc.service_protocol]
        target = service_target(svc)
        self.run("serve", "--bg", f"--service={svc.service_name}", f"{flag}={svc.service_port}", target)
        logger.info("Configured %s %s:%s -> %s", svc.service_name, svc.service_protocol, svc.service_port, target)

    def delete_service(self, name: str) -> bool:
        """Remove an owned service. Returns False if it was already gone."""
        if not is_managed_service(name):
            raise NotOwned(f"refusing to touch unmanaged service {name!r}")
        try:
            self.run("serve", "clear", name)
        except MeshCommandError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                logger.debug("Service %s already absent", name)
                return False
            raise
        return True

    def set_funnel(self, svc: DesiredService) -> None:
        f = svc.funnel
        if f is None:
            raise ValueError(f"{svc.service_name} has no funnel configuration")
        flag = _PROTOCOL_FLAGS[f.protocol]
        self.run("funnel", "--bg", f"{flag}={f.public_port}", funnel_target(svc))

    def clear_funnel(self, port: int, protocol: str = "https") -> bool:
        flag = _PROTOCOL_FLAGS.get(protocol, "--https")
        try:
            self.run("funnel", f"{flag}={port}", "off")
        except MeshCommandError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                return False
            raise
        return True

    def cleanup_all_services(
        self,
        funnels: dict[int, str] | None = None,
        deadline: float | None = None,
    ) -> CleanupReport:
        """Delete every owned service (and the given funnel ports).

        Keeps going past individual failures. `deadline` is a
        time.monotonic() value after which remaining work is abandoned.
        """
        report = CleanupReport()

        def expired() -> bool:
            return deadline is not None and time.monotonic() >= deadline

        for port, protocol in sorted((funnels or {}).items()):
            if expired():
                report.errors[f"funnel:{port}"] = "cleanup deadline exceeded"
                continue
            try:
                self.clear_funnel(port, protocol)
                report.cleared_funnels.append(port)
            except MeshError as e:
                report.errors[f"funnel:{port}"] = str(e)

        try:
            names = sorted(self.managed_services())
        except MeshError as e:
            report.errors["status"] = str(e)
            return report

        for name in names:
            if expired():
                report.errors[name] = "cleanup deadline exceeded"
                continue
            try:
                self.delete_service(name)
                report.deleted.append(name)
            except MeshError as e:
                report.errors[name] = str(e)
        return report
