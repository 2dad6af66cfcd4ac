"""In-memory stand-ins for the docker runtime and the tailscale CLI."""

from __future__ import annotations

import json
import subprocess

from dockserve.docker_ops import ContainerRef
from dockserve.errors import ContainerGone, RuntimeUnavailable
from dockserve.labels import LABEL_ENABLE
from dockserve.models import ContainerInspection

HOST = "node.tail1234.ts.net"


def make_container(
    name,
    labels,
    ip="172.17.0.5",
    network_mode="bridge",
    networks=None,
    port_bindings=None,
    published_ports=None,
    cid=None,
):
    cid = cid or (name.encode().hex() + "0" * 64)[:64]
    if networks is None:
        networks = {"bridge": ip} if network_mode not in ("host", "none") else {}
    ref = ContainerRef(id=cid, name=name, labels=dict(labels))
    inspection = ContainerInspection(
        id=cid,
        name=name,
        network_mode=network_mode,
        networks=networks,
        port_bindings=port_bindings or {},
        published_ports=published_ports or {},
    )
    return ref, inspection


def web_labels(service, port, **extra):
    labels = {
        LABEL_ENABLE: "true",
        "dockserve.service.name": service,
        "dockserve.service.target-port": str(port),
    }
    labels.update(extra)
    return labels


class FakeDocker:
    def __init__(self, containers=()):
        self.containers = {ref.id: (ref, insp) for ref, insp in containers}
        self.fail_list = False
        self.on_list = None

    def add(self, container):
        ref, insp = container
        self.containers[ref.id] = (ref, insp)

    def remove(self, name):
        for cid, (ref, _) in list(self.containers.items()):
            if ref.name == name:
                del self.containers[cid]

    def list_enabled_containers(self):
        if self.on_list:
            self.on_list()
        if self.fail_list:
            raise RuntimeUnavailable("failed to list containers: connection refused")
        return [ref for ref, _ in self.containers.values() if ref.labels.get(LABEL_ENABLE) == "true"]

    def inspect(self, container_id):
        if container_id not in self.containers:
            raise ContainerGone(f"container {container_id[:12]} no longer exists")
        return self.containers[container_id][1]


def _tcp_and_web(protocol, port, target, host):
    if protocol in ("http", "https"):
        tcp = {str(port): {"HTTPS": True} if protocol == "https" else {"HTTP": True}}
        web = {f"{host}:{port}": {"Handlers": {"/": {"Proxy": target}}}}
        return tcp, web
    entry = {"TCPForward": target.split("://", 1)[1]}
    if protocol == "tls-terminated-tcp":
        entry["TerminateTLS"] = host
    return {str(port): entry}, {}


class FakeTailscale:
    """Scripted `tailscale` binary for TailscaleCLI(runner=...).

    Keeps serve/funnel state so successive passes observe earlier writes.
    """

    def __init__(self):
        self.services = {}  # name -> (protocol, port, target)
        self.funnels = {}  # port -> (protocol, target)
        self.calls = []
        self.fail = {}  # service name or "funnel:<port>" -> stderr
        self.preamble = ""
        self.status_output = None

    @property
    def mutations(self):
        return [c for c in self.calls if "status" not in c]

    def __call__(self, cmd, capture_output=True, text=True, timeout=None):
        args = list(cmd[1:])
        if args[:1] == ["--socket"]:
            args = args[2:]
        self.calls.append(tuple(args))
        return self._dispatch(cmd, args)

    def _ok(self, cmd, stdout=""):
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")

    def _err(self, cmd, stderr):
        return subprocess.CompletedProcess(cmd, 1, stdout="", stderr=stderr)

    def _dispatch(self, cmd, args):
        if args == ["serve", "status", "--json"]:
            if self.status_output is not None:
                return self._ok(cmd, self.status_output)
            services = {}
            for name, (protocol, port, target) in self.services.items():
                tcp, web = _tcp_and_web(protocol, port, target, name)
                services[name] = {"TCP": tcp, "Web": web}
            return self._ok(cmd, self.preamble + json.dumps({"Services": services}))

        if args == ["funnel", "status", "--json"]:
            tcp, web, allow = {}, {}, {}
            for port, (protocol, target) in self.funnels.items():
                t, w = _tcp_and_web(protocol, port, target, HOST)
                tcp.update(t)
                web.update(w)
                allow[f"{HOST}:{port}"] = True
            return self._ok(cmd, self.preamble + json.dumps({"TCP": tcp, "Web": web, "AllowFunnel": allow}))

        if args[:2] == ["serve", "clear"]:
            name = args[2]
            if name not in self.services:
                return self._err(cmd, f"error: service {name} not found")
            del self.services[name]
            return self._ok(cmd)

        if args[:2] == ["serve", "--bg"]:
            name = args[2].split("=", 1)[1]
            flag, port = args[3].lstrip("-").split("=", 1)
            if name in self.fail:
                return self._err(cmd, self.fail[name])
            current = self.services.get(name)
            if current and current[1] == int(port) and current[0] != flag:
                return self._err(cmd, f"error: want to serve {flag} but port is already serving {current[0]}")
            self.services[name] = (flag, int(port), args[4])
            return self._ok(cmd)

        if args[:1] == ["funnel"]:
            if args[1] == "--bg":
                flag, port = args[2].lstrip("-").split("=", 1)
                if f"funnel:{port}" in self.fail:
                    return self._err(cmd, self.fail[f"funnel:{port}"])
                self.funnels[int(port)] = (flag, args[3])
                return self._ok(cmd)
            flag, port = args[1].lstrip("-").split("=", 1)
            if int(port) not in self.funnels:
                return self._err(cmd, "error: no funnel configured on this port")
            del self.funnels[int(port)]
            return self._ok(cmd)

        return self._err(cmd, f"unexpected command: {args}")
