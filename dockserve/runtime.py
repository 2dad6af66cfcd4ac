from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from threading import Lock
from typing import Any

from .db import utc_now


class ReconcilerState(str, Enum):
    IDLE = "idle"
    BUILDING_DESIRED = "building-desired"
    FETCHING_ACTUAL = "fetching-actual"
    DIFFING = "diffing"
    APPLYING = "applying"
    DRAINING = "draining"
    CLEANUP = "cleanup"
    STOPPED = "stopped"


@dataclass
class PassResult:
    trigger: str
    started_at: str = field(default_factory=utc_now)
    finished_at: str | None = None
    ok: bool = True
    cancelled: bool = False
    error: str | None = None
    desired: int = 0
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    # service name (or container name when no service could be built) -> message
    failures: dict[str, str] = field(default_factory=dict)

    def finish(self) -> "PassResult":
        self.finished_at = utc_now()
        return self

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RuntimeState:
    """In-memory view of the reconciler for the status API.

    Nothing here is needed to converge; a restart rebuilds everything from
    the containers and the mesh. The funnel ledger is the one exception:
    funnel entries carry no ownership marker, so only ports configured by
    this process are ever cleared.
    """

    def __init__(self) -> None:
        self.lock = Lock()
        self.state = ReconcilerState.IDLE
        self.passes = 0
        self.last_pass: PassResult | None = None
        self.funnels: dict[int, str] = {}  # public port -> protocol

    def set_state(self, state: ReconcilerState) -> None:
        with self.lock:
            self.state = state

    def get_state(self) -> ReconcilerState:
        with self.lock:
            return self.state

    def record_pass(self, result: PassResult) -> None:
        with self.lock:
            self.passes += 1
            self.last_pass = result

    def snapshot(self) -> dict[str, Any]:
        with self.lock:
            return {
                "state": self.state.value,
                "passes": self.passes,
                "last_pass": self.last_pass.to_dict() if self.last_pass else None,
                "funnels": dict(self.funnels),
            }

    def add_funnel(self, port: int, protocol: str) -> None:
        with self.lock:
            self.funnels[port] = protocol

    def remove_funnel(self, port: int) -> None:
        with self.lock:
            self.funnels.pop(port, None)

    def managed_funnels(self) -> dict[int, str]:
        with self.lock:
            return dict(self.funnels)
