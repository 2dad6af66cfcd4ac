from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from .mesh import funnel_target, service_target
from .models import DesiredService
from .status_models import FunnelStatus, ManagedServiceRecord, is_managed_service


@dataclass(frozen=True)
class ReconcileDiff:
    to_create: frozenset[str] = frozenset()
    to_update: frozenset[str] = frozenset()
    to_delete: frozenset[str] = frozenset()
    # Subset of to_update whose port or protocol moved; the old binding has
    # to be cleared before the new one can be set.
    recreate: frozenset[str] = frozenset()

    @property
    def empty(self) -> bool:
        return not (self.to_create or self.to_update or self.to_delete)

    def counts(self) -> dict[str, int]:
        return {"create": len(self.to_create), "update": len(self.to_update), "delete": len(self.to_delete)}


def shape_changed(svc: DesiredService, record: ManagedServiceRecord) -> bool:
    return (
        record.port != svc.service_port
        or record.ports != (svc.service_port,)
        or record.protocol != svc.service_protocol
    )


def differs(svc: DesiredService, record: ManagedServiceRecord) -> bool:
    if shape_changed(svc, record):
        return True
    if record.target != service_target(svc):
        return True
    if record.tags is not None and sorted(record.tags) != sorted(svc.tags):
        return True
    return False


def compute_diff(
    desired: Mapping[str, DesiredService],
    actual: Mapping[str, ManagedServiceRecord],
) -> ReconcileDiff:
    owned = {name: rec for name, rec in actual.items() if is_managed_service(name)}

    create, update, recreate = set(), set(), set()
    for name, svc in desired.items():
        record = owned.get(name)
        if record is None:
            create.add(name)
        elif differs(svc, record):
            update.add(name)
            if shape_changed(svc, record):
                recreate.add(name)

    delete = {name for name in owned if name not in desired}
    return ReconcileDiff(
        to_create=frozenset(create),
        to_update=frozenset(update),
        to_delete=frozenset(delete),
        recreate=frozenset(recreate),
    )


@dataclass(frozen=True)
class FunnelDiff:
    to_set: dict[int, DesiredService] = field(default_factory=dict)
    to_clear: dict[int, str] = field(default_factory=dict)
    # Already correct but missing from the ledger (e.g. after a restart).
    to_adopt: dict[int, str] = field(default_factory=dict)
    # Wanted ports already holding a funnel this process did not configure.
    foreign: dict[int, DesiredService] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return not (self.to_set or self.to_clear)


def compute_funnel_diff(
    desired: Mapping[str, DesiredService],
    status: FunnelStatus,
    managed: Mapping[int, str],
) -> FunnelDiff:
    """Funnels are keyed by public port.

    Only ports in `managed` (funnels this process configured) are ever
    cleared or overwritten; unknown funnel entries are left alone.
    """
    wanted: dict[int, DesiredService] = {}
    for svc in desired.values():
        if svc.funnel is not None:
            wanted.setdefault(svc.funnel.public_port, svc)

    to_set, to_adopt, foreign = {}, {}, {}
    for port, svc in wanted.items():
        record = status.record(port)
        if record is not None and record.protocol == svc.funnel.protocol and record.target == funnel_target(svc):
            if port not in managed:
                to_adopt[port] = svc.funnel.protocol
        elif record is not None and (record.protocol or record.target) and port not in managed:
            foreign[port] = svc
        else:
            to_set[port] = svc

    to_clear = {port: proto for port, proto in managed.items() if port not in wanted}
    return FunnelDiff(to_set=to_set, to_clear=to_clear, to_adopt=to_adopt, foreign=foreign)
