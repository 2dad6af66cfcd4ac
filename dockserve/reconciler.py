from __future__ import annotations

import dataclasses
import queue
import time
from threading import Event, Thread
from typing import Callable

from . import db, labels
from .control_plane import ControlPlaneClient
from .diff import FunnelDiff, ReconcileDiff, compute_diff, compute_funnel_diff
from .docker_ops import DockerRuntime
from .errors import (
    ContainerGone,
    ControlPlaneError,
    ErrorKind,
    LabelError,
    MeshCommandError,
    MeshError,
    ResolutionError,
    RuntimeUnavailable,
    hint_for,
)
from .mesh import CleanupReport, TailscaleCLI, service_target
from .models import DesiredService
from .runtime import PassResult, ReconcilerState, RuntimeState
from .status_models import FunnelStatus, ManagedServiceRecord


# Upper bound on how long run() sleeps before re-checking the stop event.
STOP_POLL_S = 0.5
WATCHER_JOIN_S = 2.0


class PassCancelled(Exception):
    pass


class Reconciler:
    """Keeps the mesh's owned services in line with the labelled containers.

    One consumer thread runs every pass, so mesh mutations never overlap.
    Triggers (container events, the periodic timer, the API) land in a
    one-slot queue: while a pass is pending, further triggers are dropped.
    """

    def __init__(
        self,
        docker_runtime: DockerRuntime,
        mesh: TailscaleCLI,
        runtime: RuntimeState | None = None,
        interval_s: float = 60.0,
        default_tags: tuple[str, ...] = (),
        control_plane: ControlPlaneClient | None = None,
        probe: bool = True,
        cleanup_timeout_s: float = 30.0,
        watcher=None,
    ):
        self.docker = docker_runtime
        self.mesh = mesh
        self.runtime = runtime or RuntimeState()
        self.interval_s = max(0.1, float(interval_s))
        self.default_tags = tuple(default_tags)
        self.control_plane = control_plane if control_plane is not None and control_plane.enabled else None
        self.probe = probe
        self.cleanup_timeout_s = cleanup_timeout_s
        self.watcher = watcher
        self._queue: queue.Queue[str] = queue.Queue(maxsize=1)
        self._stop = Event()
        self._thr: Thread | None = None

    # --- triggering -----------------------------------------------------

    def trigger(self, reason: str) -> bool:
        """Request a pass. Returns False when one is already pending."""
        try:
            self._queue.put_nowait(reason)
            return True
        except queue.Full:
            return False

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._thr = Thread(target=self.run, name="reconciler", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        """Safe to call from a signal handler: only sets the stop event."""
        self._stop.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thr:
            self._thr.join(timeout)

    def run(self) -> CleanupReport:
        """Loop until stop(), then remove every owned service."""
        db.log_event("INFO", f"Reconciler started (interval {self.interval_s:g}s)")
        if self.watcher is not None:
            self.watcher.start()
        self.trigger("startup")

        next_periodic = time.monotonic() + self.interval_s
        while not self._stop.is_set():
            # Short waits so a stop request is noticed without touching the queue.
            wait_s = min(STOP_POLL_S, max(0.0, next_periodic - time.monotonic()))
            try:
                reason = self._queue.get(timeout=wait_s)
            except queue.Empty:
                if time.monotonic() < next_periodic:
                    continue
                reason = "periodic"
            if self._stop.is_set():
                break
            try:
                self.reconcile_once(reason)
            except Exception as e:
                db.log_event("ERROR", f"Reconcile pass crashed: {type(e).__name__}: {e}")
                self.runtime.set_state(ReconcilerState.IDLE)
            next_periodic = time.monotonic() + self.interval_s

        db.log_event("INFO", "Stop requested, shutting down")
        self.runtime.set_state(ReconcilerState.DRAINING)
        if self.watcher is not None:
            self.watcher.stop()
            self.watcher.join(WATCHER_JOIN_S)
        return self.cleanup()

    # --- one pass -------------------------------------------------------

    def _check_cancel(self) -> None:
        if self._stop.is_set():
            raise PassCancelled()

    def reconcile_once(self, trigger: str = "manual") -> PassResult:
        result = PassResult(trigger=trigger)
        try:
            self.runtime.set_state(ReconcilerState.BUILDING_DESIRED)
            desired = self.build_desired(result)
            result.desired = len(desired)
            self._check_cancel()

            self.runtime.set_state(ReconcilerState.FETCHING_ACTUAL)
            actual = self.fetch_actual()
            managed_funnels = self.runtime.managed_funnels()
            want_funnels = any(s.funnel is not None for s in desired.values())
            funnel_status = self.mesh.funnel_status() if (want_funnels or managed_funnels) else FunnelStatus()
            self._check_cancel()

            self.runtime.set_state(ReconcilerState.DIFFING)
            diff = compute_diff(desired, actual)
            funnel_diff = compute_funnel_diff(desired, funnel_status, managed_funnels)
            if not (diff.empty and funnel_diff.empty):
                db.log_event("DEBUG", f"Pass ({trigger}) diff: {diff.counts()}, funnels to set {sorted(funnel_diff.to_set)}")

            self.runtime.set_state(ReconcilerState.APPLYING)
            self.apply(diff, desired, result)
            self.apply_funnels(funnel_diff, funnel_status, managed_funnels, result)
        except PassCancelled:
            result.cancelled = True
            db.log_event("INFO", f"Pass ({trigger}) cancelled, shutting down")
        except (RuntimeUnavailable, MeshError) as e:
            result.ok = False
            result.error = str(e)
            db.log_event("ERROR", f"Pass ({trigger}) aborted: {e}")
        finally:
            result.finish()
            self.runtime.record_pass(result)
            if not self._stop.is_set():
                self.runtime.set_state(ReconcilerState.IDLE)

        if result.failures:
            result.ok = False
        if not result.cancelled and result.error is None:
            changes = len(result.created) + len(result.updated) + len(result.deleted)
            level = "INFO" if changes or result.failures else "DEBUG"
            db.log_event(
                level,
                f"Pass ({trigger}) done: {result.desired} desired, {len(result.created)} created, "
                f"{len(result.updated)} updated, {len(result.deleted)} deleted, {len(result.failures)} failed",
            )
        return result

    def build_desired(self, result: PassResult) -> dict[str, DesiredService]:
        desired: dict[str, DesiredService] = {}
        funnel_owner: dict[int, str] = {}

        for ref in self.docker.list_enabled_containers():
            self._check_cancel()
            try:
                inspection = self.docker.inspect(ref.id)
                svc = labels.interpret(ref.labels, inspection, self.default_tags, probe=self.probe)
            except (LabelError, ResolutionError, ContainerGone) as e:
                result.failures[ref.name] = str(e)
                db.log_event("WARN", f"Skipping container {ref.name}: {e}")
                continue
            if svc is None:
                continue

            if svc.service_name in desired:
                msg = f"duplicate service name {svc.service_name}, already claimed by {desired[svc.service_name].container_name}"
                result.failures[ref.name] = msg
                db.log_event("WARN", f"Skipping container {ref.name}: {msg}")
                continue

            if svc.funnel is not None:
                port = svc.funnel.public_port
                if port in funnel_owner:
                    db.log_event(
                        "WARN",
                        f"Funnel port {port} already claimed by {funnel_owner[port]}, funnel ignored",
                        service_name=svc.service_name,
                    )
                    svc = dataclasses.replace(svc, funnel=None)
                else:
                    funnel_owner[port] = svc.service_name

            desired[svc.service_name] = svc
        return desired

    def fetch_actual(self) -> dict[str, ManagedServiceRecord]:
        actual = self.mesh.managed_services()
        if self.control_plane is None:
            return actual
        try:
            tags = self.control_plane.service_tags()
        except ControlPlaneError as e:
            db.log_event("WARN", f"Could not read service tags, tag drift not checked this pass: {e}")
            return actual
        return {name: dataclasses.replace(rec, tags=tags.get(name, ())) for name, rec in actual.items()}

    # --- mutations ------------------------------------------------------

    def apply(self, diff: ReconcileDiff, desired: dict[str, DesiredService], result: PassResult) -> None:
        # Deletes first so freed ports can be reused by creates.
        for name in sorted(diff.to_delete):
            self._check_cancel()
            if self._attempt(name, result, lambda n=name: self.mesh.delete_service(n)):
                result.deleted.append(name)
                db.log_event("INFO", "Removed service (no longer desired)", service_name=name)

        for name in sorted(diff.to_create):
            self._check_cancel()
            svc = desired[name]
            if self._attempt(name, result, lambda s=svc: self._create(s)):
                result.created.append(name)
                db.log_event(
                    "INFO",
                    f"Created {svc.service_protocol}:{svc.service_port} -> {service_target(svc)} ({svc.container_name})",
                    service_name=name,
                )

        for name in sorted(diff.to_update):
            self._check_cancel()
            svc = desired[name]
            recreate = name in diff.recreate
            if self._attempt(name, result, lambda s=svc, r=recreate: self._update(s, r)):
                result.updated.append(name)
                db.log_event(
                    "INFO",
                    f"Updated {svc.service_protocol}:{svc.service_port} -> {service_target(svc)}"
                    f"{' (recreated)' if recreate else ''}",
                    service_name=name,
                )

    def _attempt(self, name: str, result: PassResult, fn: Callable[[], object]) -> bool:
        try:
            fn()
            return True
        except (MeshError, ControlPlaneError) as e:
            result.failures[name] = str(e)
            hint = hint_for(e)
            db.log_event("ERROR", f"{e}" + (f" | hint: {hint}" if hint else ""), service_name=name)
            return False

    def _create(self, svc: DesiredService) -> None:
        if self.control_plane is not None:
            self.control_plane.upsert_service(svc)
        self.mesh.set_service(svc)

    def _update(self, svc: DesiredService, recreate: bool) -> None:
        """Overwrite in place; clear first when the port or protocol moved."""
        if recreate:
            self.mesh.delete_service(svc.service_name)
            self._create(svc)
            return
        try:
            self._create(svc)
        except MeshCommandError as e:
            # Our own stale binding conflicts with the new one.
            if e.kind is not ErrorKind.CONFIG_CONFLICT:
                raise
            db.log_event("WARN", "Config conflict on update, clearing and re-applying", service_name=svc.service_name)
            self.mesh.delete_service(svc.service_name)
            self.mesh.set_service(svc)

    def apply_funnels(
        self,
        diff: FunnelDiff,
        status: FunnelStatus,
        managed: dict[int, str],
        result: PassResult,
    ) -> None:
        for port, protocol in diff.to_adopt.items():
            self.runtime.add_funnel(port, protocol)

        for port, svc in sorted(diff.foreign.items()):
            msg = f"funnel port {port} already configured outside dockserve, funnel not applied"
            result.failures[f"funnel:{port}"] = msg
            db.log_event("WARN", msg, service_name=svc.service_name)

        for port, protocol in sorted(diff.to_clear.items()):
            self._check_cancel()
            key = f"funnel:{port}"
            if self._attempt(key, result, lambda p=port, pr=protocol: self.mesh.clear_funnel(p, pr)):
                self.runtime.remove_funnel(port)
                db.log_event("INFO", f"Removed funnel on public port {port}")

        for port, svc in sorted(diff.to_set.items()):
            self._check_cancel()
            key = f"funnel:{port}"
            record = status.record(port)

            def set_funnel(s: DesiredService = svc, rec=record, p: int = port) -> None:
                if rec is not None and rec.protocol and rec.protocol != s.funnel.protocol and p in managed:
                    self.mesh.clear_funnel(p, managed[p])
                self.mesh.set_funnel(s)

            if self._attempt(key, result, set_funnel):
                self.runtime.add_funnel(port, svc.funnel.protocol)
                db.log_event(
                    "INFO",
                    f"Funnel {svc.funnel.protocol}:{port} -> {svc.funnel.dest_ip}:{svc.funnel.dest_port}",
                    service_name=svc.service_name,
                )

    # --- shutdown -------------------------------------------------------

    def cleanup(self) -> CleanupReport:
        """Delete every owned service regardless of the last desired state.

        Runs on its own deadline; the stop flag is already set and is not
        consulted here.
        """
        self.runtime.set_state(ReconcilerState.CLEANUP)
        db.log_event("INFO", "Cleaning up all managed services")
        deadline = time.monotonic() + self.cleanup_timeout_s
        report = self.mesh.cleanup_all_services(self.runtime.managed_funnels(), deadline=deadline)

        for port in report.cleared_funnels:
            self.runtime.remove_funnel(port)
        for name in report.deleted:
            db.log_event("INFO", "Removed service on shutdown", service_name=name)
        for name, err in report.errors.items():
            db.log_event("ERROR", f"Cleanup failed: {err}", service_name=name)
        if report.ok:
            db.log_event("INFO", f"Cleanup complete ({len(report.deleted)} services removed)")

        self.runtime.set_state(ReconcilerState.STOPPED)
        return report

