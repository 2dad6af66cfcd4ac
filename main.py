from __future__ import annotations

import logging
import signal
import threading

from dockserve import db
from dockserve.control_plane import ControlPlaneClient
from dockserve.docker_ops import DockerRuntime
from dockserve.errors import MeshUnavailable, RuntimeUnavailable
from dockserve.mesh import TailscaleCLI
from dockserve.reconciler import Reconciler
from dockserve.runtime import RuntimeState
from dockserve.settings import Settings, settings
from dockserve.watcher import EventWatcher

logger = logging.getLogger("dockserve")

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=LOG_LEVELS.get(level.strip().lower(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def start_api(runtime: RuntimeState, reconciler: Reconciler, cfg: Settings):
    import uvicorn

    from dockserve.api import create_app

    server = uvicorn.Server(
        uvicorn.Config(create_app(runtime, reconciler), host=cfg.api_host, port=cfg.api_port, log_config=None)
    )
    threading.Thread(target=server.run, name="status-api", daemon=True).start()
    logger.info("Status API listening on %s:%s", cfg.api_host, cfg.api_port)
    return server


def main(cfg: Settings = settings) -> int:
    setup_logging(cfg.log_level)
    logger.info(
        "Starting dockserve (interval=%gs socket=%s api_sync=%s tailnet=%s default_tags=%s)",
        cfg.reconcile_interval_s,
        cfg.tailscale_socket,
        cfg.api_sync_method,
        cfg.tailscale_tailnet,
        list(cfg.default_tags),
    )
    db.init_db()

    try:
        docker_runtime = DockerRuntime(base_url=cfg.docker_host)
        docker_runtime.ping()
    except RuntimeUnavailable as e:
        logger.critical("Failed to create Docker client: %s", e)
        return 1

    mesh = TailscaleCLI(binary=cfg.tailscale_bin, socket=cfg.tailscale_socket, timeout_s=cfg.cli_timeout_s)
    try:
        mesh.check_available()
    except MeshUnavailable as e:
        logger.critical("%s", e)
        return 1

    control_plane = ControlPlaneClient(
        base_url=cfg.tailscale_api_url,
        tailnet=cfg.tailscale_tailnet,
        api_key=cfg.tailscale_api_key,
        oauth_client_id=cfg.tailscale_oauth_client_id,
        oauth_client_secret=cfg.tailscale_oauth_client_secret,
    )

    runtime = RuntimeState()
    reconciler = Reconciler(
        docker_runtime,
        mesh,
        runtime=runtime,
        interval_s=cfg.reconcile_interval_s,
        default_tags=cfg.default_tags,
        control_plane=control_plane,
        probe=cfg.reachability_probe,
        cleanup_timeout_s=cfg.cleanup_timeout_s,
    )
    reconciler.watcher = EventWatcher(docker_runtime, reconciler.trigger, reconnect_s=cfg.event_reconnect_s)

    def _on_signal(_signum, _frame):
        reconciler.stop()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    server = start_api(runtime, reconciler, cfg) if cfg.api_port > 0 else None

    report = reconciler.run()

    if server is not None:
        server.should_exit = True
    control_plane.close()
    docker_runtime.close()
    logger.info("dockserve stopped")
    return 0 if report.ok else 2


if __name__ == "__main__":
    raise SystemExit(main())
