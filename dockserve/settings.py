from __future__ import annotations

import os
import re
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(raw: str) -> float:
    """Parse '90', '90s', '5m', '1h' or '500ms' into seconds."""
    m = _DURATION_RE.match(raw)
    if not m:
        raise ValueError(f"Invalid duration: {raw!r}")
    value = float(m.group(1))
    return value * _DURATION_UNITS[m.group(2) or "s"]


def _env_duration(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        seconds = parse_duration(raw)
    except ValueError:
        return default
    return seconds if seconds > 0 else default


def parse_tags(raw: str) -> tuple[str, ...]:
    return tuple(t.strip() for t in raw.split(",") if t.strip())


@dataclass(frozen=True)
class Settings:
    # Core
    reconcile_interval_s: float = _env_duration("RECONCILE_INTERVAL", 60.0)
    default_tags: tuple[str, ...] = parse_tags(os.getenv("DEFAULT_SERVICE_TAGS", "tag:container"))
    log_level: str = os.getenv("LOG_LEVEL", "info")
    db_path: str = os.getenv("DOCKSERVE_DB_PATH", "dockserve.db")
    event_reconnect_s: float = _env_duration("DOCKSERVE_EVENT_RECONNECT", 5.0)
    cleanup_timeout_s: float = _env_duration("DOCKSERVE_CLEANUP_TIMEOUT", 30.0)

    # Docker (None means docker.from_env())
    docker_host: str | None = os.getenv("DOCKER_HOST")

    # Tailscale CLI
    tailscale_bin: str = os.getenv("TAILSCALE_BIN", "tailscale")
    tailscale_socket: str = os.getenv("TAILSCALE_SOCKET", "/var/run/tailscale/tailscaled.sock")
    cli_timeout_s: float = _env_duration("TAILSCALE_CLI_TIMEOUT", 30.0)

    # Control plane (optional; enabled by API key or OAuth client)
    tailscale_api_url: str = os.getenv("TAILSCALE_API_URL", "https://api.tailscale.com")
    tailscale_api_key: str | None = os.getenv("TAILSCALE_API_KEY") or None
    tailscale_oauth_client_id: str | None = os.getenv("TAILSCALE_OAUTH_CLIENT_ID") or None
    tailscale_oauth_client_secret: str | None = os.getenv("TAILSCALE_OAUTH_CLIENT_SECRET") or None
    tailscale_tailnet: str = os.getenv("TAILSCALE_TAILNET", "-")

    # Status API (port 0 disables it)
    api_host: str = os.getenv("DOCKSERVE_API_HOST", "127.0.0.1")
    api_port: int = _env_int("DOCKSERVE_API_PORT", 8080)

    # Diagnostics
    reachability_probe: bool = _env_bool("DOCKSERVE_REACHABILITY_PROBE", True)

    @property
    def api_sync_method(self) -> str:
        if self.tailscale_oauth_client_id and self.tailscale_oauth_client_secret:
            return "oauth"
        if self.tailscale_api_key:
            return "api_key"
        return "disabled"


settings = Settings()
