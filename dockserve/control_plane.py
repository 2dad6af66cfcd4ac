from __future__ import annotations

import logging
import time
from urllib.parse import quote

import httpx

from .errors import ControlPlaneError
from .models import DesiredService
from .status_models import is_managed_service

logger = logging.getLogger(__name__)

# Refresh OAuth tokens this many seconds before they expire.
TOKEN_SKEW_S = 60.0


class ControlPlaneClient:
    """Syncs service definitions (ports and ACL tags) to the tailnet admin API.

    The local serve config only says where traffic goes; which tags a
    service carries lives in the admin API. Disabled unless an API key or an
    OAuth client is configured.
    """

    def __init__(
        self,
        base_url: str = "https://api.tailscale.com",
        tailnet: str = "-",
        api_key: str | None = None,
        oauth_client_id: str | None = None,
        oauth_client_secret: str | None = None,
        timeout_s: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.tailnet = tailnet or "-"
        self.api_key = api_key
        self.oauth_client_id = oauth_client_id
        self.oauth_client_secret = oauth_client_secret
        self._http = httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout_s, transport=transport)
        self._token: str | None = None
        self._token_expires = 0.0

    @property
    def enabled(self) -> bool:
        return bool((self.oauth_client_id and self.oauth_client_secret) or self.api_key)

    def close(self) -> None:
        self._http.close()

    def _bearer(self) -> str:
        if not (self.oauth_client_id and self.oauth_client_secret):
            if not self.api_key:
                raise ControlPlaneError("control plane API is not configured")
            return self.api_key
        if self._token and time.monotonic() < self._token_expires:
            return self._token
        try:
            resp = self._http.post(
                "/api/v2/oauth/token",
                data={
                    "client_id": self.oauth_client_id,
                    "client_secret": self.oauth_client_secret,
                    "grant_type": "client_credentials",
                },
            )
        except httpx.HTTPError as e:
            raise ControlPlaneError(f"OAuth token request failed: {e}") from e
        if resp.status_code != 200:
            raise ControlPlaneError(f"OAuth token request failed: HTTP {resp.status_code}: {resp.text[:200]}")
        data = resp.json()
        self._token = data["access_token"]
        self._token_expires = time.monotonic() + max(0.0, float(data.get("expires_in", 3600)) - TOKEN_SKEW_S)
        return self._token

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self._bearer()}"}
        try:
            resp = self._http.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise ControlPlaneError(f"{method} {path} failed: {e}") from e
        if resp.status_code >= 400:
            raise ControlPlaneError(f"{method} {path} failed: HTTP {resp.status_code}: {resp.text[:200]}")
        return resp

    def _services_path(self, name: str | None = None) -> str:
        path = f"/api/v2/tailnet/{quote(self.tailnet, safe='')}/vip-services"
        if name is not None:
            path += "/" + quote(name, safe="")
        return path

    def upsert_service(self, svc: DesiredService) -> None:
        body = {
            "name": svc.service_name,
            "comment": f"Managed by dockserve ({svc.container_name})",
            "ports": [f"tcp:{svc.service_port}"],
            "tags": list(svc.tags),
        }
        self._request("PUT", self._services_path(svc.service_name), json=body)
        logger.info("Synced service definition %s (tags=%s)", svc.service_name, list(svc.tags))

    def service_tags(self) -> dict[str, tuple[str, ...]]:
        resp = self._request("GET", self._services_path())
        out: dict[str, tuple[str, ...]] = {}
        for item in resp.json().get("vipServices") or []:
            name = item.get("name", "")
            if is_managed_service(name):
                out[name] = tuple(item.get("tags") or ())
        return out
