"""Fingerprinted browser profile provisioning (GoLogin REST API).

A profile is created per session with its own fingerprint and proxy, started
in the provider's cloud, and reached over CDP. Stop and delete are
best-effort: they run during teardown and must never mask the real outcome.
"""

import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Any
from urllib.parse import urlencode

import httpx

from src.core.config import ProvisioningConfig
from src.core.errors import ProvisioningError
from src.core.schemas import ProxyEgress

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENTS: dict[str, str] = {
    "mobile": (
        "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/131.0.0.0 Mobile Safari/537.36"
    ),
    "desktop": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
    ),
}
DEFAULT_PLATFORMS: dict[str, str] = {"mobile": "Linux armv81", "desktop": "Win32"}
RESOLUTIONS: dict[str, str] = {"mobile": "390x844", "desktop": "1920x1080"}


class ProvisioningService(ABC):
    """Lifecycle of one remote browser identity."""

    @abstractmethod
    async def create_profile(self, device: str, proxy: ProxyEgress | None) -> str:
        """Create a profile and return its identifier."""

    @abstractmethod
    async def start(self, profile_id: str) -> str:
        """Start the profile and return its CDP endpoint."""

    @abstractmethod
    async def stop(self, profile_id: str) -> None:
        """Stop a running profile. Must not raise."""

    @abstractmethod
    async def delete(self, profile_id: str) -> None:
        """Delete a profile. Must not raise."""


def build_profile(
    device: str,
    proxy: ProxyEgress | None,
    fingerprint: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Profile creation payload, filling fingerprint gaps with defaults."""
    navigator = (fingerprint or {}).get("navigator") or {}
    mobile = device == "mobile"
    proxy_block: dict[str, Any] = {"mode": "none"}
    if proxy is not None and proxy.username:
        proxy_block = {
            "mode": "http",
            "host": proxy.host,
            "port": proxy.port,
            "username": proxy.username,
            "password": proxy.password,
        }
    return {
        "name": f"journey-{int(time.time() * 1000)}",
        "os": "android" if mobile else "win",
        "browserType": "chrome",
        "navigator": {
            "userAgent": navigator.get("userAgent") or DEFAULT_USER_AGENTS[device],
            "platform": navigator.get("platform") or DEFAULT_PLATFORMS[device],
            "resolution": RESOLUTIONS[device],
            "language": "en-US,en",
        },
        "proxy": proxy_block,
        "webRTC": {"mode": "alerted", "enabled": True},
    }


class GoLoginProvisioner(ProvisioningService):
    """GoLogin cloud browser profiles over the REST API.

    ``transport`` lets tests swap in ``httpx.MockTransport``.
    """

    def __init__(
        self,
        config: ProvisioningConfig,
        *,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._token = token if token is not None else os.environ.get(config.token_env, "")
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._config.api_url,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Content-Type": "application/json",
            },
            timeout=self._config.request_timeout_s,
            transport=self._transport,
        )

    async def check_account(self) -> bool:
        """Verify the API token at worker startup. Returns False when rejected."""
        if not self._token:
            logger.warning("%s not set - sessions cannot be provisioned", self._config.token_env)
            return False
        try:
            async with self._client() as client:
                response = await client.get("/user")
                response.raise_for_status()
                account = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Provisioning token check failed: %s", e)
            return False
        logger.info("Provisioning account: %s", account.get("email") or account.get("_id") or "ok")
        return True

    async def _fingerprint(self, client: httpx.AsyncClient, device: str) -> dict[str, Any] | None:
        os_name = "android" if device == "mobile" else "win"
        try:
            response = await client.get("/browser/fingerprint", params={"os": os_name})
            response.raise_for_status()
            return response.json()  # type: ignore[no-any-return]
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Fingerprint fetch failed (%s), using defaults", e)
            return None

    async def create_profile(self, device: str, proxy: ProxyEgress | None) -> str:
        if not self._token:
            msg = f"{self._config.token_env} environment variable is required"
            raise ProvisioningError(msg)
        async with self._client() as client:
            fingerprint = await self._fingerprint(client, device)
            profile = build_profile(device, proxy, fingerprint)
            logger.info(
                "Creating %s profile (proxy: %s)",
                device, "yes" if proxy and proxy.username else "none",
            )
            try:
                response = await client.post("/browser", json=profile)
                response.raise_for_status()
                profile_id = response.json().get("id")
            except (httpx.HTTPError, ValueError) as e:
                msg = f"profile creation failed: {e}"
                raise ProvisioningError(msg) from e
        if not profile_id:
            msg = "profile creation returned no id"
            raise ProvisioningError(msg)
        logger.info("Profile created: %s", profile_id)
        return str(profile_id)

    async def start(self, profile_id: str) -> str:
        query = urlencode({"token": self._token, "profile": profile_id})
        return f"{self._config.cloud_url}?{query}"

    async def stop(self, profile_id: str) -> None:
        try:
            async with self._client() as client:
                await client.delete(f"/browser/{profile_id}/web")
        except httpx.HTTPError:
            logger.debug("Profile stop failed: %s", profile_id, exc_info=True)

    async def delete(self, profile_id: str) -> None:
        try:
            async with self._client() as client:
                await client.delete(f"/browser/{profile_id}")
            logger.info("Profile %s cleaned up", profile_id)
        except httpx.HTTPError:
            logger.debug("Profile delete failed: %s", profile_id, exc_info=True)
