"""Tests for profile provisioning (GoLogin REST API via httpx.MockTransport)."""

import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from src.browser.provisioning import (
    DEFAULT_USER_AGENTS,
    GoLoginProvisioner,
    build_profile,
)
from src.core.config import ProvisioningConfig
from src.core.errors import ProvisioningError
from src.core.schemas import ProxyEgress

PROXY = ProxyEgress(host="us.decodo.com", port=10005, username="user", password="pass")


def _provisioner(handler, token: str = "tok") -> GoLoginProvisioner:  # type: ignore[no-untyped-def]
    return GoLoginProvisioner(
        ProvisioningConfig(), token=token, transport=httpx.MockTransport(handler),
    )


# ---------------------------------------------------------------------------
# TestBuildProfile
# ---------------------------------------------------------------------------


class TestBuildProfile:
    def test_desktop_defaults(self) -> None:
        profile = build_profile("desktop", None)
        assert profile["os"] == "win"
        assert profile["navigator"]["userAgent"] == DEFAULT_USER_AGENTS["desktop"]
        assert profile["navigator"]["resolution"] == "1920x1080"
        assert profile["proxy"] == {"mode": "none"}
        assert profile["name"].startswith("journey-")

    def test_mobile_profile(self) -> None:
        profile = build_profile("mobile", None)
        assert profile["os"] == "android"
        assert profile["navigator"]["platform"] == "Linux armv81"

    def test_fingerprint_values_win(self) -> None:
        fingerprint = {"navigator": {"userAgent": "UA-from-service", "platform": "Win32"}}
        profile = build_profile("desktop", None, fingerprint)
        assert profile["navigator"]["userAgent"] == "UA-from-service"

    def test_authenticated_proxy(self) -> None:
        profile = build_profile("desktop", PROXY)
        assert profile["proxy"] == {
            "mode": "http",
            "host": "us.decodo.com",
            "port": 10005,
            "username": "user",
            "password": "pass",
        }

    def test_proxy_without_credentials_not_used(self) -> None:
        profile = build_profile("desktop", ProxyEgress(host="h", port=1))
        assert profile["proxy"] == {"mode": "none"}


# ---------------------------------------------------------------------------
# TestGoLoginProvisioner
# ---------------------------------------------------------------------------


class TestCreateProfile:
    async def test_creates_with_fingerprint(self) -> None:
        calls: list[tuple[str, str]] = []
        created: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append((request.method, request.url.path))
            assert request.headers["Authorization"] == "Bearer tok"
            if request.url.path == "/browser/fingerprint":
                assert request.url.params["os"] == "android"
                return httpx.Response(200, json={"navigator": {"userAgent": "FP-UA"}})
            created.append(json.loads(request.content))
            return httpx.Response(201, json={"id": "prof-123"})

        profile_id = await _provisioner(handler).create_profile("mobile", PROXY)

        assert profile_id == "prof-123"
        assert calls == [("GET", "/browser/fingerprint"), ("POST", "/browser")]
        assert created[0]["navigator"]["userAgent"] == "FP-UA"
        assert created[0]["proxy"]["mode"] == "http"

    async def test_fingerprint_failure_falls_back_to_defaults(self) -> None:
        created: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/browser/fingerprint":
                return httpx.Response(500)
            created.append(json.loads(request.content))
            return httpx.Response(200, json={"id": "prof-1"})

        assert await _provisioner(handler).create_profile("desktop", None) == "prof-1"
        assert created[0]["navigator"]["userAgent"] == DEFAULT_USER_AGENTS["desktop"]

    async def test_creation_error_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, json={})
            return httpx.Response(403, json={"message": "plan limit"})

        with pytest.raises(ProvisioningError, match="profile creation failed"):
            await _provisioner(handler).create_profile("desktop", None)

    async def test_missing_id_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={})

        with pytest.raises(ProvisioningError, match="no id"):
            await _provisioner(handler).create_profile("desktop", None)

    async def test_missing_token_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        with pytest.raises(ProvisioningError, match="GOLOGIN_TOKEN"):
            await _provisioner(handler, token="").create_profile("desktop", None)


class TestLifecycle:
    async def test_start_returns_cloud_endpoint(self) -> None:
        endpoint = await _provisioner(lambda r: httpx.Response(200)).start("prof-9")
        parsed = urlparse(endpoint)
        assert parsed.scheme == "wss"
        assert parsed.netloc == "cloudbrowser.gologin.com"
        assert parse_qs(parsed.query) == {"token": ["tok"], "profile": ["prof-9"]}

    async def test_stop_and_delete_paths(self) -> None:
        calls: list[tuple[str, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append((request.method, request.url.path))
            return httpx.Response(204)

        provisioner = _provisioner(handler)
        await provisioner.stop("prof-9")
        await provisioner.delete("prof-9")
        assert calls == [("DELETE", "/browser/prof-9/web"), ("DELETE", "/browser/prof-9")]

    async def test_teardown_errors_swallowed(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        provisioner = _provisioner(handler)
        await provisioner.stop("prof-9")
        await provisioner.delete("prof-9")


class TestCheckAccount:
    async def test_valid_token(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/user"
            return httpx.Response(200, json={"email": "ops@example.com"})

        assert await _provisioner(handler).check_account() is True

    async def test_rejected_token(self) -> None:
        assert await _provisioner(lambda r: httpx.Response(401)).check_account() is False

    async def test_missing_token(self) -> None:
        assert await _provisioner(lambda r: httpx.Response(200), token="").check_account() is False
