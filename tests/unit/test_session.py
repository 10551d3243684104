"""Tests for browser session: cookies, search URL, proxy egress, lifecycle."""

import asyncio
import base64
import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from patchright.async_api import Error as PlaywrightError

from src.browser.provisioning import ProvisioningService
from src.browser.session import (
    UULE_KEY,
    BrowserSession,
    _load_cookies,
    _normalize_cookie,
    build_proxy,
    build_search_url,
    generate_uule,
)
from src.core.config import BrowserConfig, ProxyConfig
from src.core.errors import ProvisioningError
from src.core.schemas import ExecutionLog, JobParams, ProxyEgress
from src.core.timing import Timing

GOOGLE = {"name": "NID", "value": "abc", "domain": ".google.com", "path": "/"}


class FakeProvisioner(ProvisioningService):
    """Records lifecycle calls; ``fail_create`` raises from create_profile."""

    def __init__(self, fail_create: BaseException | None = None) -> None:
        self.fail_create = fail_create
        self.calls: list[tuple[str, str]] = []

    async def create_profile(self, device: str, proxy: ProxyEgress | None) -> str:
        self.calls.append(("create", device))
        if self.fail_create is not None:
            raise self.fail_create
        return "prof-1"

    async def start(self, profile_id: str) -> str:
        self.calls.append(("start", profile_id))
        return "wss://cloud.test/connect?profile=prof-1"

    async def stop(self, profile_id: str) -> None:
        self.calls.append(("stop", profile_id))

    async def delete(self, profile_id: str) -> None:
        self.calls.append(("delete", profile_id))


def _driver(connect_error: Exception | None = None) -> tuple[MagicMock, MagicMock]:
    """Fake ``async_playwright`` factory and the browser it connects to."""
    page = MagicMock()
    context = MagicMock()
    context.pages = [page]
    context.add_cookies = AsyncMock()
    browser = MagicMock()
    browser.contexts = [context]
    browser.close = AsyncMock()
    playwright = MagicMock()
    playwright.stop = AsyncMock()
    if connect_error is not None:
        playwright.chromium.connect_over_cdp = AsyncMock(side_effect=connect_error)
    else:
        playwright.chromium.connect_over_cdp = AsyncMock(return_value=browser)
    manager = MagicMock()
    manager.start = AsyncMock(return_value=playwright)
    return MagicMock(return_value=manager), browser


def _session(
    provisioner: ProvisioningService,
    factory: MagicMock,
    cookies_path: str = "/nonexistent/cookies.json",
) -> BrowserSession:
    return BrowserSession(
        BrowserConfig(cookies_path=cookies_path),
        ProxyConfig(),
        JobParams(keyword="pizza"),
        provisioner,
        Timing(seed=1),
        ExecutionLog(),
        driver_factory=factory,
    )


# ---------------------------------------------------------------------------
# TestLoadCookies
# ---------------------------------------------------------------------------


class TestLoadCookies:
    """Cookie file loading: success and failure paths."""

    def test_valid_cookie_file(self, tmp_path: Path) -> None:
        cookie_file = tmp_path / "cookies.json"
        cookie_file.write_text(json.dumps([GOOGLE]))
        result = _load_cookies(str(cookie_file))
        assert len(result) == 1
        assert result[0]["name"] == "NID"
        assert result[0]["sameSite"] == "Lax"

    def test_export_object_with_cookies_key(self, tmp_path: Path) -> None:
        cookie_file = tmp_path / "cookies.json"
        cookie_file.write_text(json.dumps({"url": "https://www.google.com", "cookies": [GOOGLE]}))
        assert [c["name"] for c in _load_cookies(str(cookie_file))] == ["NID"]

    def test_missing_file_returns_empty(self) -> None:
        assert _load_cookies("/nonexistent/path/cookies.json") == []

    def test_object_without_cookies_returns_empty(self, tmp_path: Path) -> None:
        cookie_file = tmp_path / "cookies.json"
        cookie_file.write_text('{"key": "value"}')
        assert _load_cookies(str(cookie_file)) == []

    def test_invalid_json_returns_empty(self, tmp_path: Path) -> None:
        cookie_file = tmp_path / "cookies.json"
        cookie_file.write_text("not-json{{{")
        assert _load_cookies(str(cookie_file)) == []

    def test_incomplete_entries_dropped(self, tmp_path: Path) -> None:
        cookie_file = tmp_path / "cookies.json"
        cookies = [
            GOOGLE,
            {"name": "no-domain", "value": "x"},
            {"value": "x", "domain": ".google.com"},
            {"name": "no-value", "domain": ".google.com"},
            "garbage",
        ]
        cookie_file.write_text(json.dumps(cookies))
        assert [c["name"] for c in _load_cookies(str(cookie_file))] == ["NID"]


class TestNormalizeCookie:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("no_restriction", "Lax"),
            ("none", "None"),
            ("STRICT", "Strict"),
            ("lax", "Lax"),
        ],
    )
    def test_same_site(self, raw: str, expected: str) -> None:
        assert _normalize_cookie({**GOOGLE, "sameSite": raw})["sameSite"] == expected

    def test_browser_export_expiration_date(self) -> None:
        cookie = _normalize_cookie({**GOOGLE, "expirationDate": 1767225600.5})
        assert cookie["expires"] == 1767225600

    def test_session_cookie_has_no_expiry(self) -> None:
        assert "expires" not in _normalize_cookie({**GOOGLE, "expires": -1})

    def test_defaults(self) -> None:
        cookie = _normalize_cookie({"name": "A", "value": None, "domain": ".google.com"})
        assert cookie["value"] == ""
        assert cookie["path"] == "/"
        assert cookie["httpOnly"] is False
        assert cookie["secure"] is False


# ---------------------------------------------------------------------------
# TestSearchUrl
# ---------------------------------------------------------------------------


class TestSearchUrl:
    def test_uule_encodes_canonical_name(self) -> None:
        canonical = "Springfield,Illinois,United States"
        uule = generate_uule(canonical)
        assert uule.startswith("w+CAIQICI")
        assert uule[9] == UULE_KEY[len(canonical)]
        tail = uule[10:]
        decoded = base64.b64decode(tail + "=" * (-len(tail) % 4)).decode()
        assert decoded == canonical

    def test_no_location_keeps_url(self) -> None:
        url = "https://www.google.com/?gl=us&hl=en"
        assert build_search_url(url, JobParams(keyword="pizza")) == url

    def test_city_without_state_keeps_url(self) -> None:
        url = "https://www.google.com/"
        params = JobParams(keyword="pizza", proxy_city="Springfield")
        assert build_search_url(url, params) == url

    def test_location_appends_uule(self) -> None:
        params = JobParams(keyword="pizza", proxy_city="Springfield", proxy_state="Illinois")
        url = build_search_url("https://www.google.com/?gl=us", params)
        expected = generate_uule("Springfield,Illinois,United States")
        assert url == f"https://www.google.com/?gl=us&uule={expected}"

    def test_location_on_bare_url(self) -> None:
        params = JobParams(keyword="pizza", proxyCity="Austin", proxyState="Texas")
        assert build_search_url("https://www.google.com/", params).startswith(
            "https://www.google.com/?uule=",
        )


# ---------------------------------------------------------------------------
# TestBuildProxy
# ---------------------------------------------------------------------------


class TestBuildProxy:
    def test_port_within_gateway_range(self) -> None:
        config = ProxyConfig(base_port=10001, port_span=10)
        ports = {build_proxy(config, False, Timing(seed=s)).port for s in range(50)}
        assert ports <= set(range(10001, 10011))
        assert len(ports) > 1

    def test_mobile_egress_when_configured(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PROXY_MOBILE_USER", "mob")
        monkeypatch.setenv("PROXY_MOBILE_PASS", "mpass")
        proxy = build_proxy(ProxyConfig(), True, Timing(seed=1))
        assert proxy.kind == "mobile"
        assert proxy.username == "mob"
        assert proxy.host == "us.decodo.com"


# ---------------------------------------------------------------------------
# TestBrowserSession
# ---------------------------------------------------------------------------


class TestBrowserSession:
    async def test_enter_and_exit(self, tmp_path: Path) -> None:
        cookie_file = tmp_path / "cookies.json"
        cookie_file.write_text(json.dumps([GOOGLE]))
        provisioner = FakeProvisioner()
        factory, browser = _driver()
        session = _session(provisioner, factory, str(cookie_file))

        async with session as s:
            assert s.session_id == "prof-1"
            assert s.page is browser.contexts[0].pages[0]
            browser.contexts[0].add_cookies.assert_awaited_once()

        browser.close.assert_awaited_once()
        assert provisioner.calls == [
            ("create", "desktop"),
            ("start", "prof-1"),
            ("stop", "prof-1"),
            ("delete", "prof-1"),
        ]

    async def test_close_is_idempotent(self) -> None:
        provisioner = FakeProvisioner()
        factory, browser = _driver()
        session = _session(provisioner, factory)
        async with session:
            pass
        await session.close()
        browser.close.assert_awaited_once()
        assert provisioner.calls.count(("delete", "prof-1")) == 1

    async def test_connect_failure_raises_provisioning_error(self) -> None:
        provisioner = FakeProvisioner()
        factory, browser = _driver(connect_error=PlaywrightError("connection refused"))

        with pytest.raises(ProvisioningError, match="connection refused"):
            async with _session(provisioner, factory):
                pytest.fail("body must not run")

        browser.close.assert_not_awaited()
        assert ("stop", "prof-1") in provisioner.calls
        assert ("delete", "prof-1") in provisioner.calls

    async def test_create_failure_tears_down_nothing_remote(self) -> None:
        provisioner = FakeProvisioner(fail_create=ProvisioningError("plan limit"))
        factory, _ = _driver()

        with pytest.raises(ProvisioningError, match="plan limit"):
            async with _session(provisioner, factory):
                pass

        assert provisioner.calls == [("create", "desktop")]
        factory.assert_not_called()

    async def test_cancellation_still_tears_down(self) -> None:
        provisioner = FakeProvisioner()
        factory, browser = _driver()

        with pytest.raises(asyncio.CancelledError):
            async with _session(provisioner, factory):
                raise asyncio.CancelledError

        browser.close.assert_awaited_once()
        assert provisioner.calls[-1] == ("delete", "prof-1")

    def test_page_before_entry_raises(self) -> None:
        factory, _ = _driver()
        session = _session(FakeProvisioner(), factory)
        assert session.session_id == ""
        with pytest.raises(RuntimeError, match="not entered"):
            _ = session.page
