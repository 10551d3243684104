"""Browser session lifecycle: identity, proxy egress, CDP connection, teardown.

Hard rules:
  - One fresh profile per session; a session is never reused across attempts
  - Teardown runs exactly once on every exit path, including cancellation
  - Cookie auth only (no login flow)
  - patchright, not vanilla playwright
"""

import base64
import json
import logging
from collections.abc import Callable
from pathlib import Path
from types import TracebackType
from typing import Any

import httpx
from patchright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from patchright.async_api import Error as PlaywrightError

from src.browser.actions import dismiss_popups, perform
from src.browser.behavior import HumanBehavior
from src.browser.captcha import CaptchaResolver
from src.browser.provisioning import ProvisioningService
from src.core.config import BrowserConfig, ProxyConfig
from src.core.errors import ProvisioningError
from src.core.schemas import ExecutionLog, JobParams, ProxyEgress
from src.core.timing import Timing

logger = logging.getLogger(__name__)

UULE_KEY = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
_SAME_SITE = {"none": "None", "lax": "Lax", "strict": "Strict"}


def build_proxy(config: ProxyConfig, mobile: bool, timing: Timing) -> ProxyEgress:
    """Egress on a random port of the gateway's range; each port is its own exit IP."""
    username, password, kind = config.credentials(mobile)
    port = config.base_port + timing.between(0, config.port_span)
    return ProxyEgress(
        host=config.host, port=port, username=username, password=password, kind=kind,
    )


def generate_uule(canonical_name: str) -> str:
    """Encode a canonical location name as a ``uule`` search parameter."""
    encoded = base64.b64encode(canonical_name.encode()).decode().rstrip("=")
    return "w+CAIQICI" + UULE_KEY[len(canonical_name) % len(UULE_KEY)] + encoded


def build_search_url(search_url: str, params: JobParams) -> str:
    """Search engine landing URL, location-pinned when a city and state are given."""
    if not (params.proxy_city and params.proxy_state):
        return search_url
    canonical = f"{params.proxy_city},{params.proxy_state},{params.proxy_country}"
    sep = "&" if "?" in search_url else "?"
    return f"{search_url}{sep}uule={generate_uule(canonical)}"


class BrowserSession:
    """Async context manager that owns one remote profile + CDP browser + page.

    Usage::

        async with BrowserSession(config, proxy_config, params, provisioner, timing, log) as s:
            await s.page.goto("https://...")
    """

    def __init__(
        self,
        config: BrowserConfig,
        proxy_config: ProxyConfig,
        params: JobParams,
        provisioner: ProvisioningService,
        timing: Timing,
        log: ExecutionLog,
        driver_factory: Callable[[], Any] = async_playwright,
    ) -> None:
        self._config = config
        self._params = params
        self._provisioner = provisioner
        self._timing = timing
        self._log = log
        self._driver_factory = driver_factory
        self._proxy = build_proxy(proxy_config, params.is_mobile, timing)
        self._profile_id: str | None = None
        self._started = False
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None
        self._closed = False

    @property
    def session_id(self) -> str:
        return self._profile_id or ""

    @property
    def proxy(self) -> ProxyEgress:
        return self._proxy

    @property
    def page(self) -> Page:
        """The working page for this session. Raises if not entered."""
        if self._page is None:
            msg = "BrowserSession not entered - use 'async with'"
            raise RuntimeError(msg)
        return self._page

    @property
    def context(self) -> BrowserContext:
        if self._context is None:
            msg = "BrowserSession not entered - use 'async with'"
            raise RuntimeError(msg)
        return self._context

    async def __aenter__(self) -> "BrowserSession":
        self._log.log(
            "proxy_configured",
            f"{self._proxy.kind} -> {self._proxy.host}:{self._proxy.port}",
        )
        try:
            await self._acquire()
        except (PlaywrightError, httpx.HTTPError, OSError) as e:
            await self.close()
            msg = f"session acquisition failed: {e}"
            raise ProvisioningError(msg) from e
        except BaseException:
            await self.close()
            raise
        return self

    async def _acquire(self) -> None:
        self._profile_id = await self._provisioner.create_profile(
            self._params.device, self._proxy,
        )
        self._log.log("profile_created", self._profile_id)

        endpoint = await self._provisioner.start(self._profile_id)
        self._started = True

        self._playwright = await self._driver_factory().start()
        self._browser = await self._playwright.chromium.connect_over_cdp(
            endpoint, timeout=self._config.connect_timeout_ms,
        )
        self._log.log("browser_connected")

        contexts = self._browser.contexts
        self._context = contexts[0] if contexts else await self._browser.new_context()
        pages = self._context.pages
        self._page = pages[0] if pages else await self._context.new_page()

        cookies = _load_cookies(self._config.cookies_path)
        if cookies:
            await self._context.add_cookies(cookies)
            self._log.log("cookies_injected", f"{len(cookies)} cookies")
        else:
            logger.warning("No cookies loaded - session starts without history")

        self._context.set_default_timeout(self._config.timeout_ms)
        self._context.set_default_navigation_timeout(self._config.navigation_timeout_ms)

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Release everything acquired so far. Idempotent, never raises."""
        if self._closed:
            return
        self._closed = True

        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError:
                logger.debug("Browser close failed", exc_info=True)
        if self._profile_id is not None:
            if self._started:
                await self._provisioner.stop(self._profile_id)
            await self._provisioner.delete(self._profile_id)
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except PlaywrightError:
                logger.debug("Driver stop failed", exc_info=True)
        self._log.log("session_closed", self.session_id)

    async def land(
        self, search_url: str, behavior: HumanBehavior, resolver: CaptchaResolver,
    ) -> None:
        """Open the search engine and get past consent and challenge pages."""
        page = self.page
        url = build_search_url(search_url, self._params)
        if url != search_url:
            self._log.log("uule_generated", f"{self._params.proxy_city},{self._params.proxy_state}")
        await page.goto(url, wait_until="domcontentloaded")
        self._log.log("search_engine_loaded")

        await self._timing.pause(1500, 3500)
        x = self._timing.between(
            min(300, behavior.viewport.width // 4), min(700, behavior.viewport.width - 50),
        )
        y = self._timing.between(200, 400)
        await perform(page, behavior.pointer_path(x, y), self._timing)
        await self._timing.pause(500, 1500)

        await dismiss_popups(page, self._timing, self._log)
        await perform(page, behavior.idle(500, 2000), self._timing)
        await resolver.checkpoint(page, self.context, self._proxy)
        await dismiss_popups(page, self._timing, self._log)


def _normalize_cookie(raw: dict[str, Any]) -> dict[str, Any]:
    cookie: dict[str, Any] = {
        "name": raw["name"],
        "value": str(raw.get("value") or ""),
        "domain": raw["domain"],
        "path": raw.get("path") or "/",
        "httpOnly": bool(raw.get("httpOnly")),
        "secure": bool(raw.get("secure")),
        "sameSite": _SAME_SITE.get(str(raw.get("sameSite", "")).lower(), "Lax"),
    }
    expires = raw.get("expires", raw.get("expirationDate"))
    if isinstance(expires, (int, float)) and expires > 0:
        cookie["expires"] = int(expires)
    return cookie


def _load_cookies(path: str) -> list[dict[str, Any]]:
    """Load cookies from a JSON file. Returns empty list on any failure.

    Accepts a bare array or an export object with a ``cookies`` array.
    Entries without a name or domain are dropped.
    """
    cookie_path = Path(path)
    if not cookie_path.exists():
        logger.debug("Cookie file not found: %s", path)
        return []
    try:
        data = json.loads(cookie_path.read_text())
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Failed to load cookies from %s: %s", path, e)
        return []
    if isinstance(data, dict):
        data = data.get("cookies")
    if not isinstance(data, list):
        logger.warning("Cookie file holds no cookie array: %s", path)
        return []
    return [
        _normalize_cookie(c)
        for c in data
        if isinstance(c, dict) and c.get("domain") and c.get("name") and "value" in c
    ]
