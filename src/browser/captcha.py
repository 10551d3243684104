"""Challenge page detection and resolution.

States::

    CLEAR -> CHALLENGED -> SOLVING -> RESUBMITTED -> CLEAR
                                              \\-> CHALLENGED (stale token, retry)
    CHALLENGED -> BLOCKED (no solvable widget on the page)

A retry reloads the page first so the challenge carries a fresh ``data-s``
token; those tokens expire within seconds, so extraction and submission
happen immediately after the reload settles.
"""

import logging
from enum import Enum
from typing import Any

from patchright.async_api import Error as PlaywrightError

from src.browser.solver import SolverService, solve
from src.core.config import CaptchaConfig
from src.core.errors import CaptchaUnsolvedError, IpBlockedError, SolverError
from src.core.schemas import CaptchaChallenge, ExecutionLog, ProxyEgress
from src.core.timing import Timing

logger = logging.getLogger(__name__)

CHALLENGE_WIDGET = "[data-sitekey], .g-recaptcha"

EXTRACT_CHALLENGE_JS = """
() => {
  const el = document.querySelector('[data-sitekey]') || document.querySelector('.g-recaptcha');
  if (!el) return null;
  return { siteKey: el.getAttribute('data-sitekey') || '', dataS: el.getAttribute('data-s') || '' };
}
"""

SUBMIT_TOKEN_JS = """
(token) => {
  const resp = document.getElementById('g-recaptcha-response');
  if (resp) resp.value = token;
  const ta = document.querySelector('textarea[name="g-recaptcha-response"]');
  if (ta) ta.value = token;
  const form = document.getElementById('captcha-form') || document.querySelector('form');
  if (form) form.submit();
}
"""


class CaptchaState(str, Enum):
    CLEAR = "clear"
    CHALLENGED = "challenged"
    SOLVING = "solving"
    RESUBMITTED = "resubmitted"
    BLOCKED = "blocked"


def is_challenge_url(url: str) -> bool:
    return "/sorry/" in url or "captcha" in url


class CaptchaResolver:
    """Runs the resolution state machine against one page.

    Args:
        solver: Solving service backend.
        config: Attempt budget and wait tunables.
        timing: Random source for the settle and redirect waits.
        log: Execution log of the current run.
    """

    def __init__(
        self,
        solver: SolverService,
        config: CaptchaConfig,
        timing: Timing,
        log: ExecutionLog,
    ) -> None:
        self._solver = solver
        self._config = config
        self._timing = timing
        self._log = log
        self.state = CaptchaState.CLEAR
        self.history: list[CaptchaState] = []

    def _enter(self, state: CaptchaState) -> None:
        self.state = state
        self.history.append(state)

    async def resolve(self, page: Any, context: Any, proxy: ProxyEgress | None) -> CaptchaState:
        """Clear a challenge if one is showing.

        Returns CLEAR when the page is (or becomes) a normal page, BLOCKED when
        there is no widget to solve, CHALLENGED when every attempt failed.
        """
        self.history = []
        if not is_challenge_url(page.url):
            self._enter(CaptchaState.CLEAR)
            return self.state

        self._enter(CaptchaState.CHALLENGED)
        attempts = self._config.max_attempts
        for attempt in range(1, attempts + 1):
            self._log.log("captcha_detected", f"attempt {attempt}/{attempts}")
            try:
                if attempt > 1:
                    await self._reload(page)
                    if not is_challenge_url(page.url):
                        self._log.log("captcha_gone_after_reload")
                        self._enter(CaptchaState.CLEAR)
                        return self.state

                challenge = await self._extract(page, context)
                if challenge is None:
                    self._log.log("ip_blocked", "no solvable widget on challenge page")
                    self._enter(CaptchaState.BLOCKED)
                    return self.state

                self._enter(CaptchaState.SOLVING)
                self._log.log("captcha_solving", f"data-s: {'yes' if challenge.data_s else 'no'}")
                token = await solve(self._solver, challenge, proxy, self._config)
                self._log.log("captcha_solved", f"attempt {attempt}")

                await page.evaluate(SUBMIT_TOKEN_JS, token)
                self._enter(CaptchaState.RESUBMITTED)
                if await self._judge(page):
                    self._log.log("captcha_bypassed", f"attempt {attempt}")
                    self._enter(CaptchaState.CLEAR)
                    return self.state

                self._log.log("captcha_stale", f"attempt {attempt}")
                self._enter(CaptchaState.CHALLENGED)
            except (SolverError, PlaywrightError) as e:
                self._log.log("captcha_error", f"attempt {attempt}: {e}")
                self._enter(CaptchaState.CHALLENGED)

        self._log.log("captcha_failed", f"all {attempts} attempts exhausted")
        return self.state

    async def checkpoint(self, page: Any, context: Any, proxy: ProxyEgress | None) -> None:
        """Resolve, raising unless the page ends up clear.

        Raises:
            IpBlockedError: The challenge had no solvable widget.
            CaptchaUnsolvedError: Every resolution attempt failed.
        """
        state = await self.resolve(page, context, proxy)
        if state is CaptchaState.BLOCKED:
            msg = f"IP blocked at {page.url}"
            raise IpBlockedError(msg)
        if state is not CaptchaState.CLEAR:
            msg = f"challenge unsolved after {self._config.max_attempts} attempts"
            raise CaptchaUnsolvedError(msg)

    async def _reload(self, page: Any) -> None:
        self._log.log("captcha_refresh", "reloading for a fresh challenge token")
        try:
            await page.keyboard.press("F5")
            await page.wait_for_load_state("domcontentloaded", timeout=30000)
            await page.wait_for_selector(CHALLENGE_WIDGET, timeout=10000)
        except PlaywrightError as e:
            logger.debug("Reload did not settle cleanly: %s", e)
        await self._timing.pause(*self._config.reload_settle_ms)

    async def _extract(self, page: Any, context: Any) -> CaptchaChallenge | None:
        info = await page.evaluate(EXTRACT_CHALLENGE_JS)
        if not info or not info.get("siteKey"):
            return None
        cookies = await context.cookies()
        user_agent = await page.evaluate("() => navigator.userAgent")
        return CaptchaChallenge(
            site_key=info["siteKey"],
            data_s=info.get("dataS", ""),
            page_url=page.url,
            cookies="; ".join(f"{c['name']}={c['value']}" for c in cookies),
            user_agent=user_agent or "",
        )

    async def _judge(self, page: Any) -> bool:
        """Whether the resubmission left the challenge page, allowing one late redirect."""
        try:
            await page.wait_for_load_state("domcontentloaded", timeout=30000)
        except PlaywrightError as e:
            logger.debug("Post-submit load wait failed: %s", e)
        await self._timing.pause(*self._config.redirect_wait_ms)
        if "/sorry/" not in page.url:
            return True
        await self._timing.sleep_ms(self._config.delayed_redirect_ms)
        if "/sorry/" not in page.url:
            self._log.log("captcha_delayed_redirect")
            return True
        return False
