"""Image-search journey: a short link to a Lens results page, then AI Mode.

The short link redirects to a Lens results page. After reading it the AI
Mode tab is opened, its overview is read, and the destination link is found
and clicked.
"""

import logging

from patchright.async_api import Error as PlaywrightError

from src.browser.actions import first_visible, human_click, perform
from src.core.errors import InvalidParamsError, TransientNavigationError
from src.core.schemas import JobParams
from src.journeys.base import Journey, JourneyContext, JourneyState, Outcome
from src.journeys.tiered import click_link, scan_for_link, tier1_address

logger = logging.getLogger(__name__)

SHORTENER_HOSTS: tuple[str, ...] = ("bit.ly", "bitly.com")
MAX_SCAN_ROUNDS = 12
MAX_SCROLL_PX = 5000

INTERSTITIAL_SELECTORS: tuple[str, ...] = (
    'a[href*="google.com/search"]',
    'a[href*="lens.google"]',
    "a.jsx-link",
    'a[data-testid="destination-link"]',
    "a.action-button",
    'a[href]:not([href*="bitly"])',
    'button:has-text("Continue")',
    'a:has-text("Continue")',
)
AI_MODE_SELECTORS: tuple[str, ...] = (
    'div[role="tab"]:has-text("AI Mode")',
    'a:has-text("AI Mode")',
    '[data-tab="AI Mode"]',
    'button:has-text("AI Mode")',
)

INTERSTITIAL_FALLBACK_JS = """
() => {
  const link = Array.from(document.querySelectorAll('a[href]')).find(a =>
    a.href.startsWith('http') && !a.href.includes('bitly') && !a.href.includes('bit.ly'));
  if (link) { link.click(); return link.href; }
  return null;
}
"""
AI_MODE_FALLBACK_JS = """
() => {
  for (const el of document.querySelectorAll('*')) {
    if (el.textContent && el.textContent.trim() === 'AI Mode' && el.offsetParent !== null) {
      el.click();
      return true;
    }
  }
  return false;
}
"""


def on_shortener(url: str) -> bool:
    return any(host in url for host in SHORTENER_HOSTS)


def lens_wildcard(params: JobParams) -> bool:
    """Wildcard matching is on unless the job turns it off explicitly."""
    return params.wildcard if "wildcard" in params.model_fields_set else True


class LensJourney(Journey):
    """Short link -> Lens results -> AI Mode -> find destination -> click -> dwell."""

    lands_on_search = False

    @property
    def journey_type(self) -> str:
        return "lens"

    def validate(self, params: JobParams) -> None:
        if not (params.tier1_url or params.target_url):
            msg = "lens journey requires tier1_url"
            raise InvalidParamsError(msg)

    async def execute(self, ctx: JourneyContext) -> Outcome:
        params = ctx.params
        page = ctx.page
        address = tier1_address(params)

        ctx.enter(JourneyState.SEARCHING)
        ctx.log.log("navigating_short_link", address)
        try:
            await page.goto(address, wait_until="domcontentloaded")
        except PlaywrightError as e:
            msg = f"could not open {address}: {e}"
            raise TransientNavigationError(msg) from e
        await ctx.timing.pause(2000, 3000)
        if on_shortener(page.url):
            await self._click_through(ctx)

        await ctx.timing.pause(3000, 5000)
        await ctx.checkpoint()
        ctx.log.log("lens_loaded", f"{page.url[:100]} | {(await page.title())[:60]}")

        lens_ms = ctx.timing.between(8000, 15000)
        ctx.log.log("lens_dwell", f"{round(lens_ms / 1000)}s")
        await perform(page, ctx.behavior.scroll(ctx.timing.between(200, 400)), ctx.timing)
        await ctx.timing.sleep_ms(lens_ms)

        ai_mode = await self._open_ai_mode(ctx)
        if ai_mode:
            low, high = ctx.settings.browser.default_dwell_ms
            await ctx.dwell(ctx.timing.between(int(low * 0.5), int(high * 0.7)))

        fields: dict[str, object] = {"tier1_url": address, "ai_mode": ai_mode, "target_href": None}
        if not params.target_destination:
            ctx.log.log("no_target", "lens visit only")
            return Outcome(found=False, fields=fields)

        ctx.enter(JourneyState.SCANNING)
        link = await scan_for_link(
            ctx,
            params.target_destination,
            lens_wildcard(params),
            max_rounds=MAX_SCAN_ROUNDS,
            max_scroll_px=MAX_SCROLL_PX,
        )
        if link is None:
            ctx.enter(JourneyState.TARGET_NOT_FOUND)
            return Outcome(found=False, fields=fields)

        ctx.enter(JourneyState.TARGET_FOUND)
        await click_link(ctx, link)
        await ctx.dwell()
        fields["target_href"] = link.href
        return Outcome(found=True, clicked_rank=1, fields=fields)

    async def _click_through(self, ctx: JourneyContext) -> None:
        """Leave a shortener interstitial that did not redirect on its own."""
        page = ctx.page
        ctx.log.log("shortener_interstitial", page.url[:100])
        link = await first_visible(page, INTERSTITIAL_SELECTORS)
        clicked = False
        if link is not None:
            try:
                await link.click(timeout=5000)
                clicked = True
            except PlaywrightError as e:
                logger.debug("Interstitial click failed: %s", e)
        if not clicked:
            try:
                clicked = bool(await page.evaluate(INTERSTITIAL_FALLBACK_JS))
            except PlaywrightError as e:
                logger.debug("Interstitial scripted click failed: %s", e)
        ctx.log.log("shortener_clicked_through" if clicked else "shortener_no_redirect")
        try:
            await page.wait_for_load_state("domcontentloaded", timeout=15000)
        except PlaywrightError as e:
            logger.debug("Load wait after interstitial failed: %s", e)
        await ctx.timing.pause(3000, 5000)

    async def _open_ai_mode(self, ctx: JourneyContext) -> bool:
        page = ctx.page
        await ctx.timing.pause(2000, 4000)
        tab = await first_visible(page, AI_MODE_SELECTORS, timeout_ms=3000)
        clicked = False
        if tab is not None:
            try:
                await human_click(page, ctx.behavior, tab)
                clicked = True
            except PlaywrightError as e:
                logger.debug("AI Mode click failed: %s", e)
        if not clicked:
            try:
                clicked = bool(await page.evaluate(AI_MODE_FALLBACK_JS))
            except PlaywrightError as e:
                logger.debug("AI Mode scripted click failed: %s", e)
        if not clicked:
            ctx.log.log("ai_mode_not_found", "continuing on the Lens results")
            return False
        ctx.log.log("ai_mode_clicked")
        # The overview takes a while to generate.
        await ctx.timing.pause(10000, 16000)
        return True
