"""Search submission shared by the journeys that start from a query."""

import logging

from patchright.async_api import Error as PlaywrightError

from src.browser.actions import first_visible, perform
from src.core.errors import TransientNavigationError
from src.journeys.base import JourneyContext, JourneyState

logger = logging.getLogger(__name__)

SEARCH_INPUT = 'textarea[name="q"], input[name="q"]'
OVERLAY_INPUTS: tuple[str, ...] = (
    'input[aria-label="Search"]',
    'textarea[aria-label="Search"]',
    "input.gLFyf",
    "textarea.gLFyf",
)
RESULTS_SELECTOR = "#search, #rso, .g"
RESULTS_TIMEOUT_MS = 15000

FOCUS_JS = """
() => {
  const el = document.querySelector('textarea[name="q"]')
    || document.querySelector('input[name="q"]');
  if (el) { el.focus(); el.click(); }
}
"""


async def focus_search_input(ctx: JourneyContext) -> None:
    """Move toward the search box and focus it, with a scripted fallback."""
    page = ctx.page
    x = ctx.timing.between(300, 600)
    y = ctx.timing.between(200, 350)
    await perform(page, ctx.behavior.pointer_path(x, y), ctx.timing)
    await ctx.timing.pause(200, 500)
    try:
        await page.locator(SEARCH_INPUT).first.click(timeout=5000)
        ctx.log.log("input_clicked")
        return
    except PlaywrightError:
        ctx.log.log("input_click_failed", "trying scripted focus")

    try:
        await page.evaluate(FOCUS_JS)
    except PlaywrightError as e:
        logger.debug("Scripted focus failed: %s", e)
    await ctx.timing.sleep_ms(500)
    overlay = await first_visible(page, OVERLAY_INPUTS)
    if overlay is not None:
        try:
            await overlay.click(timeout=3000)
            ctx.log.log("overlay_input_clicked")
        except PlaywrightError as e:
            logger.debug("Overlay input click failed: %s", e)


async def wait_for_results(ctx: JourneyContext) -> None:
    """Wait for the results list, clearing a challenge page if it shows instead.

    Raises:
        TransientNavigationError: No results appeared even after the checkpoint.
        CaptchaError: The challenge could not be cleared.
    """
    page = ctx.page
    try:
        await page.wait_for_selector(RESULTS_SELECTOR, timeout=RESULTS_TIMEOUT_MS)
    except PlaywrightError:
        await ctx.checkpoint()
        try:
            await page.wait_for_selector(RESULTS_SELECTOR, timeout=RESULTS_TIMEOUT_MS)
        except PlaywrightError as e:
            msg = f"no results rendered at {page.url}"
            raise TransientNavigationError(msg) from e
    ctx.log.log("results_rendered")


async def submit_search(ctx: JourneyContext, keyword: str) -> None:
    """Type the query like a person, submit it and look over the results."""
    ctx.enter(JourneyState.SEARCHING)
    page = ctx.page
    await focus_search_input(ctx)
    await perform(page, ctx.behavior.typing(keyword), ctx.timing)
    ctx.log.log("keyword_typed", keyword)

    await ctx.timing.pause(800, 2000)
    await page.keyboard.press("Enter")
    try:
        await page.wait_for_load_state("domcontentloaded")
    except PlaywrightError as e:
        logger.debug("Load state wait after submit failed: %s", e)
    ctx.log.log("search_submitted")
    await ctx.checkpoint()
    await wait_for_results(ctx)

    ctx.enter(JourneyState.SCANNING)
    await ctx.timing.pause(2000, 4000)
    x = ctx.timing.between(200, 600)
    y = ctx.timing.between(300, 500)
    await perform(page, ctx.behavior.pointer_path(x, y), ctx.timing)
    await ctx.timing.pause(500, 1500)
    await perform(page, ctx.behavior.scroll(ctx.timing.between(150, 350)), ctx.timing)
    await ctx.timing.pause(1000, 2500)
    ctx.log.log("scrolled_results")
