"""Link-chain journey: visit a referring page, then follow its link to the destination."""

import logging

from patchright.async_api import Error as PlaywrightError

from src.browser.actions import perform
from src.core.errors import InvalidParamsError, TransientNavigationError
from src.core.schemas import JobParams
from src.journeys.base import Journey, JourneyContext, JourneyState, Outcome
from src.journeys.strategies import VisibleLink, visible_links
from src.pipeline.scorer import domain_matches

logger = logging.getLogger(__name__)

MAX_SCAN_ROUNDS = 15
MAX_SCROLL_PX = 8000


def tier1_address(params: JobParams) -> str:
    url = params.tier1_url or params.target_url
    return url if url.startswith("http") else f"https://{url}"


def pick_link(links: list[VisibleLink], destination: str, wildcard: bool) -> VisibleLink | None:
    """First on-screen link pointing at the destination."""
    for link in links:
        if link.in_viewport and domain_matches(link.href, destination, wildcard):
            return link
    return None


async def scan_for_link(
    ctx: JourneyContext,
    destination: str,
    wildcard: bool,
    max_rounds: int = MAX_SCAN_ROUNDS,
    max_scroll_px: int = MAX_SCROLL_PX,
) -> VisibleLink | None:
    """Scroll down the current page until a link to ``destination`` is on screen."""
    scrolled = 0
    for _ in range(max_rounds):
        if scrolled >= max_scroll_px:
            break
        link = pick_link(await visible_links(ctx.page), destination, wildcard)
        if link is not None:
            ctx.log.log("target_found", f'"{link.text}" -> {link.href}')
            return link
        amount = ctx.timing.between(300, 600)
        await perform(ctx.page, ctx.behavior.scroll(amount), ctx.timing)
        scrolled += amount
        await ctx.timing.pause(1500, 3500)
    ctx.log.log("target_not_found", f"no link to {destination} after {scrolled}px")
    return None


async def click_link(ctx: JourneyContext, link: VisibleLink) -> None:
    """Hesitate, move to the link's coordinates and click, then wait for the load."""
    page = ctx.page
    await ctx.timing.pause(500, 2000)
    await perform(page, ctx.behavior.pointer_path(link.x, link.y), ctx.timing)
    await ctx.timing.pause(100, 400)
    await page.mouse.click(link.x, link.y)
    ctx.log.log("target_clicked", link.href)
    try:
        await page.wait_for_load_state("domcontentloaded", timeout=15000)
    except PlaywrightError as e:
        logger.debug("Destination load wait failed: %s", e)
    await ctx.timing.pause(1000, 2000)


class TieredJourney(Journey):
    """Tier-1 page -> dwell -> scroll for the outbound link -> click -> dwell."""

    lands_on_search = False

    @property
    def journey_type(self) -> str:
        return "tiered"

    def validate(self, params: JobParams) -> None:
        if not (params.tier1_url or params.target_url):
            msg = "tiered journey requires tier1_url"
            raise InvalidParamsError(msg)

    async def execute(self, ctx: JourneyContext) -> Outcome:
        params = ctx.params
        page = ctx.page
        address = tier1_address(params)

        ctx.enter(JourneyState.SEARCHING)
        try:
            await page.goto(address, wait_until="domcontentloaded")
        except PlaywrightError as e:
            msg = f"could not open {address}: {e}"
            raise TransientNavigationError(msg) from e
        await ctx.timing.pause(1500, 3000)
        ctx.log.log("tier1_loaded", await page.title())

        low, high = ctx.settings.browser.default_dwell_ms
        await ctx.dwell(ctx.timing.between(int(low * 0.6), int(high * 0.8)))

        fields: dict[str, object] = {"tier1_url": address, "target_href": None}
        if not params.target_destination:
            ctx.log.log("no_target", "tier-1 visit only")
            return Outcome(found=False, fields=fields)

        ctx.enter(JourneyState.SCANNING)
        link = await scan_for_link(ctx, params.target_destination, params.wildcard)
        if link is None:
            ctx.enter(JourneyState.TARGET_NOT_FOUND)
            return Outcome(found=False, fields=fields)

        ctx.enter(JourneyState.TARGET_FOUND)
        await click_link(ctx, link)
        await ctx.dwell()
        fields["target_href"] = link.href
        return Outcome(found=True, clicked_rank=1, fields=fields)
