"""Branded search from a point near the business, ending on its knowledge panel.

The browser is geolocated to a random grid point around the business, the
brand query is searched, precise location is switched on when offered, and
the panel is engaged (directions, reviews, photos, phone) before clicking
through to the website.
"""

import logging
from dataclasses import asdict
from typing import Any
from urllib.parse import parse_qs, urlparse

from patchright.async_api import Error as PlaywrightError

from src.browser.actions import first_visible, human_click, perform
from src.core.errors import InvalidParamsError
from src.core.schemas import JobParams
from src.journeys.base import Journey, JourneyContext, JourneyState, Outcome
from src.journeys.local_profile import follow_link, generate_grid, pin_location
from src.journeys.search import submit_search
from src.journeys.strategies import VisibleLink, is_internal, visible_links
from src.pipeline.scorer import domain_matches

logger = logging.getLogger(__name__)

SEARCH_ORIGIN = "google.com"
MAX_FALLBACK_LINKS = 15
PANEL_LINKS = ".kp-wholepage a[href], [data-attrid] a[href], .liYKde a[href]"

PRECISE_LOCATION_SELECTORS: tuple[str, ...] = (
    'a:has-text("Use precise location")',
    'a:has-text("Update location")',
    'button:has-text("Use precise location")',
    "#Mses6b",
)
PANEL_SELECTORS: tuple[str, ...] = (
    '[data-attrid="title"]',
    ".kp-wholepage",
    ".knowledge-panel",
    "[data-ly]",
    ".liYKde",
    "#rhs .kp-wholepage",
    ".xpdopen",
)
PANEL_WEBSITE_SELECTORS: tuple[str, ...] = (
    'a[data-dtype="d3ifr"]',
    'a[href*="url?q="]',
    '[data-attrid="kc:/location/location:website"] a',
    '[data-attrid="visit_website"] a',
    'a.ab_button[data-pid="website"]',
    ".QqG1Sd a",
    'a:has-text("Website")',
    "a.n1obkb",
    ".IzNS7c a",
    '.fl a[href*="url?"]',
)
PANEL_ACTIONS: dict[str, tuple[str, ...]] = {
    "directions": ('a:has-text("Directions")', 'a:has-text("Get directions")'),
    "reviews": ('a:has-text("reviews")', 'a:has-text("Reviews")', ".hqzQac a"),
    "photos": ('a:has-text("Photos")', ".Xk2Sdb a"),
    "phone": ('a[data-dtype="d3ph"]', 'a[href^="tel:"]'),
}


def redirect_target(href: str) -> str | None:
    """Destination of a ``/url?q=...`` redirect link, if it carries one."""
    values = parse_qs(urlparse(href).query).get("q")
    if values and values[0].startswith("http"):
        return values[0]
    return None


def external_panel_link(links: list[VisibleLink]) -> VisibleLink | None:
    """First on-screen panel link that leaves the search engine."""
    for link in links[:MAX_FALLBACK_LINKS]:
        if link.in_viewport and not is_internal(link.href):
            return link
    return None


class KnowledgePanelJourney(Journey):
    """Geolocated brand search -> knowledge panel engagement -> website -> dwell."""

    @property
    def journey_type(self) -> str:
        return "knowledge_panel"

    def validate(self, params: JobParams) -> None:
        if not (params.keyword.strip() or params.target_business.strip()):
            msg = "knowledge_panel journey requires a keyword or business name"
            raise InvalidParamsError(msg)
        if not params.latitude or not params.longitude:
            msg = "knowledge_panel journey requires latitude and longitude"
            raise InvalidParamsError(msg)

    async def execute(self, ctx: JourneyContext) -> Outcome:
        params = ctx.params
        grid = generate_grid(
            params.latitude or 0.0, params.longitude or 0.0, params.grid_size, params.spacing_miles,
        )
        point = ctx.timing.pick(grid)
        ctx.log.log(
            "grid_point_selected",
            f"({point.lat:.5f}, {point.lng:.5f}) row:{point.row} col:{point.col}",
        )
        await pin_location(ctx, point)

        query = params.keyword.strip() or params.target_business
        await submit_search(ctx, query)
        await self._activate_precise_location(ctx)

        await ctx.timing.pause(2000, 4000)
        panel_found = await self._find_panel(ctx)
        interactions = await self._engage(ctx)

        website_page = await self._open_website(ctx)
        fields: dict[str, Any] = {
            "kp_found": panel_found,
            "kp_interactions": interactions,
            "grid_point": asdict(point),
            "website_clicked": website_page is not None,
        }
        if website_page is None:
            ctx.log.log("kp_no_website", "branded search and panel view only")
            return Outcome(found=True, fields=fields)

        ctx.enter(JourneyState.TARGET_FOUND)
        interactions.append("website")
        landed = website_page.url
        ctx.log.log("landed_on_website", landed[:100])
        fields["landed_url"] = landed
        fields["on_target"] = (
            domain_matches(landed, params.target_url, params.wildcard)
            if params.target_url
            else True
        )
        await ctx.dwell(page=website_page)
        return Outcome(found=True, clicked_rank=1, fields=fields)

    async def _activate_precise_location(self, ctx: JourneyContext) -> bool:
        prompt = await first_visible(ctx.page, PRECISE_LOCATION_SELECTORS, timeout_ms=3000)
        if prompt is None:
            ctx.log.log("location_prompt_not_found", "relying on the geolocation override")
            return False
        try:
            await human_click(ctx.page, ctx.behavior, prompt)
        except PlaywrightError as e:
            logger.debug("Precise location click failed: %s", e)
            return False
        await ctx.timing.pause(2000, 4000)
        ctx.log.log("location_activated")
        return True

    async def _find_panel(self, ctx: JourneyContext) -> bool:
        if await first_visible(ctx.page, PANEL_SELECTORS, timeout_ms=3000) is not None:
            ctx.log.log("kp_found")
            return True
        ctx.log.log("kp_not_found", "scrolling to look for the panel")
        await perform(ctx.page, ctx.behavior.scroll(ctx.timing.between(300, 600)), ctx.timing)
        await ctx.timing.pause(1000, 2000)
        return False

    async def _engage(self, ctx: JourneyContext) -> list[str]:
        """Hover or open zero to two panel actions before the website click."""
        page = ctx.page
        roll = ctx.timing.roll()
        count = 1 if roll < 0.6 else 0 if roll < 0.8 else 2
        interactions: list[str] = []
        for name in ctx.timing.shuffled(list(PANEL_ACTIONS))[:count]:
            await ctx.timing.pause(1500, 3500)
            element = await first_visible(page, PANEL_ACTIONS[name])
            if element is None:
                continue
            box = await element.bounding_box()
            if not box:
                continue
            x = round(box["x"] + box["width"] / 2)
            y = round(box["y"] + box["height"] / 2)
            await perform(page, ctx.behavior.pointer_path(x, y), ctx.timing)
            await ctx.timing.pause(300, 800)
            ctx.log.log(f"kp_{name}")
            if name == "reviews":
                await self._read_reviews(ctx, element)
            else:
                await ctx.timing.pause(500, 1500)
            interactions.append(name)
        return interactions

    async def _read_reviews(self, ctx: JourneyContext, element: Any) -> None:
        page = ctx.page
        try:
            await element.click(timeout=3000)
        except PlaywrightError as e:
            logger.debug("Reviews click failed: %s", e)
            return
        await ctx.timing.pause(2000, 5000)
        await perform(page, ctx.behavior.scroll(ctx.timing.between(200, 400)), ctx.timing)
        try:
            await page.go_back()
        except PlaywrightError as e:
            logger.debug("Back navigation failed: %s", e)
        await ctx.timing.pause(1000, 2000)

    async def _open_website(self, ctx: JourneyContext) -> Any:
        """Click through to the business website; returns the page it opened on, or None."""
        page = ctx.page
        await ctx.timing.pause(1500, 3500)
        for selector in PANEL_WEBSITE_SELECTORS:
            link = await first_visible(page, (selector,))
            if link is None:
                continue
            ctx.log.log("kp_website_click", selector)
            try:
                opened = await follow_link(ctx, link, SEARCH_ORIGIN)
            except PlaywrightError as e:
                ctx.log.log("kp_website_error", f"{selector}: {str(e)[:80]}")
                continue
            if opened is not None:
                return opened
            if await self._follow_redirect(ctx, link):
                return page
            ctx.log.log("kp_website_click_no_nav", selector)

        fallback = external_panel_link(await visible_links(page, PANEL_LINKS))
        if fallback is None:
            return None
        ctx.log.log("kp_website_fallback", fallback.href[:80])
        await perform(page, ctx.behavior.pointer_path(fallback.x, fallback.y), ctx.timing)
        await ctx.timing.pause(300, 600)
        try:
            async with ctx.session.context.expect_page(timeout=5000) as page_info:
                await page.mouse.click(fallback.x, fallback.y)
            new_page = await page_info.value
            await new_page.wait_for_load_state("domcontentloaded", timeout=15000)
            return new_page
        except PlaywrightError as e:
            logger.debug("No new tab for fallback link: %s", e)
        await ctx.timing.pause(1500, 3000)
        return page if SEARCH_ORIGIN not in page.url else None

    async def _follow_redirect(self, ctx: JourneyContext, link: Any) -> bool:
        try:
            href = await link.get_attribute("href") or ""
        except PlaywrightError:
            return False
        target = redirect_target(href)
        if target is None:
            return False
        ctx.log.log("kp_website_redirect", target[:80])
        try:
            await ctx.page.goto(target, wait_until="domcontentloaded")
        except PlaywrightError as e:
            ctx.log.log("kp_redirect_error", str(e)[:60])
            return False
        return True
