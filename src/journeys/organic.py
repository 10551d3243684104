"""Organic-only journey across several result pages.

Ads and the map pack are skipped; a direct domain match counts as a hit even
when the text score stays under threshold. Layouts without headline links fall
back to scanning every visible external link.
"""

import logging
from typing import Any

from patchright.async_api import Error as PlaywrightError

from src.browser.actions import first_visible, human_click, perform
from src.core.schemas import MatchCandidate
from src.journeys.base import Journey, JourneyContext, JourneyState, Outcome
from src.journeys.search import RESULTS_SELECTOR, RESULTS_TIMEOUT_MS, submit_search
from src.journeys.strategies import (
    PageSnapshot,
    click_candidate,
    external_links,
    organic,
    take_snapshot,
)
from src.pipeline.scorer import domain_matches, is_match, score_match

logger = logging.getLogger(__name__)

RESULTS_PER_PAGE = 10
MORE_RESULTS_WAIT_MS = 15000

MORE_RESULTS_SELECTORS: tuple[str, ...] = (
    'a:has-text("More results")',
    'a:has-text("More search results")',
    'div[role="button"]:has-text("More results")',
    'span:has-text("More results")',
    'a[aria-label="More results"]',
    'a[aria-label="More search results"]',
    "div.YMIyqf a",
    "#ofr a",
)

NEXT_PAGE_SELECTORS: tuple[str, ...] = (
    "#pnnext",
    'a:has-text("Next")',
    "td.navend a",
    'a.fl[href*="start="]',
)

_PAGE_SIZE_JS = "() => [document.querySelectorAll('a').length, document.body.scrollHeight]"


def global_rank(page_number: int, position: int) -> int:
    return (page_number - 1) * RESULTS_PER_PAGE + position


def pick_organic(
    snapshot: PageSnapshot,
    target_business: str,
    target_url: str,
) -> tuple[MatchCandidate, int] | None:
    """First organic candidate that scores over threshold or points at the target."""
    candidates = organic(snapshot) or external_links(snapshot)
    for candidate in candidates:
        score = score_match(candidate.text, candidate.href, target_business, target_url)
        if is_match(score) or (target_url and domain_matches(candidate.href, target_url)):
            return candidate, score
    return None


class OrganicJourney(Journey):
    """Search -> organic scan of pages 1..max_pages -> click -> dwell."""

    @property
    def journey_type(self) -> str:
        return "organic"

    async def execute(self, ctx: JourneyContext) -> Outcome:
        params = ctx.params
        page = ctx.page
        await submit_search(ctx, params.keyword)

        pages_scanned = 0
        offset = 0
        for page_number in range(1, params.max_pages + 1):
            ctx.enter(JourneyState.SCANNING)
            pages_scanned = page_number
            if page_number > 1:
                await perform(page, ctx.behavior.scroll(ctx.timing.between(200, 400)), ctx.timing)
                await ctx.timing.pause(800, 1500)

            snapshot = await take_snapshot(page)
            hit = pick_organic(snapshot, params.target_business, params.target_url)
            headlines = len(organic(snapshot))
            ctx.log.log("organic_scan", f"page {page_number}: {headlines} headline results")
            if hit is not None:
                candidate, score = hit
                ctx.enter(JourneyState.TARGET_FOUND)
                await click_candidate(page, ctx.behavior, candidate)
                rank = offset + candidate.position
                ctx.log.log(
                    "organic_target_clicked",
                    f"page {page_number}, pos {candidate.position} (score:{score}): "
                    f"{candidate.text[:100]}",
                )
                await ctx.dwell()
                return Outcome(
                    found=True,
                    clicked_rank=rank,
                    fields={
                        "clicked_page": page_number,
                        "clicked_position": candidate.position,
                        "pages_scanned": page_number,
                    },
                )

            if page_number == params.max_pages:
                break
            ctx.log.log("target_not_on_page", f"page {page_number}")
            await perform(page, ctx.behavior.scroll(ctx.timing.between(400, 800)), ctx.timing)
            await ctx.timing.pause(1500, 3500)
            if ctx.timing.chance(0.5):
                await perform(page, ctx.behavior.idle(1000, 3000), ctx.timing)

            await ctx.checkpoint()
            mode = await self._next_page(ctx, page_number)
            await ctx.checkpoint()
            if mode is None:
                ctx.log.log("pagination_stopped", f"could not go past page {page_number}")
                break
            if mode == "paged":
                offset = global_rank(page_number + 1, 0)

        ctx.enter(JourneyState.TARGET_NOT_FOUND)
        ctx.log.log(
            "target_not_found",
            f'"{params.target_business}" not in {pages_scanned} pages of organic results',
        )
        return Outcome(found=False, fields={"pages_scanned": pages_scanned})

    async def _next_page(self, ctx: JourneyContext, current: int) -> str | None:
        """Advance to the next results page.

        Returns "inline" when "More results" appended to the current page (result
        positions keep counting), "paged" after following a page link, or None.
        """
        page = ctx.page
        await perform(page, ctx.behavior.scroll(ctx.timing.between(3000, 5000)), ctx.timing)
        await ctx.timing.pause(1000, 2000)

        more = await first_visible(page, MORE_RESULTS_SELECTORS, timeout_ms=1500)
        if more is not None:
            return "inline" if await self._load_more(ctx, more, current) else None

        selectors = (f'a[aria-label="Page {current + 1}"]', *NEXT_PAGE_SELECTORS)
        link = await first_visible(page, selectors)
        if link is None:
            ctx.log.log("pagination_failed", f"no link to page {current + 1}")
            return None
        try:
            await human_click(page, ctx.behavior, link)
            await page.wait_for_load_state("domcontentloaded")
            await page.wait_for_selector(RESULTS_SELECTOR, timeout=RESULTS_TIMEOUT_MS)
        except PlaywrightError as e:
            ctx.log.log("pagination_failed", str(e)[:80])
            return None
        ctx.log.log("page_navigated", f"now on page {current + 1}")
        await ctx.timing.pause(1500, 3000)
        return "paged"

    async def _load_more(self, ctx: JourneyContext, button: Any, current: int) -> bool:
        page = ctx.page
        links_before, height_before = await page.evaluate(_PAGE_SIZE_JS)
        try:
            await human_click(page, ctx.behavior, button)
        except PlaywrightError as e:
            ctx.log.log("pagination_failed", str(e)[:80])
            return False

        waited = 0
        while waited < MORE_RESULTS_WAIT_MS:
            await ctx.timing.sleep_ms(1000)
            waited += 1000
            links_after, height_after = await page.evaluate(_PAGE_SIZE_JS)
            if links_after > links_before or height_after > height_before + 200:
                ctx.log.log("page_navigated", f"page {current + 1} loaded inline")
                break
        else:
            ctx.log.log(
                "pagination_load_slow", f"no new content after {MORE_RESULTS_WAIT_MS // 1000}s",
            )
        await ctx.timing.pause(2000, 4000)
        return True
