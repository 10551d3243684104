"""Maps business profile journey, entered from a point near the business.

A point of an N x N grid around the business coordinates is picked at random
and the browser's geolocation is pinned to it (CDP override plus an init
script), so the visit looks like it comes from someone nearby.
"""

import json
import logging
from dataclasses import asdict, dataclass
from typing import Any

from patchright.async_api import Error as PlaywrightError

from src.browser.actions import first_visible, human_click, perform
from src.core.errors import InvalidParamsError
from src.core.schemas import JobParams
from src.journeys.base import Journey, JourneyContext, JourneyState, Outcome

logger = logging.getLogger(__name__)

# Degrees per mile at mid-US latitudes.
LAT_PER_MILE = 0.01449
LNG_PER_MILE = 0.01671

MIN_WEBSITE_DWELL_MS = 30000
MIN_PROFILE_DWELL_MS = 20000

REFERRAL_SOURCES: tuple[str, ...] = (
    "https://www.facebook.com/",
    "https://l.instagram.com/",
    "https://t.co/",
    "https://www.tiktok.com/",
    "https://www.youtube.com/",
    "https://www.linkedin.com/",
    "https://www.reddit.com/",
    "https://www.pinterest.com/",
)

KEEP_WEB_SELECTORS: tuple[str, ...] = (
    'button:has-text("Keep using web")',
    'a:has-text("Keep using web")',
)
TITLE_SELECTORS: tuple[str, ...] = (
    ".DUwDvf",
    ".qBF1Pd",
    "h1.fontHeadlineLarge",
    '[role="main"] h1',
)
PHOTOS_SELECTORS: tuple[str, ...] = (
    'button:has-text("Photos")',
    'a:has-text("Photos")',
    '[data-tab="photos"]',
    '[aria-label*="Photo"]',
)
REVIEWS_SELECTORS: tuple[str, ...] = (
    'button:has-text("Reviews")',
    'a:has-text("Reviews")',
    '[data-tab="reviews"]',
    '[aria-label*="review"]',
    ".F7nice",
)
WEBSITE_SELECTORS: tuple[str, ...] = (
    'a[data-value="Website"]',
    'a:has-text("Website")',
    'a[aria-label*="website"]',
)


@dataclass(frozen=True)
class GridPoint:
    lat: float
    lng: float
    row: int
    col: int


def generate_grid(
    lat: float,
    lng: float,
    size: int = 7,
    spacing_miles: float = 1.0,
) -> list[GridPoint]:
    """Row-major ``size`` x ``size`` grid centered on (lat, lng)."""
    half = size // 2
    return [
        GridPoint(
            lat=lat + (row - half) * spacing_miles * LAT_PER_MILE,
            lng=lng + (col - half) * spacing_miles * LNG_PER_MILE,
            row=row,
            col=col,
        )
        for row in range(size)
        for col in range(size)
    ]


def maps_url(point: GridPoint, cid: str) -> str:
    return (
        f"http://maps.google.com/maps?ll={point.lat},{point.lng}"
        f"&z=16&t=m&hl=en&gl=US&mapclient=embed&cid={cid}"
    )


def geolocation_script(point: GridPoint) -> str:
    coords = json.dumps({"lat": point.lat, "lng": point.lng})
    return f"""
(() => {{
  const c = {coords};
  const pos = {{
    coords: {{ latitude: c.lat, longitude: c.lng, accuracy: 20,
              altitude: null, altitudeAccuracy: null, heading: null, speed: null }},
    timestamp: Date.now(),
  }};
  navigator.geolocation.getCurrentPosition = (ok) => ok(pos);
  navigator.geolocation.watchPosition = (ok) => {{ ok(pos); return 0; }};
}})();
"""


async def pin_location(ctx: JourneyContext, point: GridPoint) -> None:
    """Pin the browser's geolocation to ``point`` (CDP override plus init script)."""
    context = ctx.session.context
    cdp = await context.new_cdp_session(ctx.page)
    await cdp.send(
        "Emulation.setGeolocationOverride",
        {"latitude": point.lat, "longitude": point.lng, "accuracy": ctx.timing.between(10, 50)},
    )
    try:
        await context.grant_permissions(["geolocation"])
    except PlaywrightError as e:
        logger.debug("Geolocation permission grant failed: %s", e)
    await ctx.page.add_init_script(geolocation_script(point))
    ctx.log.log("geolocation_set", f"({point.lat:.5f}, {point.lng:.5f})")


async def follow_link(ctx: JourneyContext, locator: Any, origin: str) -> Any:
    """Click a link that may open a new tab.

    Returns the page the link opened on, or None when the click left us on a
    URL still containing ``origin``.
    """
    page = ctx.page
    try:
        async with ctx.session.context.expect_page(timeout=8000) as page_info:
            await human_click(page, ctx.behavior, locator)
        new_page = await page_info.value
        await new_page.wait_for_load_state("domcontentloaded", timeout=15000)
        ctx.log.log("website_opened_newtab", new_page.url[:100])
        return new_page
    except PlaywrightError as e:
        logger.debug("No new tab after link click: %s", e)

    if origin not in page.url:
        ctx.log.log("website_opened_samepage", page.url[:100])
        return page
    return None


class LocalProfileJourney(Journey):
    """Geolocated maps profile visit: browse, photos, reviews, website -> dwell."""

    lands_on_search = False

    @property
    def journey_type(self) -> str:
        return "local_profile"

    def validate(self, params: JobParams) -> None:
        if not params.cid:
            msg = "local_profile journey requires a cid"
            raise InvalidParamsError(msg)
        if not params.latitude or not params.longitude:
            msg = "local_profile journey requires latitude and longitude"
            raise InvalidParamsError(msg)

    async def execute(self, ctx: JourneyContext) -> Outcome:
        params = ctx.params
        page = ctx.page
        grid = generate_grid(
            params.latitude or 0.0, params.longitude or 0.0, params.grid_size, params.spacing_miles,
        )
        point = ctx.timing.pick(grid)
        ctx.log.log(
            "grid_point_selected",
            f"({point.lat:.5f}, {point.lng:.5f}) row:{point.row} col:{point.col}",
        )

        await pin_location(ctx, point)
        referrer = ctx.timing.pick(REFERRAL_SOURCES)
        await page.set_extra_http_headers({"Referer": referrer})
        ctx.log.log("referral_set", referrer)

        url = maps_url(point, params.cid)
        ctx.enter(JourneyState.SEARCHING)
        try:
            await page.goto(url, wait_until="domcontentloaded")
        except PlaywrightError as e:
            ctx.log.log("maps_navigation_warning", str(e)[:80])
        await ctx.timing.pause(3000, 5000)
        ctx.log.log("maps_loaded", page.url[:120])

        keep_web = await first_visible(page, KEEP_WEB_SELECTORS)
        if keep_web is not None:
            await self._try_click(keep_web, ctx, "maps_popup_dismissed")
            await ctx.timing.pause(1500, 3000)
        await ctx.timing.pause(3000, 6000)

        ctx.enter(JourneyState.SCANNING)
        interactions = await self._browse_profile(ctx)

        ctx.enter(JourneyState.TARGET_FOUND)
        website_page = await self._open_website(ctx)
        if website_page is not None:
            interactions.append("website")
            await ctx.dwell(max(MIN_WEBSITE_DWELL_MS, ctx.dwell_ms()), page=website_page)
        else:
            interactions.append("profile_dwell")
            await ctx.dwell(max(MIN_PROFILE_DWELL_MS, ctx.dwell_ms()))

        return Outcome(
            found=True,
            fields={
                "website_clicked": website_page is not None,
                "grid_point": asdict(point),
                "maps_url": url,
                "landed_url": (website_page or page).url,
                "interactions": interactions,
            },
        )

    async def _browse_profile(self, ctx: JourneyContext) -> list[str]:
        page = ctx.page
        interactions: list[str] = []
        title = await first_visible(page, TITLE_SELECTORS)
        if title is not None:
            ctx.log.log("business_found", ((await title.text_content()) or "")[:80])
            interactions.append("business_found")
        else:
            await ctx.timing.pause(3000, 5000)

        for _ in range(ctx.timing.between(3, 6)):
            await perform(page, ctx.behavior.scroll(ctx.timing.between(200, 500)), ctx.timing)
            await ctx.timing.pause(1000, 3000)
        interactions.append("scrolled")

        sections = ((PHOTOS_SELECTORS, "photos", 1), (REVIEWS_SELECTORS, "reviews", 3))
        for selectors, label, reads in sections:
            section = await first_visible(page, selectors)
            if section is None or not await self._try_click(section, ctx, f"{label}_clicked"):
                continue
            interactions.append(label)
            await ctx.timing.pause(4000, 8000)
            for _ in range(ctx.timing.between(1, reads + 1)):
                await perform(page, ctx.behavior.scroll(ctx.timing.between(200, 500)), ctx.timing)
                await ctx.timing.pause(2000, 4000)
            try:
                await page.go_back()
            except PlaywrightError as e:
                logger.debug("Back navigation failed: %s", e)
            await ctx.timing.pause(2000, 4000)
        return interactions

    async def _open_website(self, ctx: JourneyContext) -> Any:
        """Click the profile's website link; returns the page it opened on, or None."""
        page = ctx.page
        selectors = WEBSITE_SELECTORS
        if ctx.params.target_url:
            selectors = (*selectors, f'a[href*="{ctx.params.target_url}"]')
        website = await first_visible(page, selectors)
        if website is None:
            ctx.log.log("website_not_found")
            return None

        opened = await follow_link(ctx, website, "google.com/maps")
        if opened is None:
            ctx.log.log("website_not_opened")
        return opened

    async def _try_click(self, locator: Any, ctx: JourneyContext, action: str) -> bool:
        try:
            await human_click(ctx.page, ctx.behavior, locator)
        except PlaywrightError as e:
            logger.debug("%s failed: %s", action, e)
            return False
        ctx.log.log(action)
        return True
