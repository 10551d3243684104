"""Image search journey: find a known picture among thumbnails by perceptual hash.

Thumbnails are reduced to 8x8 grayscale in the page (canvas) and hashed here,
so the comparison logic stays in ``src.pipeline.scorer``.
"""

import logging
from urllib.parse import quote_plus

from patchright.async_api import Error as PlaywrightError
from pydantic import BaseModel

from src.browser.actions import first_visible, perform
from src.core.errors import InvalidParamsError, TransientNavigationError
from src.core.schemas import JobParams
from src.journeys.base import Journey, JourneyContext, JourneyState, Outcome
from src.journeys.search import submit_search
from src.journeys.strategies import visible_links
from src.pipeline.scorer import (
    BEST_MATCH_DISTANCE,
    HASH_BITS,
    IMMEDIATE_MATCH_DISTANCE,
    average_hash,
    domain_matches,
    hamming_distance,
)

logger = logging.getLogger(__name__)

MAX_SCAN_ROUNDS = 15
MAX_SCROLL_PX = 8000

IMAGES_TAB_SELECTORS: tuple[str, ...] = (
    'a:has-text("Images")',
    'a[href*="tbm=isch"]',
    'div[role="listitem"] a:has-text("Images")',
)

# 8x8 grayscale (ITU-R 601 luma) of an image source, or null when unreadable.
GRAYS_JS = """
(src) => new Promise((resolve) => {
  const img = new Image();
  img.crossOrigin = 'anonymous';
  img.onload = () => {
    try {
      const canvas = document.createElement('canvas');
      canvas.width = 8; canvas.height = 8;
      const ctx = canvas.getContext('2d');
      ctx.drawImage(img, 0, 0, 8, 8);
      const px = ctx.getImageData(0, 0, 8, 8).data;
      const grays = [];
      for (let i = 0; i < px.length; i += 4) {
        grays.push(0.299 * px[i] + 0.587 * px[i + 1] + 0.114 * px[i + 2]);
      }
      resolve(grays);
    } catch (e) { resolve(null); }
  };
  img.onerror = () => resolve(null);
  img.src = src;
})
"""

# Visible thumbnails with their centers and 8x8 grayscale.
THUMBNAILS_JS = (
    """
async () => {
  const toGrays = """
    + GRAYS_JS.strip()
    + """;
  const imgs = Array.from(document.querySelectorAll(
    'img[data-src], img[src^="data:image"], img[src^="https://encrypted-tbn"]'));
  const out = [];
  for (const [idx, img] of imgs.entries()) {
    if (img.offsetParent === null || img.naturalWidth <= 30) continue;
    const rect = img.getBoundingClientRect();
    const visible = rect.top >= 0 && rect.top < window.innerHeight
      && rect.width > 20 && rect.height > 20;
    if (!visible) continue;
    out.push({
      index: idx,
      x: Math.round(rect.x + rect.width / 2),
      y: Math.round(rect.y + rect.height / 2),
      grays: await toGrays(img.currentSrc || img.src),
    });
  }
  return out;
}
"""
)


class Thumbnail(BaseModel):
    index: int
    x: int
    y: int
    grays: list[float] | None = None


class ImageMatch(BaseModel):
    thumbnail: Thumbnail
    distance: int


def as_data_url(image_base64: str) -> str:
    if image_base64.startswith("data:"):
        return image_base64
    return f"data:image/png;base64,{image_base64}"


def best_thumbnail(
    thumbnails: list[Thumbnail],
    target_hash: str,
    best: ImageMatch | None = None,
) -> tuple[ImageMatch | None, bool]:
    """Fold thumbnails into the running best match.

    Returns the best match so far and whether it is close enough to stop.
    """
    for thumb in thumbnails:
        if not thumb.grays or len(thumb.grays) != HASH_BITS:
            continue
        distance = hamming_distance(target_hash, average_hash(thumb.grays))
        if best is None or distance < best.distance:
            best = ImageMatch(thumbnail=thumb, distance=distance)
        if distance <= IMMEDIATE_MATCH_DISTANCE:
            return best, True
    return best, False


class ImagesJourney(Journey):
    """Search -> Images -> perceptual match -> click -> optional click-through -> dwell."""

    @property
    def journey_type(self) -> str:
        return "images"

    def validate(self, params: JobParams) -> None:
        super().validate(params)
        if not params.image_base64:
            msg = "images journey requires image_base64"
            raise InvalidParamsError(msg)

    async def execute(self, ctx: JourneyContext) -> Outcome:
        params = ctx.params
        page = ctx.page
        await submit_search(ctx, params.keyword)
        await self._open_images(ctx)

        ctx.enter(JourneyState.SCANNING)
        target_grays = await page.evaluate(GRAYS_JS, as_data_url(params.image_base64))
        if not target_grays or len(target_grays) != HASH_BITS:
            msg = "target image could not be decoded"
            raise InvalidParamsError(msg)
        target_hash = average_hash(target_grays)
        ctx.log.log("target_hash", target_hash)

        match = await self._find(ctx, target_hash)
        if match is None:
            ctx.enter(JourneyState.TARGET_NOT_FOUND)
            return Outcome(found=False, fields={"image_distance": None})

        ctx.enter(JourneyState.TARGET_FOUND)
        thumb = match.thumbnail
        await ctx.timing.pause(500, 2000)
        await perform(page, ctx.behavior.pointer_path(thumb.x, thumb.y), ctx.timing)
        await ctx.timing.pause(200, 500)
        await page.mouse.click(thumb.x, thumb.y)
        ctx.log.log("image_clicked", f"thumbnail #{thumb.index} at ({thumb.x}, {thumb.y})")
        await ctx.timing.pause(2000, 4000)

        fields: dict[str, object] = {"image_distance": match.distance, "target_href": None}
        if params.target_destination:
            href = await self._visit(ctx)
            fields["target_href"] = href
            if href is not None:
                await ctx.dwell()
        return Outcome(found=True, clicked_rank=thumb.index + 1, fields=fields)

    async def _open_images(self, ctx: JourneyContext) -> None:
        page = ctx.page
        ctx.log.log("switching_to_images")
        tab = await first_visible(page, IMAGES_TAB_SELECTORS, timeout_ms=3000)
        await ctx.checkpoint()
        try:
            if tab is not None:
                box = await tab.bounding_box()
                if box:
                    cx = round(box["x"] + box["width"] / 2)
                    cy = round(box["y"] + box["height"] / 2)
                    await perform(page, ctx.behavior.pointer_path(cx, cy), ctx.timing)
                    await ctx.timing.pause(200, 600)
                await tab.click(timeout=5000)
            else:
                query = quote_plus(ctx.params.keyword)
                url = f"https://www.{ctx.params.search_engine}/search?q={query}&tbm=isch"
                await page.goto(url, wait_until="domcontentloaded")
            await page.wait_for_load_state("domcontentloaded", timeout=15000)
        except PlaywrightError as e:
            msg = f"could not open image results: {e}"
            raise TransientNavigationError(msg) from e
        await ctx.timing.pause(3000, 5000)
        await ctx.checkpoint()
        ctx.log.log("images_loaded", page.url[:80])

    async def _find(self, ctx: JourneyContext, target_hash: str) -> ImageMatch | None:
        page = ctx.page
        best: ImageMatch | None = None
        scrolled = 0
        for round_number in range(1, MAX_SCAN_ROUNDS + 1):
            if scrolled >= MAX_SCROLL_PX:
                break
            try:
                raw = await page.evaluate(THUMBNAILS_JS)
            except PlaywrightError as e:
                logger.debug("Thumbnail scan failed: %s", e)
                raw = []
            thumbnails = [Thumbnail.model_validate(t) for t in raw or []]
            ctx.log.log("scanning_images", f"{len(thumbnails)} thumbnails (round {round_number})")
            best, done = best_thumbnail(thumbnails, target_hash, best)
            if done and best is not None:
                ctx.log.log("image_match_found", f"distance {best.distance}/{HASH_BITS}")
                return best

            amount = ctx.timing.between(400, 700)
            await perform(page, ctx.behavior.scroll(amount), ctx.timing)
            scrolled += amount
            await ctx.timing.pause(1500, 3000)

        if best is not None and best.distance <= BEST_MATCH_DISTANCE:
            ctx.log.log("image_best_match", f"distance {best.distance}/{HASH_BITS}")
            return best
        distance = best.distance if best is not None else HASH_BITS
        ctx.log.log("image_not_found", f"best distance {distance}/{HASH_BITS}")
        return None

    async def _visit(self, ctx: JourneyContext) -> str | None:
        """Click through from the preview panel to the destination site."""
        page = ctx.page
        destination = ctx.params.target_destination
        links = await visible_links(page)
        wildcard = ctx.params.wildcard
        link = next((lk for lk in links if domain_matches(lk.href, destination, wildcard)), None)
        if link is None:
            ctx.log.log("visit_not_found", f"no link to {destination} in preview")
            return None
        await perform(page, ctx.behavior.pointer_path(link.x, link.y), ctx.timing)
        await ctx.timing.pause(300, 800)
        await page.mouse.click(link.x, link.y)
        ctx.log.log("visit_clicked", link.href[:80])
        try:
            await page.wait_for_load_state("domcontentloaded", timeout=15000)
        except PlaywrightError as e:
            logger.debug("Destination load wait failed: %s", e)
        await ctx.timing.pause(1000, 2000)
        return link.href
