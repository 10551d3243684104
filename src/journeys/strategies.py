"""Result-page snapshots and the scan strategies that read them.

The page is read once into a ``PageSnapshot``; every strategy is then a pure
function from that snapshot to an ordered candidate list. Candidates keep the
anchor's document index so the chosen one can be clicked afterwards.
"""

import logging
from collections.abc import Callable, Sequence
from typing import Any

from patchright.async_api import Error as PlaywrightError
from pydantic import BaseModel

from src.browser.actions import human_click
from src.browser.behavior import HumanBehavior
from src.core.errors import TransientNavigationError
from src.core.schemas import CandidateSource, MatchCandidate
from src.pipeline.scorer import select_target

logger = logging.getLogger(__name__)

# One pass over every anchor. Redirect links (/url?q=...) are resolved to
# their destination and each anchor is tagged with the blocks it sits in.
SNAPSHOT_JS = """
() => {
  const inside = (el, test) => {
    for (let node = el, depth = 0; node && depth < 12; node = node.parentElement, depth++) {
      if (test(node)) return true;
    }
    return false;
  };
  const isLocal = (n) => (n.getAttribute && (n.getAttribute('data-local-attribute') ||
      n.getAttribute('data-cid') !== null)) ||
    (n.classList && (n.classList.contains('VkpGBb') || n.classList.contains('rllt__details')));
  const isAd = (n) => n.id === 'tads' || n.id === 'bottomads' ||
    (n.getAttribute && (n.getAttribute('data-text-ad') !== null
      || n.getAttribute('data-rw') !== null)) ||
    (n.classList && (n.classList.contains('ads-ad') ||
      n.classList.contains('commercial-unit-desktop-top') ||
      n.classList.contains('commercial-unit-desktop-bottom')));
  const isResults = (n) => n.id === 'search' || n.id === 'rso';
  return Array.from(document.querySelectorAll('a')).map((a, index) => {
    let href = a.href || a.getAttribute('href') || '';
    if (href.includes('/url?')) {
      try {
        const u = new URL(href);
        const q = u.searchParams.get('q') || u.searchParams.get('url');
        if (q && q.startsWith('http')) href = q;
      } catch (e) {}
    }
    const h3 = a.querySelector('h3');
    const rect = a.getBoundingClientRect();
    return {
      dom_index: index,
      href: href,
      text: (a.textContent || '').trim().slice(0, 200),
      heading: h3 ? (h3.textContent || '').trim() : '',
      in_local_pack: inside(a, isLocal),
      in_ad: inside(a, isAd),
      in_results: inside(a, isResults),
      visible: rect.height > 0 && rect.width > 0,
      y: rect.y,
    };
  });
}
"""

# Visible anchors with their on-screen centers, for coordinate clicks.
VISIBLE_LINKS_JS = """
(selector) => Array.from(document.querySelectorAll(selector))
  .filter(a => a.offsetParent !== null)
  .map(a => {
    const rect = a.getBoundingClientRect();
    return {
      href: a.href,
      text: (a.textContent || '').trim().slice(0, 100),
      x: Math.round(rect.x + rect.width / 2),
      y: Math.round(rect.y + rect.height / 2),
      in_viewport: rect.top >= 0 && rect.top < window.innerHeight
        && rect.width > 0 && rect.height > 0,
    };
  })
"""

INTERNAL_HOST_MARKERS: tuple[str, ...] = (
    "google.com",
    "gstatic",
    "googleapis",
    "googleadservices",
    "accounts.google",
    "webcache",
)


class AnchorInfo(BaseModel):
    dom_index: int
    href: str = ""
    text: str = ""
    heading: str = ""
    in_local_pack: bool = False
    in_ad: bool = False
    in_results: bool = False
    visible: bool = True
    y: float = 0.0


class PageSnapshot(BaseModel):
    url: str = ""
    anchors: list[AnchorInfo] = []


class VisibleLink(BaseModel):
    href: str
    text: str = ""
    x: int
    y: int
    in_viewport: bool = False


Strategy = Callable[[PageSnapshot], list[MatchCandidate]]


def is_internal(href: str) -> bool:
    """Links that stay on the search engine (verticals, maps, caches, search pages)."""
    low = href.lower()
    if not low.startswith("http"):
        return True
    return any(marker in low for marker in INTERNAL_HOST_MARKERS)


def _candidates(
    anchors: list[AnchorInfo],
    source: CandidateSource,
    use_heading: bool = False,
) -> list[MatchCandidate]:
    return [
        MatchCandidate(
            text=a.heading if use_heading else a.text,
            href=a.href,
            source=source,
            position=i,
            dom_index=a.dom_index,
        )
        for i, a in enumerate(anchors, start=1)
    ]


def local_pack(snapshot: PageSnapshot) -> list[MatchCandidate]:
    """Business listings of the embedded map pack."""
    anchors = [a for a in snapshot.anchors if a.in_local_pack]
    return _candidates(anchors, CandidateSource.LOCAL_PACK)


def organic(snapshot: PageSnapshot) -> list[MatchCandidate]:
    """Headline links of the organic listing, ads and map pack excluded."""
    anchors = [
        a for a in snapshot.anchors
        if a.heading
        and not a.in_ad
        and not a.in_local_pack
        and a.href
        and not a.href.startswith("/search")
        and "google.com/search" not in a.href
        and "google.com/maps" not in a.href
        and len(a.heading) > 2
    ]
    return _candidates(anchors, CandidateSource.ORGANIC, use_heading=True)


def broad_scan(snapshot: PageSnapshot) -> list[MatchCandidate]:
    """Every link of the results area with some text to read."""
    anchors = [a for a in snapshot.anchors if a.in_results and a.href and len(a.text) >= 3]
    return _candidates(anchors, CandidateSource.BROAD_SCAN)


def external_links(snapshot: PageSnapshot) -> list[MatchCandidate]:
    """Visible links leaving the search engine; for layouts without headlines."""
    anchors = [
        a for a in snapshot.anchors
        if a.visible
        and len(a.text) > 2
        and not a.in_ad
        and not a.in_local_pack
        and not is_internal(a.href)
    ]
    return _candidates(anchors, CandidateSource.ORGANIC)


MIXED_STRATEGIES: tuple[Strategy, ...] = (local_pack, organic, broad_scan)


def scan(
    snapshot: PageSnapshot,
    strategies: Sequence[Strategy],
    target_business: str,
    target_domain: str,
) -> tuple[MatchCandidate, int] | None:
    """Try strategies in order; the first candidate over threshold wins."""
    for strategy in strategies:
        candidates = strategy(snapshot)
        logger.debug("%s: %d candidates", strategy.__name__, len(candidates))
        hit = select_target(candidates, target_business, target_domain)
        if hit is not None:
            return hit
    return None


async def take_snapshot(page: Any) -> PageSnapshot:
    """Read every anchor of the current page.

    Raises:
        TransientNavigationError: The page could not be read.
    """
    try:
        raw = await page.evaluate(SNAPSHOT_JS)
    except PlaywrightError as e:
        msg = f"could not read results page: {e}"
        raise TransientNavigationError(msg) from e
    return PageSnapshot(url=page.url, anchors=[AnchorInfo.model_validate(a) for a in raw or []])


async def visible_links(page: Any, selector: str = "a[href]") -> list[VisibleLink]:
    """Rendered links matching ``selector``, with their on-screen centers."""
    try:
        raw = await page.evaluate(VISIBLE_LINKS_JS, selector)
    except PlaywrightError as e:
        logger.debug("Link collection failed: %s", e)
        return []
    return [VisibleLink.model_validate(link) for link in raw or []]


async def click_candidate(page: Any, behavior: HumanBehavior, candidate: MatchCandidate) -> None:
    """Click the anchor a candidate was built from.

    Raises:
        TransientNavigationError: The anchor could not be clicked.
    """
    locator = page.locator("a").nth(candidate.dom_index)
    try:
        await human_click(page, behavior, locator)
    except PlaywrightError as e:
        msg = f"click on {candidate.source.value} #{candidate.position} failed: {e}"
        raise TransientNavigationError(msg) from e
