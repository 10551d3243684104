"""Replays behavior plans onto a live page, plus small reusable page actions.

Design rules:
  - Pauses are asyncio sleeps through Timing, never page-side timers.
  - Selector probing failures are absorbed here and reported as False/None.
"""

import logging
from typing import Any

from patchright.async_api import Error as PlaywrightError

from src.browser.behavior import (
    DESKTOP_VIEWPORT,
    MOBILE_VIEWPORT,
    Action,
    HumanBehavior,
    MoveTo,
    Pause,
    PressKey,
    TouchSwipe,
    TypeChar,
    Viewport,
    Wheel,
)
from src.core.schemas import ExecutionLog
from src.core.timing import Timing

logger = logging.getLogger(__name__)

# Dispatches one finger drag as touchstart / touchmove... / touchend.
TOUCH_SWIPE_JS = """
async ({ points, stepDelay }) => {
  const sleep = (ms) => new Promise(r => setTimeout(r, ms));
  const touchAt = (x, y) => new Touch({
    identifier: 0,
    target: document.elementFromPoint(x, y) || document.body,
    clientX: x, clientY: y,
  });
  const [sx, sy] = points[0];
  const start = touchAt(sx, sy);
  document.dispatchEvent(new TouchEvent('touchstart',
    { touches: [start], changedTouches: [start], bubbles: true }));
  for (let i = 1; i < points.length; i++) {
    await sleep(stepDelay);
    const t = touchAt(points[i][0], points[i][1]);
    document.dispatchEvent(new TouchEvent('touchmove',
      { touches: [t], changedTouches: [t], bubbles: true, cancelable: true }));
  }
  const [ex, ey] = points[points.length - 1];
  const end = touchAt(ex, ey);
  document.dispatchEvent(new TouchEvent('touchend',
    { touches: [], changedTouches: [end], bubbles: true }));
}
"""

POPUP_SELECTORS: tuple[str, ...] = (
    'button:has-text("Not interested")',
    'button:has-text("No thanks")',
    'button:has-text("Dismiss")',
)

CONSENT_SELECTORS: tuple[str, ...] = (
    "#L2AGLb",
    'button:has-text("Accept all")',
    'button:has-text("Accept")',
)


async def perform(page: Any, plan: list[Action], timing: Timing) -> None:
    """Execute a behavior plan step by step."""
    for action in plan:
        if isinstance(action, Pause):
            await timing.sleep_ms(action.ms)
        elif isinstance(action, MoveTo):
            await page.mouse.move(action.x, action.y)
        elif isinstance(action, Wheel):
            await page.mouse.wheel(0, action.dy)
        elif isinstance(action, TypeChar):
            await page.keyboard.type(action.char, delay=action.delay_ms)
        elif isinstance(action, PressKey):
            await page.keyboard.press(action.key)
        elif isinstance(action, TouchSwipe):
            await page.evaluate(
                TOUCH_SWIPE_JS,
                {"points": [list(p) for p in action.points], "stepDelay": action.step_delay_ms},
            )


def viewport_of(page: Any, mobile: bool) -> Viewport:
    """Viewport from the page, falling back to the device class default."""
    size = page.viewport_size
    if size:
        return Viewport(size["width"], size["height"])
    return MOBILE_VIEWPORT if mobile else DESKTOP_VIEWPORT


async def human_click(page: Any, behavior: HumanBehavior, locator: Any) -> None:
    """Bring an element into view, move to it like a person, then click it."""
    await locator.scroll_into_view_if_needed()
    await behavior.timing.pause(800, 2000)
    box = await locator.bounding_box()
    if box:
        x = round(box["x"] + behavior.timing.between(10, max(11, min(200, int(box["width"])))))
        y = round(box["y"] + behavior.timing.between(2, max(3, min(15, int(box["height"])))))
        await perform(page, behavior.pointer_path(x, y), behavior.timing)
        await behavior.timing.pause(600, 1800)
    if behavior.timing.chance(0.4):
        await behavior.timing.pause(400, 1000)
    await locator.click()


async def first_visible(page: Any, selectors: tuple[str, ...], timeout_ms: int = 2000) -> Any:
    """Return the first visible locator among ``selectors``, or None."""
    for selector in selectors:
        try:
            candidate = page.locator(selector).first
            if await candidate.is_visible(timeout=timeout_ms):
                return candidate
        except PlaywrightError:
            logger.debug("Selector check failed: %s", selector, exc_info=True)
    return None


async def dismiss_popups(page: Any, timing: Timing, log: ExecutionLog) -> None:
    """Close interstitials and accept cookie consent when present."""
    popup = await first_visible(page, POPUP_SELECTORS)
    if popup is not None:
        try:
            await popup.click()
            log.log("popup_dismissed")
            await timing.pause(500, 1000)
        except PlaywrightError:
            logger.debug("Popup click failed", exc_info=True)

    consent = await first_visible(page, CONSENT_SELECTORS)
    if consent is not None:
        try:
            await consent.click()
            log.log("cookie_accepted")
        except PlaywrightError:
            logger.debug("Consent click failed", exc_info=True)
