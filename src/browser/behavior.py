"""Human behavior planning: typing, pointer paths, scrolling, idling, dwell.

Every planner is a pure function of a ``Timing`` random source and returns a
list of primitive actions. Nothing here touches a browser; the executor in
``src.browser.actions`` replays plans onto a page. With a seeded Timing the
same inputs always produce the same plan.

Plans also carry their own clock: ``plan_duration`` sums the time a plan
occupies, which is how idle and dwell loops decide when to stop.
"""

import logging
from dataclasses import dataclass, field

from src.core.timing import Timing

logger = logging.getLogger(__name__)

# Adjacent keys on a QWERTY layout, for typo injection.
ADJACENT_KEYS: dict[str, str] = {
    "q": "wa", "w": "qeas", "e": "wrds", "r": "etfs", "t": "rygs",
    "y": "tuhs", "u": "yijs", "i": "uoks", "o": "ipls", "p": "ol",
    "a": "qwsz", "s": "wedax", "d": "erfsc", "f": "rtgdv", "g": "tyhfb",
    "h": "uyjgn", "j": "iukhm", "k": "iojl", "l": "opk",
    "z": "asx", "x": "sdc", "c": "dfxv", "v": "fgcb", "b": "ghvn",
    "n": "hjbm", "m": "jkn",
}

TYPO_PROBABILITY = 0.04
INTER_BURST_PAUSE_PROBABILITY = 0.3
MIN_CHAR_DELAY_MS = 30
WHEEL_READ_PAUSE_PROBABILITY = 0.2
DWELL_WRAP_UP_MS = 5000


@dataclass(frozen=True)
class Pause:
    ms: int
    label: str = ""


@dataclass(frozen=True)
class MoveTo:
    x: int
    y: int


@dataclass(frozen=True)
class Wheel:
    dy: int


@dataclass(frozen=True)
class TypeChar:
    char: str
    delay_ms: int


@dataclass(frozen=True)
class PressKey:
    key: str


@dataclass(frozen=True)
class TouchSwipe:
    """A single finger drag: touchstart, touchmoves along ``points``, touchend."""

    points: tuple[tuple[int, int], ...]
    step_delay_ms: int


Action = Pause | MoveTo | Wheel | TypeChar | PressKey | TouchSwipe


@dataclass(frozen=True)
class Viewport:
    width: int = 1920
    height: int = 1080

    @property
    def is_mobile(self) -> bool:
        return self.width < 500


MOBILE_VIEWPORT = Viewport(390, 844)
DESKTOP_VIEWPORT = Viewport(1920, 1080)


def plan_duration(actions: list[Action]) -> int:
    """Milliseconds a plan occupies when replayed."""
    total = 0
    for a in actions:
        if isinstance(a, Pause):
            total += a.ms
        elif isinstance(a, TypeChar):
            total += a.delay_ms
        elif isinstance(a, TouchSwipe):
            total += a.step_delay_ms * max(len(a.points) - 1, 0)
    return total


@dataclass
class HumanBehavior:
    """Planner bound to one random source, viewport and pointer position.

    The pointer position is the only state: pointer paths start where the
    previous one ended.
    """

    timing: Timing
    viewport: Viewport = DESKTOP_VIEWPORT
    cursor: tuple[int, int] | None = field(default=None)

    # --- Pointer ---

    def random_point(self, margin: int = 100, bottom_margin: int | None = None) -> tuple[int, int]:
        w, h = self.viewport.width, self.viewport.height
        bottom = margin if bottom_margin is None else bottom_margin
        return (
            self.timing.between(margin, max(w - margin, margin + 1)),
            self.timing.between(margin, max(h - bottom, margin + 1)),
        )

    def pointer_path(self, target_x: int, target_y: int) -> list[Action]:
        """Move from the current position to the target via 3-6 waypoints.

        Lateral wobble shrinks linearly as the pointer approaches the target,
        and the last move lands exactly on the target.
        """
        start_x, start_y = self.cursor if self.cursor is not None else self.random_point()
        waypoints = self.timing.between(3, 7)
        plan: list[Action] = []
        for i in range(waypoints):
            progress = i / waypoints
            damping = 1 - progress
            wobble_x = (self.timing.roll() - 0.5) * 40 * damping
            wobble_y = (self.timing.roll() - 0.5) * 30 * damping
            x = round(start_x + (target_x - start_x) * progress + wobble_x)
            y = round(start_y + (target_y - start_y) * progress + wobble_y)
            plan.append(MoveTo(x, y))
            plan.append(Pause(self.timing.between(15, 60)))
        plan.append(MoveTo(target_x, target_y))
        self.cursor = (target_x, target_y)
        return plan

    # --- Typing ---

    def typing(self, text: str) -> list[Action]:
        """Bursty typing with occasional adjacent-key typos and corrections."""
        plan: list[Action] = [Pause(self.timing.between(800, 2500), "hesitate")]
        burst_speed = self.timing.between(100, 200)
        chars_in_burst = 0

        for i, c in enumerate(text):
            if chars_in_burst >= self.timing.between(3, 9):
                burst_speed = self.timing.between(80, 280)
                chars_in_burst = 0
                if self.timing.chance(INTER_BURST_PAUSE_PROBABILITY):
                    plan.append(Pause(self.timing.between(300, 900), "burst"))

            if self.timing.chance(TYPO_PROBABILITY) and i > 2 and c.isalpha():
                neighbors = ADJACENT_KEYS.get(c.lower(), "")
                if neighbors:
                    wrong = self.timing.pick(neighbors)
                    plan.append(TypeChar(wrong, self.timing.between(40, 100)))
                    plan.append(Pause(self.timing.between(150, 500), "notice_typo"))
                    plan.append(PressKey("Backspace"))
                    plan.append(Pause(self.timing.between(80, 300), "corrected"))

            delay = max(MIN_CHAR_DELAY_MS, self.timing.jitter(burst_speed, 40))
            plan.append(TypeChar(c, delay))
            chars_in_burst += 1

            if c == " ":
                plan.append(Pause(self.timing.between(200, 600), "word_gap"))
        return plan

    # --- Scrolling ---

    def scroll(self, distance: int) -> list[Action]:
        """Scroll down by roughly ``distance`` pixels, wheel or touch."""
        if self.viewport.is_mobile:
            return self._swipes(distance)
        return self._wheel(distance)

    def scroll_back(self, distance: int) -> list[Action]:
        """Scroll up a little, as when re-reading."""
        if self.viewport.is_mobile:
            return [self._swipe(distance, upward=False)]
        return [Wheel(-distance)]

    def _wheel(self, distance: int) -> list[Action]:
        plan: list[Action] = []
        scrolled = 0
        while scrolled < distance:
            chunk = self.timing.between(80, 250)
            plan.append(Wheel(chunk))
            plan.append(Pause(self.timing.between(30, 120)))
            scrolled += chunk
            if self.timing.chance(WHEEL_READ_PAUSE_PROBABILITY):
                plan.append(Pause(self.timing.between(800, 2500), "reading"))
        return plan

    def _swipes(self, distance: int) -> list[Action]:
        plan: list[Action] = []
        scrolled = 0
        while scrolled < distance:
            swipe_distance = self.timing.between(100, 350)
            plan.append(self._swipe(swipe_distance, upward=True))
            scrolled += swipe_distance
            plan.append(self._swipe_pause())
        return plan

    def _swipe(self, distance: int, *, upward: bool) -> TouchSwipe:
        start_x = self.timing.between(120, 280)
        if upward:
            start_y = self.timing.between(500, 700)
            end_y = max(100, start_y - distance)
        else:
            start_y = self.timing.between(150, 350)
            end_y = min(self.viewport.height - 100, start_y + distance)
        steps = self.timing.between(8, 20)
        step_delay = self.timing.between(8, 25)
        points: list[tuple[int, int]] = [(start_x, start_y)]
        for i in range(1, steps + 1):
            progress = i / steps
            eased = 1 - (1 - progress) ** 2
            y = round(start_y + (end_y - start_y) * eased)
            x = round(start_x + (self.timing.roll() - 0.5) * 4)
            points.append((x, y))
        return TouchSwipe(points=tuple(points), step_delay_ms=step_delay)

    def _swipe_pause(self) -> Pause:
        kind = self.timing.roll()
        if kind < 0.15:
            return Pause(self.timing.between(1500, 4000), "long")
        if kind < 0.4:
            return Pause(self.timing.between(500, 1200), "medium")
        return Pause(self.timing.between(150, 400), "quick")

    # --- Idle and dwell ---

    def idle(self, min_ms: int, max_ms: int) -> list[Action]:
        """Fidget for a bounded time: wiggles, micro scrolls, plain waits."""
        budget = self.timing.between(min_ms, max_ms)
        plan: list[Action] = []
        while plan_duration(plan) < budget:
            action = self.timing.roll()
            if action < 0.3:
                x, y = self.random_point()
                plan.append(MoveTo(x, y))
                self.cursor = (x, y)
                plan.append(Pause(self.timing.between(200, 800), "wiggle"))
            elif action < 0.5:
                if self.viewport.is_mobile:
                    plan.extend(self._swipes(self.timing.between(30, 100)))
                else:
                    plan.append(Wheel(self.timing.between(20, 80)))
                plan.append(Pause(self.timing.between(400, 1200), "micro_scroll"))
            else:
                plan.append(Pause(self.timing.between(500, 2000), "think"))
        return plan

    def dwell(self, dwell_ms: int) -> list[Action]:
        """Time-on-page routine: quick scan, weighted browsing loop, wrap-up."""
        plan: list[Action] = [Pause(self.timing.between(1500, 3000), "land")]
        plan.extend(self.scroll(self.timing.between(200, 400)))

        while plan_duration(plan) < dwell_ms - DWELL_WRAP_UP_MS:
            behavior = self.timing.roll()
            if behavior < 0.35:
                plan.append(Pause(self.timing.between(2000, 5000), "read"))
                plan.extend(self.scroll(self.timing.between(100, 300)))
            elif behavior < 0.55:
                plan.extend(self.scroll_back(self.timing.between(50, 200)))
                plan.append(Pause(self.timing.between(1000, 3000), "reread"))
            elif behavior < 0.7:
                x, y = self.random_point(bottom_margin=200)
                plan.extend(self.pointer_path(x, y))
                plan.append(Pause(self.timing.between(500, 2000), "hover"))
            elif behavior < 0.85:
                plan.extend(self.idle(2000, 5000))
            else:
                plan.extend(self.scroll(self.timing.between(300, 600)))
                plan.append(Pause(self.timing.between(800, 2000), "skim"))

        plan.extend(self.scroll(self.timing.between(200, 500)))
        plan.append(Pause(self.timing.between(1000, 3000), "settle"))
        return plan
