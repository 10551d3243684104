"""Randomized timing: bounded-random delays and jitter.

Design rules:
  - Every simulated human delay goes through a ``Timing`` instance, so a
    seeded instance makes a whole journey's timing reproducible.
  - No fixed asyncio.sleep() anywhere except via Timing / random_sleep().
  - Integer ranges follow a half-open [low, high) convention; a collapsed
    range returns ``low``.
"""

import asyncio
import logging
import random
from collections.abc import Sequence
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Timing:
    """Injectable random source plus the sleeps that consume it.

    Usage::

        timing = Timing(seed=42)
        delay = timing.between(800, 2500)
        await timing.pause(200, 600)
    """

    def __init__(self, seed: int | None = None, rng: random.Random | None = None) -> None:
        self._rng = rng if rng is not None else random.Random(seed)

    @property
    def rng(self) -> random.Random:
        return self._rng

    def between(self, low: int, high: int) -> int:
        """Random integer in [low, high). Returns low when high <= low."""
        if high <= low:
            return low
        return self._rng.randrange(low, high)

    def uniform(self, low: float, high: float) -> float:
        return self._rng.uniform(low, high)

    def chance(self, probability: float) -> bool:
        """True with the given probability."""
        return self._rng.random() < probability

    def roll(self) -> float:
        """A raw draw in [0, 1) for weighted branching."""
        return self._rng.random()

    def pick(self, items: Sequence[T]) -> T:
        return self._rng.choice(items)

    def shuffled(self, items: Sequence[T]) -> list[T]:
        out = list(items)
        self._rng.shuffle(out)
        return out

    def jitter(self, value: int, spread: int) -> int:
        """``value`` shifted by a random offset in [-spread, spread)."""
        return value + self.between(-spread, spread)

    def clustered(self, low: int, high: int) -> int:
        """Random integer in [low, high) that clusters toward ``low``."""
        t = self._rng.random() * self._rng.random()
        return int(low + t * (high - low))

    async def sleep_ms(self, ms: float) -> None:
        if ms > 0:
            await asyncio.sleep(ms / 1000)

    async def pause(self, low_ms: int, high_ms: int) -> int:
        """Sleep for a random duration in [low_ms, high_ms) milliseconds.

        Returns the actual pause in milliseconds.
        """
        duration = self.between(low_ms, high_ms)
        await self.sleep_ms(duration)
        return duration


async def random_sleep(min_s: float, max_s: float, timing: Timing | None = None) -> float:
    """Sleep for a random duration between min_s and max_s seconds.

    Floor enforcement: min_s is always respected as the absolute minimum.
    If max_s < min_s, max_s is raised to min_s.

    Returns the actual sleep duration (useful for testing).
    """
    floor = max(min_s, 0.0)
    ceiling = max(max_s, floor)
    source = timing.rng if timing is not None else random
    duration = source.uniform(floor, ceiling)
    await asyncio.sleep(duration)
    return duration
