"""Tests for randomized timing: Timing draws and random_sleep."""

import asyncio
from unittest.mock import AsyncMock, patch

from src.core.timing import Timing, random_sleep

# ---------------------------------------------------------------------------
# TestTiming
# ---------------------------------------------------------------------------


class TestTiming:
    """Timing: half-open ranges, seeding, helpers."""

    def test_between_half_open(self) -> None:
        t = Timing(seed=1)
        values = {t.between(3, 5) for _ in range(200)}
        assert values == {3, 4}

    def test_collapsed_range_returns_low(self) -> None:
        t = Timing(seed=1)
        assert t.between(7, 7) == 7
        assert t.between(9, 2) == 9

    def test_same_seed_same_sequence(self) -> None:
        a = Timing(seed=42)
        b = Timing(seed=42)
        assert [a.between(0, 1000) for _ in range(20)] == [b.between(0, 1000) for _ in range(20)]

    def test_jitter_bounds(self) -> None:
        t = Timing(seed=3)
        for _ in range(200):
            assert 60 <= t.jitter(100, 40) < 140

    def test_clustered_within_range(self) -> None:
        t = Timing(seed=5)
        for _ in range(200):
            assert 10 <= t.clustered(10, 20) < 20

    def test_chance_extremes(self) -> None:
        t = Timing(seed=7)
        assert not any(t.chance(0.0) for _ in range(50))
        assert all(t.chance(1.0) for _ in range(50))

    def test_pick_and_shuffle(self) -> None:
        t = Timing(seed=9)
        items = ["a", "b", "c"]
        assert t.pick(items) in items
        assert sorted(t.shuffled(items)) == items

    async def test_pause_sleeps_in_seconds(self) -> None:
        t = Timing(seed=11)
        with patch.object(asyncio, "sleep", new_callable=AsyncMock) as mock_sleep:
            ms = await t.pause(200, 600)
        assert 200 <= ms < 600
        mock_sleep.assert_awaited_once_with(ms / 1000)

    async def test_sleep_ms_skips_zero(self) -> None:
        with patch.object(asyncio, "sleep", new_callable=AsyncMock) as mock_sleep:
            await Timing().sleep_ms(0)
        mock_sleep.assert_not_called()


# ---------------------------------------------------------------------------
# TestRandomSleep
# ---------------------------------------------------------------------------


class TestRandomSleep:
    """random_sleep: floor enforcement, range, actual sleeping."""

    async def test_returns_duration_in_range(self) -> None:
        with patch.object(asyncio, "sleep", new_callable=AsyncMock):
            duration = await random_sleep(2.0, 5.0)
        assert 2.0 <= duration <= 5.0

    async def test_max_below_min_is_clamped(self) -> None:
        with patch.object(asyncio, "sleep", new_callable=AsyncMock):
            duration = await random_sleep(5.0, 2.0)
        assert duration == 5.0

    async def test_negative_min_clamped_to_zero(self) -> None:
        with patch.object(asyncio, "sleep", new_callable=AsyncMock):
            duration = await random_sleep(-1.0, 0.5)
        assert duration >= 0.0

    async def test_seeded_timing_is_reproducible(self) -> None:
        with patch.object(asyncio, "sleep", new_callable=AsyncMock):
            a = await random_sleep(2.0, 5.0, Timing(seed=4))
            b = await random_sleep(2.0, 5.0, Timing(seed=4))
        assert a == b

    async def test_actually_calls_asyncio_sleep(self) -> None:
        with patch.object(asyncio, "sleep", new_callable=AsyncMock) as mock_sleep:
            await random_sleep(0.1, 0.2)
        mock_sleep.assert_called_once()
        slept = mock_sleep.call_args[0][0]
        assert 0.1 <= slept <= 0.2
