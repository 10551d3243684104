"""Default journey: search, then map pack, organic and broad scans in that order."""

import logging

from src.journeys.base import Journey, JourneyContext, JourneyState, Outcome
from src.journeys.search import submit_search
from src.journeys.strategies import MIXED_STRATEGIES, click_candidate, scan, take_snapshot

logger = logging.getLogger(__name__)


class MixedJourney(Journey):
    """Search -> local pack -> organic -> broad scan -> click -> dwell."""

    @property
    def journey_type(self) -> str:
        return "mixed"

    async def execute(self, ctx: JourneyContext) -> Outcome:
        params = ctx.params
        await submit_search(ctx, params.keyword)

        ctx.enter(JourneyState.SCANNING)
        snapshot = await take_snapshot(ctx.page)
        hit = scan(snapshot, MIXED_STRATEGIES, params.target_business, params.target_url)
        if hit is None:
            ctx.enter(JourneyState.TARGET_NOT_FOUND)
            title = await ctx.page.title()
            ctx.log.log(
                "target_not_found",
                f'"{params.target_business}" not in results. Title: "{title}"',
            )
            return Outcome(found=False)

        candidate, score = hit
        ctx.enter(JourneyState.TARGET_FOUND)
        await click_candidate(ctx.page, ctx.behavior, candidate)
        ctx.log.log(
            f"{candidate.source.value}_target_clicked",
            f"pos {candidate.position} (score:{score}): {candidate.text[:100]}",
        )
        await ctx.dwell()
        return Outcome(
            found=True,
            clicked_rank=candidate.position,
            fields={"clicked_source": candidate.source.value, "match_score": score},
        )
