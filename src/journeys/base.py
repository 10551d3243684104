"""Journey contract and the per-run context journeys execute against."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from src.browser.actions import perform
from src.browser.behavior import HumanBehavior
from src.browser.captcha import CaptchaResolver
from src.browser.session import BrowserSession
from src.core.config import Settings
from src.core.errors import InvalidParamsError
from src.core.schemas import ExecutionLog, JobParams
from src.core.timing import Timing

logger = logging.getLogger(__name__)


class JourneyState(str, Enum):
    INIT = "init"
    SEARCHING = "searching"
    SCANNING = "scanning"
    CAPTCHA_HANDLING = "captcha_handling"
    TARGET_FOUND = "target_found"
    TARGET_NOT_FOUND = "target_not_found"
    DWELLING = "dwelling"
    CLOSED = "closed"


@dataclass(frozen=True)
class Outcome:
    """What a journey achieved. ``fields`` are journey-specific result fields."""

    found: bool
    clicked_rank: int = 0
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass
class JourneyContext:
    """Everything one journey run needs, bound to one live session."""

    session: BrowserSession
    params: JobParams
    settings: Settings
    behavior: HumanBehavior
    resolver: CaptchaResolver
    timing: Timing
    log: ExecutionLog
    states: list[JourneyState] = field(default_factory=lambda: [JourneyState.INIT])

    @property
    def page(self) -> Any:
        return self.session.page

    @property
    def state(self) -> JourneyState:
        return self.states[-1]

    def enter(self, state: JourneyState) -> None:
        if self.state is not state:
            self.states.append(state)

    async def checkpoint(self) -> None:
        """Clear any challenge page, then resume the state we were in."""
        resume = self.state
        self.enter(JourneyState.CAPTCHA_HANDLING)
        await self.resolver.checkpoint(self.page, self.session.context, self.session.proxy)
        self.enter(resume)

    def dwell_ms(self) -> int:
        if self.params.dwell_time_ms is not None:
            return self.params.dwell_time_ms
        low, high = self.settings.browser.default_dwell_ms
        return self.timing.between(low, high)

    async def dwell(self, dwell_ms: int | None = None, page: Any = None) -> None:
        """Spend time on the current (or given) page like a reader would."""
        ms = self.dwell_ms() if dwell_ms is None else dwell_ms
        target = page if page is not None else self.page
        self.enter(JourneyState.DWELLING)
        self.log.log("dwelling", f"{round(ms / 1000)}s")
        await perform(target, self.behavior.dwell(ms), self.timing)
        self.log.log("dwell_complete", f"{round(self.log.elapsed_ms() / 1000)}s elapsed")


class Journey(ABC):
    """Base class every journey variant implements."""

    # Whether the driver lands on the search engine before execute().
    lands_on_search: bool = True

    @property
    @abstractmethod
    def journey_type(self) -> str:
        """Registry key of this journey (e.g. 'organic')."""

    def validate(self, params: JobParams) -> None:
        """Reject parameters this journey cannot run with.

        Raises:
            InvalidParamsError: A required parameter is missing.
        """
        if not params.keyword.strip():
            msg = f"{self.journey_type} journey requires a keyword"
            raise InvalidParamsError(msg)

    @abstractmethod
    async def execute(self, ctx: JourneyContext) -> Outcome:
        """Run the journey on an already acquired session."""
