"""Runs one journey attempt end to end on a fresh session.

Every attempt gets its own session inside ``async with``, so teardown happens
on success, on any raised error, and on cancellation by the job deadline.
"""

import logging
import time
from collections.abc import Callable
from typing import Any

from patchright.async_api import Error as PlaywrightError
from pydantic import ValidationError

from src.browser.actions import viewport_of
from src.browser.behavior import HumanBehavior
from src.browser.captcha import CaptchaResolver
from src.browser.provisioning import ProvisioningService
from src.browser.session import BrowserSession
from src.browser.solver import SolverService
from src.core.config import Settings
from src.core.errors import CaptchaError, InvalidParamsError, JourneyError, ProvisioningError
from src.core.schemas import ErrorInfo, ErrorKind, ExecutionLog, JobParams, JourneyResult
from src.core.timing import Timing
from src.journeys import resolve_journey
from src.journeys.base import Journey, JourneyContext, JourneyState, Outcome

logger = logging.getLogger(__name__)

SessionFactory = Callable[[JobParams, Timing, ExecutionLog], Any]


def browser_session_factory(settings: Settings, provisioner: ProvisioningService) -> SessionFactory:
    """Factory producing real remote-browser sessions."""

    def factory(params: JobParams, timing: Timing, log: ExecutionLog) -> BrowserSession:
        return BrowserSession(settings.browser, settings.proxy, params, provisioner, timing, log)

    return factory


class JourneyDriver:
    """Turns raw job parameters into one JourneyResult.

    Args:
        settings: Loaded settings.
        session_factory: Builds the async context manager that owns a session.
        solver: Challenge solving backend.
        timing: Random source for every simulated delay.
        clock: Monotonic clock for the execution log.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: SessionFactory,
        solver: SolverService,
        timing: Timing | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._solver = solver
        self._timing = timing or Timing()
        self._clock = clock
        self.last_states: list[JourneyState] = []

    async def run(self, raw_params: dict[str, Any]) -> JourneyResult:
        log = ExecutionLog(self._clock)
        states = [JourneyState.INIT]
        self.last_states = states

        try:
            params = JobParams.model_validate(raw_params)
        except ValidationError as e:
            return self._invalid(log, str(raw_params.get("journey_type") or ""), str(e))
        journey = resolve_journey(params.journey_type, self._settings.worker.default_journey)
        try:
            journey.validate(params)
        except InvalidParamsError as e:
            return self._invalid(log, journey.journey_type, str(e))

        log.log("journey_start", f"[{journey.journey_type}] {params.keyword or params.tier1_url}")
        session = self._session_factory(params, self._timing, log)
        outcome: Outcome | None = None
        error: ErrorInfo | None = None
        captcha = False
        retryable = False
        try:
            async with session:
                ctx = self._context(session, params, log, states)
                outcome = await self._execute(journey, ctx)
        except JourneyError as e:
            log.log("error", str(e)[:200])
            error = ErrorInfo(kind=e.kind, message=str(e))
            captcha = isinstance(e, CaptchaError)
            retryable = isinstance(e, (CaptchaError, ProvisioningError))
        except PlaywrightError as e:
            log.log("error", str(e)[:200])
            error = ErrorInfo(kind=ErrorKind.NAVIGATION, message=str(e))
        finally:
            states.append(JourneyState.CLOSED)

        return JourneyResult(
            success=error is None,
            found=outcome.found if outcome else False,
            clicked_rank=outcome.clicked_rank if outcome else 0,
            duration_ms=log.elapsed_ms(),
            error=error,
            steps=log.steps,
            captcha=captcha,
            retryable=retryable,
            session_id=session.session_id,
            journey_type=journey.journey_type,
            outcome=dict(outcome.fields) if outcome else {},
        )

    def _context(
        self,
        session: Any,
        params: JobParams,
        log: ExecutionLog,
        states: list[JourneyState],
    ) -> JourneyContext:
        behavior = HumanBehavior(self._timing, viewport_of(session.page, params.is_mobile))
        resolver = CaptchaResolver(self._solver, self._settings.captcha, self._timing, log)
        return JourneyContext(
            session=session,
            params=params,
            settings=self._settings,
            behavior=behavior,
            resolver=resolver,
            timing=self._timing,
            log=log,
            states=states,
        )

    async def _execute(self, journey: Journey, ctx: JourneyContext) -> Outcome:
        if journey.lands_on_search:
            await ctx.session.land(self._settings.browser.search_url, ctx.behavior, ctx.resolver)
        return await journey.execute(ctx)

    def _invalid(self, log: ExecutionLog, journey_type: str, message: str) -> JourneyResult:
        log.log("invalid_params", message[:200])
        return JourneyResult(
            success=False,
            error=ErrorInfo(kind=ErrorKind.INVALID_PARAMS, message=message),
            steps=log.steps,
            duration_ms=log.elapsed_ms(),
            journey_type=journey_type,
        )
