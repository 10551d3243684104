"""Tests for the challenge resolution state machine against a scripted page."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.browser.captcha import (
    EXTRACT_CHALLENGE_JS,
    SUBMIT_TOKEN_JS,
    CaptchaResolver,
    CaptchaState,
    is_challenge_url,
)
from src.browser.solver import PollResult, SolverService
from src.core.config import CaptchaConfig
from src.core.errors import CaptchaError, CaptchaUnsolvedError, IpBlockedError, SolverError
from src.core.schemas import CaptchaChallenge, ExecutionLog, ProxyEgress
from src.core.timing import Timing

SORRY = "https://www.google.com/sorry/index?continue=https://www.google.com/search%3Fq%3Dpizza"
RESULTS = "https://www.google.com/search?q=pizza"
WIDGET = {"siteKey": "site-key", "dataS": "ds-1"}
PROXY = ProxyEgress(host="us.decodo.com", port=10002, username="u", password="p")


class FakeChallengePage:
    """Page whose URL changes on token submission and on F5, as scripted."""

    def __init__(
        self,
        url: str,
        widget: dict | None = None,
        after_submit: list[str] | None = None,
        after_reload: list[str] | None = None,
    ) -> None:
        self.url = url
        self.widget = WIDGET if widget is None else widget
        self.after_submit = list(after_submit or [])
        self.after_reload = list(after_reload or [])
        self.tokens: list[str] = []
        self.keyboard = MagicMock()
        self.keyboard.press = AsyncMock(side_effect=self._press)
        self.wait_for_load_state = AsyncMock()
        self.wait_for_selector = AsyncMock()

    async def _press(self, key: str) -> None:
        if key == "F5" and self.after_reload:
            self.url = self.after_reload.pop(0)

    async def evaluate(self, script: str, arg: object = None) -> object:
        if script == EXTRACT_CHALLENGE_JS:
            return self.widget
        if script == SUBMIT_TOKEN_JS:
            self.tokens.append(str(arg))
            if self.after_submit:
                self.url = self.after_submit.pop(0)
            return None
        return "Mozilla/5.0 Test"


class InstantSolver(SolverService):
    """Solver that answers on the first poll; ``fail_first`` submits raise."""

    def __init__(self, fail_first: int = 0) -> None:
        self.fail_first = fail_first
        self.submitted: list[CaptchaChallenge] = []

    async def submit(self, challenge: CaptchaChallenge, proxy: ProxyEgress | None) -> str:
        self.submitted.append(challenge)
        if len(self.submitted) <= self.fail_first:
            msg = "createTask failed: ERROR_NO_SLOT_AVAILABLE"
            raise SolverError(msg)
        return f"task-{len(self.submitted)}"

    async def poll(self, task_id: str) -> PollResult:
        return PollResult(status="ready", token=f"tok-{task_id}")


def _context() -> MagicMock:
    context = MagicMock()
    context.cookies = AsyncMock(return_value=[
        {"name": "NID", "value": "abc"},
        {"name": "AEC", "value": "def"},
    ])
    return context


def _resolver(solver: SolverService, log: ExecutionLog | None = None) -> CaptchaResolver:
    config = CaptchaConfig(poll_interval_s=0, redirect_wait_ms=(100, 200), delayed_redirect_ms=3000)
    return CaptchaResolver(solver, config, Timing(seed=1), log or ExecutionLog())


@pytest.fixture(autouse=True)
def _no_sleep():  # type: ignore[no-untyped-def]
    with patch.object(asyncio, "sleep", new_callable=AsyncMock):
        yield


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


class TestDetection:
    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            (SORRY, True),
            ("https://example.com/captcha/check", True),
            (RESULTS, False),
            ("https://www.google.com/", False),
        ],
    )
    def test_is_challenge_url(self, url: str, expected: bool) -> None:
        assert is_challenge_url(url) is expected

    async def test_clear_page_never_calls_solver(self) -> None:
        solver = InstantSolver()
        resolver = _resolver(solver)
        state = await resolver.resolve(FakeChallengePage(RESULTS), _context(), PROXY)
        assert state is CaptchaState.CLEAR
        assert resolver.history == [CaptchaState.CLEAR]
        assert solver.submitted == []


# ---------------------------------------------------------------------------
# Resolution paths
# ---------------------------------------------------------------------------


class TestResolve:
    async def test_solved_on_first_attempt(self) -> None:
        solver = InstantSolver()
        page = FakeChallengePage(SORRY, after_submit=[RESULTS])
        log = ExecutionLog()
        resolver = _resolver(solver, log)

        state = await resolver.resolve(page, _context(), PROXY)

        assert state is CaptchaState.CLEAR
        assert resolver.history == [
            CaptchaState.CHALLENGED,
            CaptchaState.SOLVING,
            CaptchaState.RESUBMITTED,
            CaptchaState.CLEAR,
        ]
        assert page.tokens == ["tok-task-1"]
        challenge = solver.submitted[0]
        assert challenge.site_key == "site-key"
        assert challenge.data_s == "ds-1"
        assert challenge.cookies == "NID=abc; AEC=def"
        assert challenge.user_agent == "Mozilla/5.0 Test"
        assert challenge.page_url == SORRY
        assert "captcha_bypassed" in log.actions()

    async def test_no_site_key_is_blocked_without_solver(self) -> None:
        solver = InstantSolver()
        page = FakeChallengePage(SORRY, widget={})
        resolver = _resolver(solver)
        state = await resolver.resolve(page, _context(), PROXY)
        assert state is CaptchaState.BLOCKED
        assert solver.submitted == []

    async def test_stale_token_retries_after_reload(self) -> None:
        solver = InstantSolver()
        page = FakeChallengePage(SORRY, after_submit=[SORRY, RESULTS], after_reload=[SORRY])
        log = ExecutionLog()
        resolver = _resolver(solver, log)

        state = await resolver.resolve(page, _context(), PROXY)

        assert state is CaptchaState.CLEAR
        assert len(solver.submitted) == 2
        page.keyboard.press.assert_awaited_once_with("F5")
        assert "captcha_stale" in log.actions()
        assert resolver.history.count(CaptchaState.CHALLENGED) == 2

    async def test_challenge_gone_after_reload(self) -> None:
        solver = InstantSolver()
        page = FakeChallengePage(SORRY, after_submit=[SORRY], after_reload=[RESULTS])
        log = ExecutionLog()
        state = await _resolver(solver, log).resolve(page, _context(), PROXY)
        assert state is CaptchaState.CLEAR
        assert len(solver.submitted) == 1
        assert "captcha_gone_after_reload" in log.actions()

    async def test_delayed_redirect_counts_as_solved(self) -> None:
        page = FakeChallengePage(SORRY)

        async def late_redirect(seconds: float) -> None:
            if seconds == 3.0 and page.tokens:
                page.url = RESULTS

        log = ExecutionLog()
        with patch.object(asyncio, "sleep", new_callable=AsyncMock, side_effect=late_redirect):
            state = await _resolver(InstantSolver(), log).resolve(page, _context(), PROXY)
        assert state is CaptchaState.CLEAR
        assert "captcha_delayed_redirect" in log.actions()

    async def test_all_attempts_exhausted(self) -> None:
        solver = InstantSolver()
        page = FakeChallengePage(SORRY)
        log = ExecutionLog()
        state = await _resolver(solver, log).resolve(page, _context(), PROXY)
        assert state is CaptchaState.CHALLENGED
        assert len(solver.submitted) == 3
        assert page.keyboard.press.await_count == 2
        assert log.actions()[-1] == "captcha_failed"

    async def test_solver_error_spends_one_attempt(self) -> None:
        solver = InstantSolver(fail_first=1)
        page = FakeChallengePage(SORRY, after_submit=[RESULTS])
        log = ExecutionLog()
        state = await _resolver(solver, log).resolve(page, _context(), PROXY)
        assert state is CaptchaState.CLEAR
        assert len(solver.submitted) == 2
        assert "captcha_error" in log.actions()


# ---------------------------------------------------------------------------
# Checkpoint
# ---------------------------------------------------------------------------


class TestCheckpoint:
    async def test_clear_returns_quietly(self) -> None:
        await _resolver(InstantSolver()).checkpoint(FakeChallengePage(RESULTS), _context(), None)

    async def test_blocked_raises_ip_blocked(self) -> None:
        page = FakeChallengePage(SORRY, widget={})
        with pytest.raises(IpBlockedError):
            await _resolver(InstantSolver()).checkpoint(page, _context(), PROXY)

    async def test_exhausted_raises_unsolved(self) -> None:
        with pytest.raises(CaptchaUnsolvedError) as exc_info:
            await _resolver(InstantSolver()).checkpoint(FakeChallengePage(SORRY), _context(), PROXY)
        assert isinstance(exc_info.value, CaptchaError)
