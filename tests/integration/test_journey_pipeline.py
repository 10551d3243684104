"""Integration test: queue -> orchestrator -> driver -> mixed journey on a scripted page."""

import asyncio
import sqlite3
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.browser.captcha import EXTRACT_CHALLENGE_JS
from src.browser.solver import PollResult, SolverService
from src.core.config import Settings, WorkerConfig
from src.core.db import enqueue_job, get_execution_logs, get_job, init_db
from src.core.errors import ProvisioningError
from src.core.schemas import CaptchaChallenge, ExecutionLog, JobParams, JobStatus, ProxyEgress
from src.core.timing import Timing
from src.journeys.driver import JourneyDriver
from src.journeys.strategies import SNAPSHOT_JS
from src.pipeline.orchestrator import Orchestrator

RESULTS_URL = "https://www.google.com/search?q=pizza+springfield"
SORRY_URL = "https://www.google.com/sorry/index?continue=x"

# ---------------------------------------------------------------------------
# Scripted browser
# ---------------------------------------------------------------------------


def _anchor(index: int, href: str, text: str, **flags: object) -> dict[str, Any]:
    anchor: dict[str, Any] = {
        "dom_index": index,
        "href": href,
        "text": text,
        "heading": "",
        "in_local_pack": False,
        "in_ad": False,
        "in_results": True,
        "visible": True,
        "y": 100.0 * index,
    }
    anchor.update(flags)
    return anchor


SERP = [
    _anchor(0, "https://ads.example", "Pizza coupons", heading="Pizza Coupons", in_ad=True),
    _anchor(1, "https://tonys.example", "Tony's", in_local_pack=True),
    _anchor(2, "https://joespizza.example", "Joe's Pizza", in_local_pack=True),
    _anchor(3, "https://yelp.example/pizza", "Yelp", heading="Top 10 Pizza Places"),
]


class FakeSerpPage:
    """Answers the journey's page calls from a fixed results snapshot."""

    def __init__(
        self, url: str = RESULTS_URL, anchors: list[dict[str, Any]] | None = None,
    ) -> None:
        self.url = url
        self.anchors = SERP if anchors is None else anchors
        self.viewport_size = {"width": 1280, "height": 800}
        self.mouse = MagicMock(move=AsyncMock(), wheel=AsyncMock())
        self.keyboard = MagicMock(type=AsyncMock(), press=AsyncMock())
        self.wait_for_load_state = AsyncMock()
        self.wait_for_selector = AsyncMock()
        self.title = AsyncMock(return_value="pizza springfield - Search")
        self.clicked: list[int] = []

    def _element(self, index: int | None = None) -> MagicMock:
        element = MagicMock()
        element.is_visible = AsyncMock(return_value=False)
        element.scroll_into_view_if_needed = AsyncMock()
        box = {"x": 50, "y": 80, "width": 300, "height": 30}
        element.bounding_box = AsyncMock(return_value=box)

        async def click(**kwargs: object) -> None:
            if index is not None:
                self.clicked.append(index)

        element.click = AsyncMock(side_effect=click)
        return element

    def locator(self, selector: str) -> MagicMock:
        wrapper = MagicMock()
        wrapper.first = self._element()
        wrapper.nth = MagicMock(side_effect=self._element)
        return wrapper

    async def evaluate(self, script: str, arg: object = None) -> object:
        if script == SNAPSHOT_JS:
            return self.anchors
        if script == EXTRACT_CHALLENGE_JS:
            return {}
        return None


class FakeSession:
    def __init__(
        self, session_id: str, page: FakeSerpPage, enter_error: Exception | None = None,
    ) -> None:
        self.session_id = session_id
        self.page = page
        self.context = MagicMock(cookies=AsyncMock(return_value=[]))
        self.proxy = ProxyEgress(host="gw.example", port=10001)
        self.land = AsyncMock()
        self.exits = 0
        self.enter_error = enter_error

    async def __aenter__(self) -> "FakeSession":
        if self.enter_error is not None:
            raise self.enter_error
        return self

    async def __aexit__(self, *exc: object) -> None:
        self.exits += 1


class SessionPool:
    """Hands out one scripted session per attempt."""

    def __init__(
        self, pages: list[FakeSerpPage], enter_errors: list[Exception | None] | None = None,
    ) -> None:
        self.pages = list(pages)
        self.enter_errors = list(enter_errors or [])
        self.sessions: list[FakeSession] = []

    def __call__(self, params: JobParams, timing: Timing, log: ExecutionLog) -> FakeSession:
        page = self.pages.pop(0) if self.pages else FakeSerpPage()
        error = self.enter_errors.pop(0) if self.enter_errors else None
        session = FakeSession(f"prof-{len(self.sessions) + 1}", page, error)
        self.sessions.append(session)
        return session


class NullSolver(SolverService):
    async def submit(self, challenge: CaptchaChallenge, proxy: ProxyEgress | None) -> str:
        raise AssertionError("no solvable challenge expected")

    async def poll(self, task_id: str) -> PollResult:
        raise AssertionError("no solvable challenge expected")


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _no_sleep():  # type: ignore[no-untyped-def]
    with patch.object(asyncio, "sleep", new_callable=AsyncMock):
        yield


@pytest.fixture
def db(tmp_path: Path) -> sqlite3.Connection:
    return init_db(tmp_path / "queue.db")


def _orchestrator(db: sqlite3.Connection, pool: SessionPool) -> Orchestrator:
    settings = Settings(worker=WorkerConfig(retry_backoff_s=(0.0, 0.0), max_attempts=3))
    driver = JourneyDriver(settings, pool, NullSolver(), Timing(seed=7))
    return Orchestrator(db, settings, driver, Timing(seed=7))


JOB = {
    "keyword": "pizza springfield",
    "targetBusiness": "Joe's Pizza",
    "target_url": "joespizza.example",
    "journeyType": "mixed",
    "dwellTimeMs": 3000,
}


class TestJourneyPipeline:
    async def test_map_pack_target_clicked(self, db: sqlite3.Connection) -> None:
        page = FakeSerpPage()
        pool = SessionPool([page])
        orch = _orchestrator(db, pool)
        job_id = enqueue_job(db, JOB)

        assert await orch.poll_once() == 1
        await orch.drain()

        job = get_job(db, job_id)
        assert job is not None
        assert job.status is JobStatus.COMPLETED
        assert job.result is not None
        assert job.result["found"] is True
        assert job.result["clicked_rank"] == 2
        assert job.result["clicked_source"] == "local_pack"
        assert job.result["session_id"] == "prof-1"
        assert job.result["targetBusiness"] == "Joe's Pizza"
        assert page.clicked == [2]
        assert pool.sessions[0].exits == 1

        actions = [s.action for s in get_execution_logs(db, job_id)]
        assert actions[0] == "journey_start"
        assert "keyword_typed" in actions
        assert "local_pack_target_clicked" in actions
        assert actions[-1] == "dwell_complete"
        assert job.result["step_count"] == len(actions)

    async def test_target_absent(self, db: sqlite3.Connection) -> None:
        pool = SessionPool([FakeSerpPage(anchors=SERP[:2])])
        orch = _orchestrator(db, pool)
        job_id = enqueue_job(db, JOB)

        await orch.poll_once()
        await orch.drain()

        job = get_job(db, job_id)
        assert job is not None
        assert job.status is JobStatus.COMPLETED
        assert job.result is not None
        assert job.result["found"] is False
        assert job.result["clicked_rank"] == 0
        assert "target_not_found" in [s.action for s in get_execution_logs(db, job_id)]

    async def test_blocked_session_retried_on_fresh_identity(
        self, db: sqlite3.Connection,
    ) -> None:
        blocked = FakeSerpPage(url=SORRY_URL)
        good = FakeSerpPage()
        pool = SessionPool([blocked, good])
        orch = _orchestrator(db, pool)
        job_id = enqueue_job(db, JOB)

        await orch.poll_once()
        await orch.drain()

        assert [s.session_id for s in pool.sessions] == ["prof-1", "prof-2"]
        assert all(s.exits == 1 for s in pool.sessions)
        assert blocked.clicked == []
        assert good.clicked == [2]
        job = get_job(db, job_id)
        assert job is not None
        assert job.status is JobStatus.COMPLETED
        assert job.result is not None
        assert job.result["session_id"] == "prof-2"

    async def test_provisioning_failure_retried_on_new_profile(
        self, db: sqlite3.Connection,
    ) -> None:
        unused = FakeSerpPage()
        good = FakeSerpPage()
        pool = SessionPool([unused, good], [ProvisioningError("profile start failed"), None])
        orch = _orchestrator(db, pool)
        job_id = enqueue_job(db, JOB)

        await orch.poll_once()
        await orch.drain()

        assert len(pool.sessions) == 2
        assert unused.clicked == []
        assert good.clicked == [2]
        job = get_job(db, job_id)
        assert job is not None
        assert job.status is JobStatus.COMPLETED
        assert job.result is not None
        assert job.result["session_id"] == "prof-2"

    async def test_every_attempt_blocked(self, db: sqlite3.Connection) -> None:
        pool = SessionPool([FakeSerpPage(url=SORRY_URL) for _ in range(3)])
        orch = _orchestrator(db, pool)
        job_id = enqueue_job(db, JOB)

        await orch.poll_once()
        await orch.drain()

        assert len(pool.sessions) == 3
        job = get_job(db, job_id)
        assert job is not None
        assert job.status is JobStatus.FAILED
        assert job.error is not None
        assert job.error.startswith("ip_blocked:")

    async def test_invalid_job_fails_without_session(self, db: sqlite3.Connection) -> None:
        pool = SessionPool([])
        orch = _orchestrator(db, pool)
        job_id = enqueue_job(db, {"targetBusiness": "Joe's Pizza"})

        await orch.poll_once()
        await orch.drain()

        assert pool.sessions == []
        job = get_job(db, job_id)
        assert job is not None
        assert job.status is JobStatus.FAILED
        assert job.error is not None
        assert job.error.startswith("invalid_params:")
