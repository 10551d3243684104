"""Challenge solving service client (2Captcha task API).

Protocol: ``createTask`` returns a task id, ``getTaskResult`` is polled at a
fixed interval until the token is ready, the service reports an error, or the
poll budget runs out.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Literal

import httpx
from pydantic import BaseModel

from src.core.config import CaptchaConfig
from src.core.errors import SolverError
from src.core.schemas import CaptchaChallenge, ProxyEgress

logger = logging.getLogger(__name__)


class PollResult(BaseModel):
    """One poll answer: ``status`` is pending, ready or error."""

    status: Literal["pending", "ready", "error"]
    token: str = ""
    error: str = ""


class SolverService(ABC):
    """Base class every solving backend implements."""

    @abstractmethod
    async def submit(self, challenge: CaptchaChallenge, proxy: ProxyEgress | None) -> str:
        """Create a solving task and return its identifier."""

    @abstractmethod
    async def poll(self, task_id: str) -> PollResult:
        """Ask for the state of a previously created task."""


def build_task(challenge: CaptchaChallenge, proxy: ProxyEgress | None) -> dict[str, Any]:
    """Task payload for a reCAPTCHA v2 challenge, proxied when possible."""
    task: dict[str, Any] = {
        "type": "RecaptchaV2Task" if proxy is not None else "RecaptchaV2TaskProxyless",
        "websiteURL": challenge.page_url,
        "websiteKey": challenge.site_key,
    }
    if challenge.data_s:
        task["recaptchaDataSValue"] = challenge.data_s
    if challenge.user_agent:
        task["userAgent"] = challenge.user_agent
    if challenge.cookies:
        task["cookies"] = challenge.cookies
    if proxy is not None:
        task["proxyType"] = "http"
        task["proxyAddress"] = proxy.host
        task["proxyPort"] = proxy.port
        if proxy.username:
            task["proxyLogin"] = proxy.username
        if proxy.password:
            task["proxyPassword"] = proxy.password
    return task


class TwoCaptchaSolver(SolverService):
    """Solving backend on the 2Captcha ``createTask`` API.

    The API key is read from the environment variable named in config.
    ``transport`` lets tests swap in ``httpx.MockTransport``.
    """

    def __init__(
        self,
        config: CaptchaConfig,
        *,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._api_key = api_key if api_key is not None else os.environ.get(config.api_key_env, "")
        self._transport = transport
        if not self._api_key:
            logger.warning("%s not set - challenge solving will fail", config.api_key_env)

    async def _request(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        if not self._api_key:
            msg = f"{self._config.api_key_env} environment variable is required"
            raise SolverError(msg)
        body = {"clientKey": self._api_key, **payload}
        try:
            async with httpx.AsyncClient(
                base_url=self._config.api_url, timeout=30, transport=self._transport,
            ) as client:
                response = await client.post(f"/{endpoint}", json=body)
                response.raise_for_status()
                return response.json()  # type: ignore[no-any-return]
        except (httpx.HTTPError, ValueError) as e:
            msg = f"solver request {endpoint} failed: {e}"
            raise SolverError(msg) from e

    async def submit(self, challenge: CaptchaChallenge, proxy: ProxyEgress | None) -> str:
        task = build_task(challenge, proxy)
        logger.info(
            "Submitting %s (data-s: %s, proxy: %s)",
            task["type"], "yes" if challenge.data_s else "no", "yes" if proxy else "no",
        )
        data = await self._request("createTask", {"task": task})
        if data.get("errorId", 0) != 0:
            msg = f"createTask failed: {data.get('errorDescription') or data.get('errorCode')}"
            raise SolverError(msg)
        task_id = data.get("taskId")
        if not task_id:
            msg = "createTask returned no taskId"
            raise SolverError(msg)
        return str(task_id)

    async def poll(self, task_id: str) -> PollResult:
        data = await self._request("getTaskResult", {"taskId": task_id})
        if data.get("errorId", 0) != 0:
            return PollResult(
                status="error",
                error=str(data.get("errorDescription") or data.get("errorCode")),
            )
        if data.get("status") == "ready":
            solution = data.get("solution") or {}
            return PollResult(
                status="ready",
                token=solution.get("gRecaptchaResponse") or solution.get("token", ""),
            )
        return PollResult(status="pending")


async def solve(
    solver: SolverService,
    challenge: CaptchaChallenge,
    proxy: ProxyEgress | None,
    config: CaptchaConfig,
) -> str:
    """Submit a challenge and poll until a token arrives.

    Raises:
        SolverError: The service reported an error or the poll budget ran out.
    """
    task_id = await solver.submit(challenge, proxy)
    logger.info("Solver task %s created, waiting...", task_id)
    for attempt in range(1, config.max_polls + 1):
        await asyncio.sleep(config.poll_interval_s)
        result = await solver.poll(task_id)
        if result.status == "ready" and result.token:
            logger.info("Solver task %s ready after %d polls", task_id, attempt)
            return result.token
        if result.status == "error":
            msg = f"solver error: {result.error}"
            raise SolverError(msg)
    msg = f"solver timeout: no solution after {config.max_polls} polls"
    raise SolverError(msg)
