"""Core data models for the journey worker."""

import logging
import time
from datetime import datetime
from enum import Enum
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    CAPTCHA = "captcha"
    IP_BLOCKED = "ip_blocked"
    NAVIGATION = "navigation"
    PROVISIONING = "provisioning"
    INVALID_PARAMS = "invalid_params"
    PERSISTENCE = "persistence"
    UNEXPECTED = "unexpected"


class CandidateSource(str, Enum):
    """Scan strategy that produced a candidate, in scan priority order."""

    LOCAL_PACK = "local_pack"
    ORGANIC = "organic"
    BROAD_SCAN = "broad_scan"
    IMAGE = "image"


class JobParams(BaseModel):
    """Typed view over a job's free-form parameter payload.

    Both snake_case and camelCase keys are accepted. Keys this model does not
    know about are kept as extra fields so journeys can read extensions.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    keyword: str = Field(default="", validation_alias=AliasChoices("keyword", "keywords"))
    target_business: str = Field(
        default="",
        validation_alias=AliasChoices("target_business", "targetBusiness", "business_name"),
    )
    target_url: str = Field(
        default="", validation_alias=AliasChoices("target_url", "targetUrl", "website"),
    )
    wildcard: bool = False
    device: Literal["desktop", "mobile"] = "desktop"
    search_engine: str = Field(
        default="google.com", validation_alias=AliasChoices("search_engine", "searchEngine"),
    )
    journey_type: str | None = Field(
        default=None, validation_alias=AliasChoices("journey_type", "journeyType"),
    )
    dwell_time_ms: int | None = Field(
        default=None, ge=0, validation_alias=AliasChoices("dwell_time_ms", "dwellTimeMs"),
    )
    timeout_ms: int | None = Field(
        default=None, gt=0, validation_alias=AliasChoices("timeout_ms", "timeoutMs"),
    )
    max_pages: int = Field(
        default=5, ge=1, le=10, validation_alias=AliasChoices("max_pages", "maxPages"),
    )
    proxy_city: str = Field(default="", validation_alias=AliasChoices("proxy_city", "proxyCity"))
    proxy_state: str = Field(
        default="", validation_alias=AliasChoices("proxy_state", "proxyState"),
    )
    proxy_country: str = Field(
        default="United States", validation_alias=AliasChoices("proxy_country", "proxyCountry"),
    )
    latitude: float | None = None
    longitude: float | None = None
    grid_size: int = Field(default=7, ge=1, le=15)
    spacing_miles: float = Field(default=1.0, gt=0.0)
    cid: str = ""
    tier1_url: str = Field(default="", validation_alias=AliasChoices("tier1_url", "tier1Url"))
    target_destination: str = Field(
        default="",
        validation_alias=AliasChoices("target_destination", "targetDestination"),
    )
    image_base64: str = Field(
        default="", validation_alias=AliasChoices("image_base64", "imageBase64"),
    )

    @model_validator(mode="before")
    @classmethod
    def mobile_flag(cls, data: Any) -> Any:
        # Legacy payloads carry ``mobile: true`` instead of a device class.
        if isinstance(data, dict) and "device" not in data and data.get("mobile"):
            data = {**data, "device": "mobile"}
        return data

    @model_validator(mode="after")
    def derive_business(self) -> "JobParams":
        """Fall back to the target host as business name when none is given."""
        if not self.target_business and self.target_url:
            raw = self.target_url if "://" in self.target_url else f"https://{self.target_url}"
            host = urlparse(raw).hostname or ""
            self.target_business = host.removeprefix("www.")
        return self

    @property
    def is_mobile(self) -> bool:
        return self.device == "mobile"


# Fields where the job's own parameters override whatever a journey echoes back.
IDENTITY_FIELDS: tuple[str, ...] = (
    "keyword",
    "target_business",
    "target_url",
    "device",
    "wildcard",
    "search_engine",
    "journey_type",
)


class Job(BaseModel):
    """A queued job row."""

    id: int
    params: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    priority: int = 0
    scheduled_for: datetime = Field(default_factory=datetime.now)
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: dict[str, Any] | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


class ExecutionStep(BaseModel):
    """One entry of a run's audit trail."""

    model_config = ConfigDict(frozen=True)

    action: str
    elapsed_ms: int
    detail: str = ""


class ExecutionLog:
    """Append-only audit trail for a single journey run.

    Every entry is also emitted through ``logging`` so the worker console shows
    progress as it happens.
    """

    def __init__(self, clock: Any = time.monotonic) -> None:
        self._clock = clock
        self._start = clock()
        self._steps: list[ExecutionStep] = []

    @property
    def steps(self) -> list[ExecutionStep]:
        return list(self._steps)

    def elapsed_ms(self) -> int:
        return int((self._clock() - self._start) * 1000)

    def log(self, action: str, detail: str = "") -> None:
        elapsed = self.elapsed_ms()
        self._steps.append(ExecutionStep(action=action, elapsed_ms=elapsed, detail=detail))
        if detail:
            logger.info("[%.1fs] %s: %s", elapsed / 1000, action, detail)
        else:
            logger.info("[%.1fs] %s", elapsed / 1000, action)

    def actions(self) -> list[str]:
        return [s.action for s in self._steps]


class MatchCandidate(BaseModel):
    """A clickable result found by a scan strategy."""

    model_config = ConfigDict(frozen=True)

    text: str
    href: str
    source: CandidateSource
    position: int = Field(ge=1)
    dom_index: int = Field(default=-1, description="Index among the page's anchors")


class CaptchaChallenge(BaseModel):
    """Parameters of one challenge, valid for a single solving attempt."""

    model_config = ConfigDict(frozen=True)

    site_key: str
    data_s: str = ""
    page_url: str
    cookies: str = ""
    user_agent: str = ""


class ErrorInfo(BaseModel):
    """Structured failure attached to a JourneyResult."""

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str


class JourneyResult(BaseModel):
    """Outcome of a single journey attempt. Frozen once built."""

    model_config = ConfigDict(frozen=True)

    success: bool
    found: bool = False
    clicked_rank: int = Field(default=0, ge=0)
    duration_ms: int = Field(default=0, ge=0)
    error: ErrorInfo | None = None
    steps: list[ExecutionStep] = Field(default_factory=list)
    captcha: bool = False
    retryable: bool = False
    session_id: str = ""
    journey_type: str = ""
    outcome: dict[str, Any] = Field(default_factory=dict)


class ProxyEgress(BaseModel):
    """Proxy endpoint a session egresses through."""

    model_config = ConfigDict(frozen=True)

    host: str
    port: int
    username: str = ""
    password: str = ""
    kind: Literal["residential", "mobile"] = "residential"

    @property
    def server(self) -> str:
        return f"http://{self.host}:{self.port}"
