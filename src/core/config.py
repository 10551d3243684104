"""Configuration models and YAML loader for the journey worker."""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator


def _ordered_range(v: tuple[int, int]) -> tuple[int, int]:
    low, high = v
    if low > high:
        msg = f"range lower bound {low} exceeds upper bound {high}"
        raise ValueError(msg)
    return v


class DatabaseConfig(BaseModel):
    """Job queue database configuration."""

    path: str = "data/queue.db"


class WorkerConfig(BaseModel):
    """Poll loop, concurrency, timeout and retry settings."""

    poll_interval_s: float = Field(default=60.0, gt=0.0)
    max_concurrent: int = Field(default=1, ge=1)
    job_timeout_s: float = Field(default=300.0, gt=0.0)
    max_attempts: int = Field(default=5, ge=1, le=10)
    retry_backoff_s: tuple[float, float] = (2.0, 5.0)
    stale_after_minutes: int = Field(default=10, ge=1)
    default_journey: str = "mixed"

    @field_validator("retry_backoff_s")
    @classmethod
    def backoff_ordered(cls, v: tuple[float, float]) -> tuple[float, float]:
        if v[0] < 0 or v[0] > v[1]:
            msg = "retry_backoff_s must be [min, max] with 0 <= min <= max"
            raise ValueError(msg)
        return v


class BrowserConfig(BaseModel):
    """Browser session configuration."""

    cookies_path: str = "config/cookies.json"
    timeout_ms: int = Field(default=30000, ge=1000)
    connect_timeout_ms: int = Field(default=30000, ge=1000)
    navigation_timeout_ms: int = Field(default=60000, ge=1000)
    search_url: str = "https://www.google.com/?gl=us&hl=en"
    default_dwell_ms: tuple[int, int] = (15000, 45000)

    @field_validator("default_dwell_ms")
    @classmethod
    def dwell_ordered(cls, v: tuple[int, int]) -> tuple[int, int]:
        return _ordered_range(v)


class ProxyConfig(BaseModel):
    """Rotating proxy gateway. Credentials come from the environment."""

    host: str = "us.decodo.com"
    base_port: int = Field(default=10001, ge=1, le=65535)
    port_span: int = Field(default=10, ge=1)
    user_env: str = "PROXY_USER"
    pass_env: str = "PROXY_PASS"
    mobile_user_env: str = "PROXY_MOBILE_USER"
    mobile_pass_env: str = "PROXY_MOBILE_PASS"

    def credentials(self, mobile: bool) -> tuple[str, str, str]:
        """Return (username, password, egress kind) for the device class.

        Mobile credentials are used only when both are configured.
        """
        mobile_user = os.environ.get(self.mobile_user_env, "")
        mobile_pass = os.environ.get(self.mobile_pass_env, "")
        if mobile and mobile_user:
            return mobile_user, mobile_pass, "mobile"
        return (
            os.environ.get(self.user_env, ""),
            os.environ.get(self.pass_env, ""),
            "residential",
        )


class ProvisioningConfig(BaseModel):
    """Fingerprint profile provisioning service."""

    api_url: str = "https://api.gologin.com"
    cloud_url: str = "wss://cloudbrowser.gologin.com/connect"
    token_env: str = "GOLOGIN_TOKEN"
    request_timeout_s: float = Field(default=30.0, gt=0.0)


class CaptchaConfig(BaseModel):
    """Challenge solving service and resolution state machine tunables."""

    api_url: str = "https://api.2captcha.com"
    api_key_env: str = "TWOCAPTCHA_API_KEY"
    poll_interval_s: float = Field(default=5.0, ge=0.0)
    max_polls: int = Field(default=24, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    reload_settle_ms: tuple[int, int] = (500, 1000)
    redirect_wait_ms: tuple[int, int] = (2000, 4000)
    delayed_redirect_ms: int = Field(default=3000, ge=0)

    @field_validator("reload_settle_ms", "redirect_wait_ms")
    @classmethod
    def wait_ordered(cls, v: tuple[int, int]) -> tuple[int, int]:
        return _ordered_range(v)


class Settings(BaseModel):
    """Top-level settings loaded from YAML."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    provisioning: ProvisioningConfig = Field(default_factory=ProvisioningConfig)
    captcha: CaptchaConfig = Field(default_factory=CaptchaConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        path = Path(path)
        if not path.exists():
            msg = f"Config file not found: {path}"
            raise FileNotFoundError(msg)
        raw: dict[str, Any] = yaml.safe_load(path.read_text()) or {}
        return cls.model_validate(raw)
