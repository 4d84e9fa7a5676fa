"""Pydantic Settings for the throttling controller.

All environment variables use the PACEKEEPER_ prefix.
Example: PACEKEEPER_DAILY_LIMIT=15, PACEKEEPER_PROXY_ENABLED=true
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings

from pacekeeper.config.action_policies import OperatingHours

DEFAULT_POLICIES_PATH = str(Path(__file__).with_name("action_policies.yaml"))


class PacekeeperSettings(BaseSettings):
    """Controller configuration validated from environment variables."""

    # Service
    log_level: str = "INFO"
    log_dir: str | None = None
    data_dir: str = "data"
    max_actions_per_run: int = Field(default=20, ge=1)

    # Quotas
    daily_limit: int = Field(default=15, ge=0)
    weekly_limit: int = Field(default=80, ge=0)
    action_policies_path: str = DEFAULT_POLICIES_PATH
    operating_hours: OperatingHours | None = OperatingHours(start=8, end=23)

    # Pacing and escalation
    min_delay_seconds: float = Field(default=45.0, ge=0)
    max_delay_seconds: float = Field(default=180.0, ge=0)
    delay_ceiling_seconds: float = Field(default=540.0, ge=0)
    backoff_cap: float = Field(default=8.0, ge=1)
    base_cooldown_seconds: float = Field(default=3600.0, ge=0)
    detection_free_window_seconds: float = Field(default=3600.0, ge=0)

    # Retry
    retry_max_attempts: int = Field(default=10, ge=1)
    retry_initial_delay_seconds: float = Field(default=8.0, ge=0)
    retry_max_delay_seconds: float = Field(default=120.0, ge=0)
    retry_backoff_factor: float = Field(default=2.5, ge=1)
    retry_jitter: float = Field(default=0.3, ge=0, le=1)

    # Proxy
    proxy_enabled: bool = False
    proxy_api_url: str = "https://proxy.webshare.io/api/v2/proxy/list/"
    proxy_api_token: str | None = None
    proxy_list_path: str | None = None
    proxy_endpoints: list[str] = []  # host:port:user:pass entries
    proxy_probe_url: str = "https://www.linkedin.com/robots.txt"
    proxy_validation_timeout_seconds: float = Field(default=5.0, gt=0)
    proxy_freshness_seconds: float = Field(default=1800.0, ge=0)
    proxy_top_k: int = Field(default=3, ge=1)
    proxy_max_selection_attempts: int = Field(default=3, ge=1)
    proxy_validation_concurrency: int = Field(default=5, ge=1)

    # Session
    target_domain: str = "linkedin.com"
    essential_cookies: list[str] = ["li_at", "JSESSIONID"]
    session_ttl_seconds: float = Field(default=3600.0, gt=0)
    rotation_interval_seconds: float = Field(default=1800.0, ge=0)
    rotation_jitter_seconds: float = Field(default=300.0, ge=0)
    detection_threshold: float = Field(default=3.0, gt=0)
    detection_increment: float = Field(default=1.0, gt=0)
    detection_decay: float = Field(default=0.25, ge=0)
    rotation_urgency_threshold: float = Field(default=0.5, ge=0)
    max_login_attempts: int = Field(default=3, ge=1)
    login_retry_delay_seconds: float = Field(default=5.0, ge=0)

    # Captcha
    captcha_enabled: bool = False
    captcha_api_key: str | None = None
    captcha_api_url: str = "https://api.anti-captcha.com"
    captcha_poll_interval_seconds: float = Field(default=10.0, ge=0)
    captcha_max_poll_attempts: int = Field(default=30, ge=1)

    model_config = {"env_prefix": "PACEKEEPER_"}
