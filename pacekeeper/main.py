"""Composition root.

``build_orchestrator`` constructs every controller component once from
settings and wires them into an Orchestrator; nothing is shared through
module-level state. ``create_app`` exposes a built orchestrator through the
read-only status API.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from pacekeeper import __version__
from pacekeeper.captcha.bridge import CaptchaBridge
from pacekeeper.config.action_policies import ActionPolicy, load_action_policies
from pacekeeper.config.settings import PacekeeperSettings
from pacekeeper.integration.captcha_client import AntiCaptchaClient
from pacekeeper.integration.json_store import JsonFileStore
from pacekeeper.logging_config import configure_logging
from pacekeeper.middleware.error_handler import register_error_handlers
from pacekeeper.proxy.pool import ProxyPool
from pacekeeper.proxy.sources import (
    FileProxySource,
    ProxySource,
    RemoteProxySource,
    StaticProxySource,
)
from pacekeeper.resilience.rate_budget import RateBudget
from pacekeeper.resilience.retry import RetryClassifier
from pacekeeper.routers.status import create_status_router
from pacekeeper.services.action_queue import ActionQueue
from pacekeeper.services.orchestrator import Orchestrator
from pacekeeper.services.protocols import ActionExecutor, PersistenceStore
from pacekeeper.session.guard import SessionGuard

logger = logging.getLogger(__name__)


def _proxy_sources(settings: PacekeeperSettings) -> list[ProxySource]:
    """Remote listing API first, then the local file, then the static list."""
    sources: list[ProxySource] = []
    if settings.proxy_api_token:
        sources.append(
            RemoteProxySource(
                api_url=settings.proxy_api_url,
                api_token=settings.proxy_api_token,
            )
        )
    if settings.proxy_list_path:
        sources.append(FileProxySource(settings.proxy_list_path))
    if settings.proxy_endpoints:
        sources.append(StaticProxySource(settings.proxy_endpoints))
    return sources


def build_orchestrator(
    executor: ActionExecutor,
    settings: PacekeeperSettings | None = None,
    store: PersistenceStore | None = None,
) -> Orchestrator:
    """Construct one instance of every component for a run."""
    settings = settings or PacekeeperSettings()
    store = store or JsonFileStore(settings.data_dir)

    configured = ActionPolicy(
        daily_limit=settings.daily_limit,
        weekly_limit=settings.weekly_limit,
    )
    policies = load_action_policies(settings.action_policies_path, default=configured)
    policies["default"] = configured

    rate_budget = RateBudget(
        policies,
        operating_hours=settings.operating_hours,
        min_delay_seconds=settings.min_delay_seconds,
        max_delay_seconds=settings.max_delay_seconds,
        delay_ceiling_seconds=settings.delay_ceiling_seconds,
        backoff_cap=settings.backoff_cap,
        base_cooldown_seconds=settings.base_cooldown_seconds,
        detection_free_window_seconds=settings.detection_free_window_seconds,
    )

    retry_classifier = RetryClassifier(
        max_attempts=settings.retry_max_attempts,
        initial_delay_seconds=settings.retry_initial_delay_seconds,
        max_delay_seconds=settings.retry_max_delay_seconds,
        backoff_factor=settings.retry_backoff_factor,
        jitter=settings.retry_jitter,
    )

    session_guard = SessionGuard(
        store,
        target_domain=settings.target_domain,
        essential_cookie_names=settings.essential_cookies,
        ttl_seconds=settings.session_ttl_seconds,
        detection_threshold=settings.detection_threshold,
        detection_increment=settings.detection_increment,
        detection_decay=settings.detection_decay,
        rotation_urgency_threshold=settings.rotation_urgency_threshold,
        rotation_interval_seconds=settings.rotation_interval_seconds,
        rotation_jitter_seconds=settings.rotation_jitter_seconds,
        max_login_attempts=settings.max_login_attempts,
        login_retry_delay_seconds=settings.login_retry_delay_seconds,
    )

    proxy_pool = None
    if settings.proxy_enabled:
        proxy_pool = ProxyPool(
            _proxy_sources(settings),
            probe_url=settings.proxy_probe_url,
            validation_timeout_seconds=settings.proxy_validation_timeout_seconds,
            freshness_seconds=settings.proxy_freshness_seconds,
            top_k=settings.proxy_top_k,
            max_selection_attempts=settings.proxy_max_selection_attempts,
            max_concurrent_validations=settings.proxy_validation_concurrency,
        )

    captcha_bridge = None
    if settings.captcha_enabled:
        if settings.captcha_api_key:
            captcha_bridge = CaptchaBridge(
                AntiCaptchaClient(settings.captcha_api_key, settings.captcha_api_url),
                proxy_pool,
                poll_interval_seconds=settings.captcha_poll_interval_seconds,
                max_poll_attempts=settings.captcha_max_poll_attempts,
            )
        else:
            logger.warning("Captcha solving enabled but no API key set — solving disabled")

    logger.info(
        "Built orchestrator (proxy: %s, captcha: %s)",
        "on" if proxy_pool else "off",
        "on" if captcha_bridge else "off",
    )
    return Orchestrator(
        executor=executor,
        store=store,
        action_queue=ActionQueue(store),
        rate_budget=rate_budget,
        retry_classifier=retry_classifier,
        session_guard=session_guard,
        proxy_pool=proxy_pool,
        captcha_bridge=captcha_bridge,
        max_actions=settings.max_actions_per_run,
    )


def create_app(
    orchestrator: Orchestrator,
    settings: PacekeeperSettings | None = None,
) -> FastAPI:
    """Create the status API for *orchestrator*."""
    settings = settings or PacekeeperSettings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level, settings.log_dir)
        logger.info("Status API started")
        yield
        logger.info("Status API shut down")

    app = FastAPI(title="Pacekeeper Status", version=__version__, lifespan=lifespan)
    register_error_handlers(app)
    app.include_router(create_status_router(orchestrator))
    return app
