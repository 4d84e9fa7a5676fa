"""Orchestrator: drives one bounded, sequential run over the action queue.

For each pending action the cycle is:
budget reset → admission → pacing delay → session check (re-authenticate
if needed) → identity rotation → execute with retry → feed the outcome back
into budget, session and proxy pool → persist progress.

Actions never run in parallel: budget, session and proxy state are shared
and updated once per action. A run ends when the queue is drained, the
action bound is reached, admission is closed (operating hours or
cool-down), no proxy is usable, or a Fatal failure occurs; partial
progress is persisted in every case.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from pacekeeper.captcha.bridge import CaptchaBridge
from pacekeeper.middleware.error_handler import (
    AuthenticationLostError,
    CaptchaUnsolvableError,
    NoHealthyProxiesError,
    OrchestratorBusyError,
)
from pacekeeper.models.actions import ActionStatus, PendingAction, RunSummary, StopReason
from pacekeeper.proxy.pool import ProxyPool
from pacekeeper.proxy.types import ProxyRecord
from pacekeeper.resilience.rate_budget import DenialReason, RateBudget
from pacekeeper.resilience.retry import ErrorClassification, RetryClassifier
from pacekeeper.services.action_queue import ActionQueue
from pacekeeper.services.protocols import ActionExecutor, PersistenceStore
from pacekeeper.session.guard import SessionGuard
from pacekeeper.session.types import PageSignal

logger = logging.getLogger(__name__)

_QUOTA_DENIALS = (DenialReason.DAILY_QUOTA, DenialReason.WEEKLY_QUOTA)
_CLOSED_DENIALS = {
    DenialReason.OUTSIDE_OPERATING_HOURS: StopReason.OUTSIDE_OPERATING_HOURS,
    DenialReason.COOLDOWN: StopReason.COOLDOWN,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Orchestrator:
    """Gates every action through budget, session, proxy and retry handling.

    All collaborators are explicit instances owned by this orchestrator and
    injected via the constructor, so a run is testable without a browser,
    a network, or real sleeps.
    """

    def __init__(
        self,
        *,
        executor: ActionExecutor,
        store: PersistenceStore,
        action_queue: ActionQueue,
        rate_budget: RateBudget,
        retry_classifier: RetryClassifier,
        session_guard: SessionGuard,
        proxy_pool: ProxyPool | None = None,
        captcha_bridge: CaptchaBridge | None = None,
        max_actions: int = 20,
        budget_key: str = "budget",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._executor = executor
        self._store = store
        self._queue = action_queue
        self._budget = rate_budget
        self._retry = retry_classifier
        self._session_guard = session_guard
        self._proxy_pool = proxy_pool
        self._captcha_bridge = captcha_bridge
        self._max_actions = max_actions
        self._budget_key = budget_key
        self._sleep = sleep
        self._clock = clock

        self._run_lock = asyncio.Lock()
        self._prepared = False
        self._last_run: RunSummary | None = None

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    @property
    def last_run(self) -> RunSummary | None:
        return self._last_run

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, max_actions: int | None = None) -> RunSummary:
        """Process pending actions until a stop condition is reached.

        Raises ``OrchestratorBusyError`` if a run is already in progress.
        """
        if self._run_lock.locked():
            raise OrchestratorBusyError()

        async with self._run_lock:
            limit = self._max_actions if max_actions is None else max_actions
            summary = RunSummary(started_at=self._clock())
            self._last_run = summary
            logger.info("Starting run (max %d actions)", limit)

            try:
                try:
                    await self._prepare()
                except Exception as exc:
                    logger.error("Run preparation failed: %s", exc, exc_info=exc)
                    summary.error = f"Run preparation failed: {exc}"
                    summary.stop_reason = StopReason.FATAL
                else:
                    summary.stop_reason = await self._drive(summary, limit)
            finally:
                await self._persist_budget()
                summary.finished_at = self._clock()

            logger.info(
                "Run finished: %s (%d succeeded, %d failed, %d skipped, %d rate limited)",
                summary.stop_reason.value,
                summary.succeeded,
                summary.failed,
                summary.skipped,
                summary.rate_limited,
            )
            return summary

    async def get_status(self) -> dict:
        """Snapshot of controller state for the status endpoint."""
        return {
            "running": self.running,
            "budgets": self._budget.get_stats(),
            "proxy_pool": self._proxy_pool.get_stats() if self._proxy_pool else None,
            "session": self._session_guard.get_stats(),
            "queue": await self._queue.get_status(),
            "last_run": self._last_run.to_dict() if self._last_run else None,
        }

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def _prepare(self) -> None:
        """Restore persisted budget and session state once per orchestrator."""
        if self._prepared:
            return

        self._budget.restore(await self._store.load(self._budget_key))

        session = await self._session_guard.load_persisted()
        if session is not None:
            await self._executor.set_cookies([c.to_dict() for c in session.cookies.values()])

        if self._proxy_pool is not None and not self._proxy_pool.records:
            if await self._proxy_pool.load():
                await self._proxy_pool.validate_all()

        self._prepared = True

    async def _drive(self, summary: RunSummary, limit: int) -> StopReason:
        for action in await self._queue.pending():
            if summary.attempted >= limit:
                return StopReason.MAX_ACTIONS

            # 1. Admission
            self._budget.reset_if_window_elapsed()
            decision = self._budget.try_admit(action.category)
            if not decision:
                if decision.reason in _QUOTA_DENIALS:
                    summary.skipped += 1
                    continue
                return _CLOSED_DENIALS[decision.reason]

            # 2. Human-like pacing
            summary.attempted += 1
            delay = self._budget.compute_delay(action.category)
            logger.debug("Waiting %.1fs before %s", delay, action.key)
            await self._sleep(delay)

            stop = await self._run_cycle(action, summary)
            if stop is not None:
                return stop

        return StopReason.QUEUE_EMPTY

    async def _run_cycle(self, action: PendingAction, summary: RunSummary) -> StopReason | None:
        """One gated attempt at *action*. Returns a stop reason to end the run."""
        extra = {"category": action.category, "action_id": action.action_id}

        # 3. Session validity
        try:
            await self._ensure_session()
        except AuthenticationLostError as exc:
            logger.error("Authentication lost: %s", exc.message, extra=extra)
            summary.error = exc.message
            return StopReason.FATAL
        except Exception as exc:
            return await self._abort_cycle("Session check", action, exc, summary)

        # 4. Identity rotation
        try:
            proxy = await self._ensure_identity()
        except NoHealthyProxiesError as exc:
            logger.error("Cannot rotate identity: %s", exc.message, extra=extra)
            summary.error = exc.message
            return StopReason.NO_HEALTHY_PROXIES
        except Exception as exc:
            return await self._abort_cycle("Identity rotation", action, exc, summary)

        # 5. Execute with retry
        try:
            await self._retry.with_retry(
                lambda: self._executor.perform_action(action, proxy),
                operation_name=f"{action.category} action {action.action_id}",
            )
        except Exception as exc:
            return await self._handle_failure(action, proxy, exc, summary)

        # 7. Success bookkeeping
        self._budget.record_success(action.category)
        if proxy is not None and self._proxy_pool is not None:
            self._proxy_pool.mark_success(proxy)
        summary.succeeded += 1

        # 8. Persist
        await self._queue.mark_processed(action, ActionStatus.COMPLETED)
        try:
            await self._session_guard.persist(await self._live_cookies())
        except AuthenticationLostError as exc:
            logger.error("Authentication lost after %s: %s", action.key, exc.message, extra=extra)
            summary.error = exc.message
            return StopReason.FATAL
        except Exception as exc:
            return await self._abort_cycle("Session persist", action, exc, summary)
        await self._persist_budget()
        return None

    async def _live_cookies(self) -> list:
        return await self._retry.with_retry(
            self._executor.get_cookies, operation_name="cookie read"
        )

    async def _page_signal(self) -> object:
        return await self._retry.with_retry(
            self._executor.inspect_page, operation_name="page inspection"
        )

    async def _ensure_session(self) -> None:
        cookies = await self._live_cookies()
        signal = await self._page_signal()
        if self._session_guard.is_valid(cookies, signal):
            return

        logger.info("Session invalid, re-authenticating")
        if not await self._session_guard.reauthenticate(self._executor.reauthenticate):
            raise AuthenticationLostError("Re-authentication failed")
        await self._session_guard.persist(await self._live_cookies())

    async def _ensure_identity(self) -> ProxyRecord | None:
        if self._proxy_pool is None:
            return None

        current = self._proxy_pool.current_proxy
        if current is None or self._session_guard.should_rotate_identity():
            current = await self._proxy_pool.select()
            await self._retry.with_retry(
                lambda: self._executor.use_identity(current),
                operation_name="identity switch",
            )
            self._session_guard.mark_rotated()
        return current

    async def _abort_cycle(
        self,
        stage: str,
        action: PendingAction,
        exc: Exception,
        summary: RunSummary,
        *,
        escalate: bool = True,
    ) -> StopReason | None:
        """Handle a failure outside the action itself; the action stays pending.

        Retries are already exhausted. A rate-limit signal escalates like one
        raised by the action; anything else ends the run as FATAL.
        """
        classification = self._retry.classify(exc, occurrences=self._retry.max_attempts + 1)
        extra = {
            "category": action.category,
            "action_id": action.action_id,
            "classification": classification.value,
        }

        if classification is ErrorClassification.RATE_LIMITED:
            if escalate:
                summary.rate_limited += 1
                cooldown = self._budget.on_detection_signal(action.category)
                self._session_guard.record_detection(("rate_limited",))
                logger.warning(
                    "%s hit a detection signal, cooling down %.0fs: %s",
                    stage,
                    cooldown,
                    exc,
                    extra=extra,
                )
            await self._persist_budget()
            return None

        logger.error("%s failed: %s", stage, exc, exc_info=exc, extra=extra)
        summary.error = f"{stage} failed: {exc}"
        await self._persist_budget()
        return StopReason.FATAL

    async def _handle_failure(
        self,
        action: PendingAction,
        proxy: ProxyRecord | None,
        exc: Exception,
        summary: RunSummary,
    ) -> StopReason | None:
        # Retries are exhausted here, so unmatched failures promote to FATAL
        classification = self._retry.classify(exc, occurrences=self._retry.max_attempts + 1)
        extra = {
            "category": action.category,
            "action_id": action.action_id,
            "classification": classification.value,
        }
        if proxy is not None:
            extra["proxy_used"] = proxy.redacted_url

        if proxy is not None and self._proxy_pool is not None and self._retry.is_network_failure(exc):
            self._proxy_pool.mark_failure(proxy)

        # 6. Detection: escalate and end the cycle early, action stays pending
        if classification is ErrorClassification.RATE_LIMITED:
            summary.rate_limited += 1
            cooldown = self._budget.on_detection_signal(action.category)
            self._session_guard.record_detection(("rate_limited",))
            logger.warning(
                "Detection signal on %s, cooling down %.0fs: %s",
                action.key,
                cooldown,
                exc,
                extra=extra,
            )
            try:
                await self._resolve_challenge()
            except CaptchaUnsolvableError as captcha_exc:
                logger.error("Challenge unsolvable: %s", captcha_exc.message, extra=extra)
                summary.error = captcha_exc.message
                await self._persist_budget()
                return StopReason.FATAL
            except Exception as page_exc:
                return await self._abort_cycle(
                    "Challenge check", action, page_exc, summary, escalate=False
                )
            await self._persist_budget()
            return None

        summary.failed += 1
        await self._queue.mark_processed(action, ActionStatus.FAILED, error=str(exc))
        await self._persist_budget()

        if classification is ErrorClassification.FATAL:
            logger.error("Fatal failure on %s: %s", action.key, exc, exc_info=exc, extra=extra)
            summary.error = str(exc)
            return StopReason.FATAL

        logger.warning("Giving up on %s after retries: %s", action.key, exc, extra=extra)
        return None

    async def _resolve_challenge(self) -> None:
        """Solve a visible challenge, if the bridge is enabled and one is present."""
        if self._captcha_bridge is None:
            return

        signal = PageSignal.coerce(await self._page_signal())
        await self._captcha_bridge.solve(self._executor, signal.content, signal.url)

    async def _persist_budget(self) -> None:
        await self._store.save(self._budget_key, self._budget.snapshot())
