"""Scored proxy pool with top-K randomized selection and validation probes.

Identities are loaded from the first source that yields any records (remote
listing API, then local list). Each identity carries a reliability score in
[0, 1]: successes raise it by a small step, failures lower it by a larger
one, and an identity whose score falls to the blacklist threshold is
excluded for the rest of the pool's life.

Selection ranks non-blacklisted identities by score, takes the top K and
picks one at random, so known-good identities are preferred without any
single one being overused. The pick is validated with a lightweight,
time-bounded probe before it is returned.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable

import httpx

from pacekeeper.middleware.error_handler import NoHealthyProxiesError
from pacekeeper.proxy.sources import ProxySource
from pacekeeper.proxy.types import ProxyRecord

logger = logging.getLogger(__name__)


def _clamp_score(value: float) -> float:
    # Rounded so repeated fixed steps land exactly on thresholds
    return round(min(1.0, max(0.0, value)), 6)


class ProxyPool:
    """Manages scored network identities for a run."""

    def __init__(
        self,
        sources: list[ProxySource] | None = None,
        *,
        probe_url: str = "https://www.linkedin.com/robots.txt",
        validation_timeout_seconds: float = 5.0,
        freshness_seconds: float = 1800.0,
        top_k: int = 3,
        max_selection_attempts: int = 3,
        max_concurrent_validations: int = 5,
        success_increment: float = 0.1,
        failure_decrement: float = 0.2,
        blacklist_threshold: float = 0.2,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        self._sources = list(sources or [])
        self._probe_url = probe_url
        self._timeout = validation_timeout_seconds
        self._freshness = freshness_seconds
        self._top_k = top_k
        self._max_selection_attempts = max_selection_attempts
        self._max_concurrent_validations = max_concurrent_validations
        self._success_increment = success_increment
        self._failure_decrement = failure_decrement
        self._blacklist_threshold = blacklist_threshold
        self._clock = clock
        self._rng = rng or random.Random()

        self._records: dict[str, ProxyRecord] = {}
        self._blacklist: set[str] = set()
        self._current: ProxyRecord | None = None
        self._last_rotation_at: float | None = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self, sources: list[ProxySource] | None = None) -> int:
        """Populate candidates from the first source that yields records.

        Known identities keep their score; blacklisted ones are excluded.

        Returns:
            Number of usable (non-blacklisted) identities loaded.
        """
        fetched: list[ProxyRecord] = []
        origin = None
        for source in sources if sources is not None else self._sources:
            fetched = await source.fetch()
            if fetched:
                origin = source.name
                break

        if not fetched:
            logger.warning("No proxies available from any source")
            return 0

        async with self._lock:
            loaded: dict[str, ProxyRecord] = {}
            skipped = 0
            for record in fetched:
                if record.key in self._blacklist:
                    skipped += 1
                    continue
                loaded[record.key] = self._records.get(record.key, record)
            self._records = loaded

        logger.info(
            "Loaded %d proxies from %s source (%d blacklisted)",
            len(loaded),
            origin,
            skipped,
        )
        return len(loaded)

    def add(self, record: ProxyRecord) -> None:
        """Register a single identity unless it is blacklisted."""
        if record.key not in self._blacklist:
            self._records.setdefault(record.key, record)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _is_fresh(self, record: ProxyRecord) -> bool:
        return (
            record.last_validated_at is not None
            and record.last_validation_ok is not None
            and self._clock() - record.last_validated_at < self._freshness
        )

    async def validate(self, record: ProxyRecord) -> bool:
        """Probe the target through *record*; reuse a result inside the freshness window.

        Returns False on timeout, transport error, or non-2xx response.
        ``last_validated_at`` is updated on every probe attempt.
        """
        if self._is_fresh(record):
            return bool(record.last_validation_ok)

        record.last_validated_at = self._clock()
        ok = await self._probe(record)
        record.last_validation_ok = ok

        if ok:
            logger.debug("Proxy validation succeeded: %s", record.redacted_url)
        else:
            logger.warning(
                "Proxy validation failed: %s",
                record.redacted_url,
                extra={"proxy_used": record.redacted_url},
            )
        return ok

    async def _probe(self, record: ProxyRecord) -> bool:
        try:
            async with httpx.AsyncClient(
                proxy=record.url,
                timeout=httpx.Timeout(self._timeout),
            ) as client:
                response = await asyncio.wait_for(
                    client.get(self._probe_url), timeout=self._timeout
                )
            return response.is_success
        except (httpx.HTTPError, asyncio.TimeoutError, OSError) as exc:
            logger.debug("Probe through %s failed: %s", record.redacted_url, exc)
            return False

    async def validate_all(self) -> int:
        """Probe every usable identity with bounded concurrency.

        Probes run in parallel (at most ``max_concurrent_validations`` at a
        time); score updates are applied afterwards under the pool lock.

        Returns:
            Number of identities that passed validation.
        """
        candidates = [r for r in self._records.values() if not r.blacklisted]
        semaphore = asyncio.Semaphore(self._max_concurrent_validations)

        async def _check(record: ProxyRecord) -> tuple[ProxyRecord, bool, bool]:
            async with semaphore:
                probed = not self._is_fresh(record)
                return record, probed, await self.validate(record)

        results = await asyncio.gather(*(_check(r) for r in candidates))

        async with self._lock:
            for record, probed, ok in results:
                if not probed:
                    continue
                if ok:
                    self.mark_success(record)
                else:
                    self.mark_failure(record)

        valid = sum(1 for _, _, ok in results if ok)
        logger.info("Validated %d/%d proxies", valid, len(candidates))
        return valid

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _ranked(self, exclude: set[str]) -> list[ProxyRecord]:
        usable = [
            r for r in self._records.values() if not r.blacklisted and r.key not in exclude
        ]
        return sorted(usable, key=lambda r: r.reliability_score, reverse=True)

    async def select(self) -> ProxyRecord:
        """Pick a validated identity at random from the top-K by score.

        A candidate that fails validation is left out of the remaining
        attempts, up to ``max_selection_attempts`` picks. It is penalized only
        when a probe actually ran; a failure reused from the freshness window
        was already charged when it was probed.

        Raises ``NoHealthyProxiesError`` when no candidate validates.
        """
        async with self._lock:
            tried: set[str] = set()
            for attempt in range(1, self._max_selection_attempts + 1):
                ranked = self._ranked(exclude=tried)
                if not ranked:
                    break

                candidate = self._rng.choice(ranked[: self._top_k])
                tried.add(candidate.key)
                probed = not self._is_fresh(candidate)
                if await self.validate(candidate):
                    self._current = candidate
                    self._last_rotation_at = self._clock()
                    logger.info(
                        "Rotating to proxy %s (score: %.2f)",
                        candidate.redacted_url,
                        candidate.reliability_score,
                        extra={"proxy_used": candidate.redacted_url},
                    )
                    return candidate

                logger.warning(
                    "Selected proxy %s failed validation (attempt %d/%d)",
                    candidate.redacted_url,
                    attempt,
                    self._max_selection_attempts,
                )
                if probed:
                    self.mark_failure(candidate)

        raise NoHealthyProxiesError()

    # ------------------------------------------------------------------
    # Reliability tracking
    # ------------------------------------------------------------------

    def mark_success(self, record: ProxyRecord) -> None:
        """Raise the identity's score by the success increment."""
        record.success_count += 1
        if record.blacklisted:
            return
        record.reliability_score = _clamp_score(
            record.reliability_score + self._success_increment
        )
        logger.debug(
            "Proxy success: %s (score: %.2f)", record.redacted_url, record.reliability_score
        )

    def mark_failure(self, record: ProxyRecord) -> None:
        """Lower the identity's score; blacklist it at the threshold."""
        record.failure_count += 1
        if record.blacklisted:
            return
        record.reliability_score = _clamp_score(
            record.reliability_score - self._failure_decrement
        )

        if record.reliability_score <= self._blacklist_threshold:
            record.blacklisted = True
            self._blacklist.add(record.key)
            if self._current is record:
                self._current = None
            logger.warning(
                "Blacklisted unreliable proxy: %s (score: %.2f)",
                record.redacted_url,
                record.reliability_score,
            )
        else:
            logger.warning(
                "Proxy failure: %s (score: %.2f)",
                record.redacted_url,
                record.reliability_score,
            )

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    @property
    def current_proxy(self) -> ProxyRecord | None:
        return self._current

    @property
    def last_rotation_at(self) -> float | None:
        return self._last_rotation_at

    @property
    def records(self) -> list[ProxyRecord]:
        return list(self._records.values())

    def get_stats(self) -> dict:
        """Return proxy pool statistics for the status endpoint."""
        records = list(self._records.values())
        blacklisted = sum(1 for r in records if r.blacklisted)
        return {
            "total": len(records),
            "available": len(records) - blacklisted,
            "blacklisted": blacklisted,
            "current": self._current.redacted_url if self._current else None,
            "proxies": [
                {
                    "url": r.redacted_url,
                    "reliability_score": r.reliability_score,
                    "blacklisted": r.blacklisted,
                    "success_count": r.success_count,
                    "failure_count": r.failure_count,
                    "last_validated_at": r.last_validated_at,
                }
                for r in records
            ],
        }
