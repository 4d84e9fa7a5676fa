"""Session validity and detection-pressure tracking.

A session is valid only while every essential cookie is present, unexpired
and scoped to the target domain, the session is younger than its TTL, and
the detection score stays under its threshold. The detection score rises
sharply whenever the page shows a detection indicator and decays a little
on every clean check; a high score also forces an early identity rotation.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import TYPE_CHECKING

from pacekeeper.middleware.error_handler import AuthenticationLostError
from pacekeeper.session.types import Cookie, PageSignal, Session

if TYPE_CHECKING:
    from pacekeeper.services.protocols import PersistenceStore

logger = logging.getLogger(__name__)


def _as_cookie(value: Cookie | dict) -> Cookie:
    return value if isinstance(value, Cookie) else Cookie.from_dict(value)


class SessionGuard:
    """Tracks authentication-state validity and detection pressure.

    Parameters
    ----------
    store:
        Persistence store holding the session cookie records.
    target_domain:
        Domain essential cookies must be scoped to (subdomains allowed).
    essential_cookie_names:
        Cookies that must all be present for the session to be valid.
    ttl_seconds:
        Maximum session age before re-authentication is required.
    detection_threshold:
        Detection score at or above which the session is invalid.
    detection_increment:
        Score added when a detection indicator fires.
    detection_decay:
        Score removed on each check where no indicator fired.
    rotation_urgency_threshold:
        Detection score above which identity rotation is forced.
    rotation_interval_seconds / rotation_jitter_seconds:
        Normal rotation cadence; a fresh jitter in [0, jitter] is drawn at
        every rotation.
    max_login_attempts / login_retry_delay_seconds:
        Bounds for reauthenticate().
    """

    def __init__(
        self,
        store: PersistenceStore,
        *,
        target_domain: str = "linkedin.com",
        essential_cookie_names: Iterable[str] = ("li_at", "JSESSIONID"),
        ttl_seconds: float = 3600.0,
        detection_threshold: float = 3.0,
        detection_increment: float = 1.0,
        detection_decay: float = 0.25,
        rotation_urgency_threshold: float = 0.5,
        rotation_interval_seconds: float = 1800.0,
        rotation_jitter_seconds: float = 300.0,
        max_login_attempts: int = 3,
        login_retry_delay_seconds: float = 5.0,
        store_key: str = "session",
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._target_domain = target_domain
        self._ttl = ttl_seconds
        self._detection_threshold = detection_threshold
        self._detection_increment = detection_increment
        self._detection_decay = detection_decay
        self._urgency_threshold = rotation_urgency_threshold
        self._rotation_interval = rotation_interval_seconds
        self._rotation_jitter = rotation_jitter_seconds
        self._max_login_attempts = max_login_attempts
        self._login_retry_delay = login_retry_delay_seconds
        self._store_key = store_key
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

        self._session = Session(essential_cookie_names=frozenset(essential_cookie_names))
        self._next_jitter = 0.0

    @property
    def session(self) -> Session:
        return self._session

    @property
    def detection_score(self) -> float:
        return self._session.detection_score

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load_persisted(self) -> Session | None:
        """Rebuild the session from persisted cookies, dropping expired ones.

        Returns None when nothing usable was persisted.
        """
        now = self._clock()
        cookies: dict[str, Cookie] = {}
        for record in await self._store.load(self._store_key):
            try:
                cookie = Cookie.from_dict(record)
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed persisted cookie record")
                continue
            if not cookie.is_expired(now):
                cookies[cookie.name] = cookie

        if not cookies:
            logger.info("No persisted session found")
            return None

        self._session.cookies = cookies
        self._session.established_at = now
        logger.info("Loaded %d persisted session cookies", len(cookies))
        return self._session

    def _essential_cookies(self, live_cookies: Iterable[Cookie | dict], now: float) -> dict[str, Cookie]:
        kept: dict[str, Cookie] = {}
        for raw in live_cookies:
            cookie = _as_cookie(raw)
            if cookie.name not in self._session.essential_cookie_names:
                continue
            if cookie.is_expired(now) or not cookie.value:
                continue
            if not cookie.matches_domain(self._target_domain):
                continue
            kept[cookie.name] = cookie
        return kept

    async def persist(self, live_cookies: Iterable[Cookie | dict]) -> list[Cookie]:
        """Save the essential, unexpired, target-domain cookies.

        Persisting the same cookies twice stores the same set.

        Raises
        ------
        AuthenticationLostError
            If no essential cookie survives filtering.
        """
        kept = self._essential_cookies(live_cookies, self._clock())
        if not kept:
            logger.error("No essential cookies to persist — authentication lost")
            raise AuthenticationLostError(
                "No essential session cookies survived filtering",
                essential=sorted(self._session.essential_cookie_names),
            )

        cookies = [kept[name] for name in sorted(kept)]
        await self._store.save(self._store_key, [c.to_dict() for c in cookies])
        self._session.cookies = dict(kept)
        logger.info("Saved %d session cookies", len(cookies))
        return cookies

    # ------------------------------------------------------------------
    # Validity
    # ------------------------------------------------------------------

    def is_valid(
        self,
        live_cookies: Iterable[Cookie | dict],
        page_signal: PageSignal | bool | Iterable[str] | None = None,
    ) -> bool:
        """Check cookies, session age, and detection pressure.

        A fired page indicator raises the detection score; a clean check
        decays it.
        """
        signal = PageSignal.coerce(page_signal)
        if signal.fired:
            self.record_detection(signal.indicators)
        else:
            self.decay_detection()

        now = self._clock()
        kept = self._essential_cookies(live_cookies, now)
        missing = sorted(self._session.essential_cookie_names - kept.keys())
        if missing:
            logger.info("Missing essential cookies: %s", ", ".join(missing))
            return False

        established = self._session.established_at
        if established is not None and now - established >= self._ttl:
            logger.info("Session expired after %.0fs", now - established)
            return False

        if self._session.detection_score >= self._detection_threshold:
            logger.warning(
                "Detection score %.2f at or above threshold %.2f",
                self._session.detection_score,
                self._detection_threshold,
                extra={"detection_score": self._session.detection_score},
            )
            return False

        if established is None:
            self._session.established_at = now
        self._session.cookies.update(kept)
        return True

    def record_detection(self, indicators: Iterable[str] = ()) -> None:
        """Raise the detection score after an indicator fired."""
        self._session.detection_score += self._detection_increment
        logger.warning(
            "Detection indicator observed (%s), score now %.2f",
            ", ".join(sorted(indicators)) or "unspecified",
            self._session.detection_score,
            extra={"detection_score": self._session.detection_score},
        )

    def decay_detection(self) -> None:
        """Lower the detection score after a clean check, never below zero."""
        self._session.detection_score = max(
            0.0, self._session.detection_score - self._detection_decay
        )

    # ------------------------------------------------------------------
    # Identity rotation
    # ------------------------------------------------------------------

    def should_rotate_identity(self) -> bool:
        """True on high detection pressure or once the rotation interval elapsed."""
        if self._session.detection_score > self._urgency_threshold:
            logger.info(
                "Detection score %.2f forces identity rotation",
                self._session.detection_score,
            )
            return True

        last = self._session.last_rotation_at
        if last is None:
            return True
        return self._clock() - last >= self._rotation_interval + self._next_jitter

    def mark_rotated(self) -> None:
        """Record a rotation and draw the jitter for the next interval."""
        self._session.last_rotation_at = self._clock()
        self._next_jitter = self._rng.uniform(0, self._rotation_jitter)

    # ------------------------------------------------------------------
    # Re-authentication
    # ------------------------------------------------------------------

    async def reauthenticate(self, login: Callable[[], Awaitable[bool]]) -> bool:
        """Call *login* up to max_login_attempts times; a success starts a new session."""
        for attempt in range(1, self._max_login_attempts + 1):
            try:
                if await login():
                    self._session.established_at = self._clock()
                    logger.info("Re-authenticated on attempt %d", attempt)
                    return True
                logger.warning("Login attempt %d returned no session", attempt)
            except Exception as exc:
                logger.error("Login attempt %d failed: %s", attempt, exc)

            if attempt < self._max_login_attempts:
                await self._sleep(self._login_retry_delay)

        logger.error("Max login retries exceeded")
        return False

    def get_stats(self) -> dict:
        """Return session statistics for the status endpoint (no cookie values)."""
        session = self._session
        return {
            "cookies": sorted(session.cookies),
            "established_at": session.established_at,
            "detection_score": session.detection_score,
            "last_rotation_at": session.last_rotation_at,
        }
