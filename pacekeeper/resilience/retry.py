"""Failure classification and retry with exponential backoff.

Every failure raised while acting against the target is mapped to one of
four classes by an ordered pattern table:

- RATE_LIMITED: explicit rate-limit or challenge phrasing (checked first)
- SILENT: expected network-layer and HTTP noise
- TRANSIENT: anything unmatched, until it recurs past the retry ceiling
- FATAL: unmatched failures past the ceiling, and FatalError subclasses

Classification only changes how intervening retries behave; with_retry()
always re-raises the last failure as-is.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

from pacekeeper.middleware.error_handler import DetectionSignalError, FatalError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorClassification(str, Enum):
    """Severity classes for failures."""

    SILENT = "silent"
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    FATAL = "fatal"


@dataclass(frozen=True)
class FailurePattern:
    """One row of the classification table."""

    pattern: re.Pattern[str]
    classification: ErrorClassification
    kind: str  # network, http, rate_limit, challenge, content


def _literal(
    text: str, classification: ErrorClassification, kind: str
) -> FailurePattern:
    return FailurePattern(re.compile(re.escape(text), re.IGNORECASE), classification, kind)


_RATE = ErrorClassification.RATE_LIMITED
_SILENT = ErrorClassification.SILENT

# Order matters: the first matching row wins.
FAILURE_PATTERNS: tuple[FailurePattern, ...] = (
    # Explicit rate limiting
    FailurePattern(re.compile(r"status(?: of|:)?\s*429\b", re.IGNORECASE), _RATE, "rate_limit"),
    FailurePattern(re.compile(r"\b429\b"), _RATE, "rate_limit"),
    _literal("ERR_TOO_MANY_REQUESTS", _RATE, "rate_limit"),
    _literal("ERR_RATE_LIMITED", _RATE, "rate_limit"),
    _literal("Too Many Requests", _RATE, "rate_limit"),
    FailurePattern(re.compile(r"rate.?limit", re.IGNORECASE), _RATE, "rate_limit"),
    _literal("try again later", _RATE, "rate_limit"),
    _literal("unusual activity", _RATE, "rate_limit"),
    # Challenges and verification
    _literal("security check", _RATE, "challenge"),
    _literal("security verification", _RATE, "challenge"),
    _literal("/checkpoint/challenge", _RATE, "challenge"),
    _literal("captcha", _RATE, "challenge"),
    _literal("verify you are human", _RATE, "challenge"),
    # Network-layer noise
    _literal("net::ERR_FAILED", _SILENT, "network"),
    _literal("net::ERR_CONNECTION_TIMED_OUT", _SILENT, "network"),
    _literal("net::ERR_CONNECTION_RESET", _SILENT, "network"),
    _literal("net::ERR_CONNECTION_CLOSED", _SILENT, "network"),
    _literal("net::ERR_CONNECTION_REFUSED", _SILENT, "network"),
    _literal("net::ERR_NETWORK_CHANGED", _SILENT, "network"),
    _literal("net::ERR_INTERNET_DISCONNECTED", _SILENT, "network"),
    _literal("net::ERR_ABORTED", _SILENT, "network"),
    _literal("net::ERR_EMPTY_RESPONSE", _SILENT, "network"),
    _literal("net::ERR_NAME_NOT_RESOLVED", _SILENT, "network"),
    _literal("net::ERR_ADDRESS_UNREACHABLE", _SILENT, "network"),
    _literal("net::ERR_PROXY_CONNECTION_FAILED", _SILENT, "network"),
    _literal("net::ERR_TUNNEL_CONNECTION_FAILED", _SILENT, "network"),
    _literal("ERR_NETWORK_ACCESS_DENIED", _SILENT, "network"),
    _literal("ConnectError", _SILENT, "network"),
    _literal("ProxyError", _SILENT, "network"),
    _literal("Navigation timeout", _SILENT, "network"),
    _literal("TimeoutError", _SILENT, "network"),
    _literal("ConnectTimeout", _SILENT, "network"),
    _literal("ReadTimeout", _SILENT, "network"),
    # Benign HTTP status noise
    FailurePattern(
        re.compile(r"status(?: of|:)?\s*(?:400|403|404|500|502|503|504)\b", re.IGNORECASE),
        _SILENT,
        "http",
    ),
    _literal("Error 400", _SILENT, "http"),
    _literal("Bad Request", _SILENT, "http"),
    # Page/content noise
    _literal("malformed JSON response", _SILENT, "content"),
    _literal("Failed to load resource", _SILENT, "content"),
    _literal("Requesting main frame too early", _SILENT, "content"),
    _literal("Protocol error", _SILENT, "content"),
    _literal("Target closed", _SILENT, "content"),
    _literal("ERR_BLOCKED_BY_CLIENT", _SILENT, "content"),
)


def failure_text(failure: BaseException | str) -> str:
    """Render a failure signal as the text the pattern table matches against."""
    if isinstance(failure, str):
        return failure
    return f"{type(failure).__name__}: {failure}"


class RetryClassifier:
    """Classifies failures and retries operations with jittered backoff.

    Args:
        max_attempts: Total attempts per operation; also the retry ceiling
            past which unmatched failures become FATAL.
        initial_delay_seconds: Backoff before the second attempt.
        max_delay_seconds: Upper bound on the un-jittered backoff.
        backoff_factor: Exponential growth factor between attempts.
        jitter: Symmetric jitter fraction, e.g. 0.3 for ±30%.
        patterns: Ordered classification table.
        sleep: Suspension point used between attempts.
        rng: Random source for jitter.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 10,
        initial_delay_seconds: float = 8.0,
        max_delay_seconds: float = 120.0,
        backoff_factor: float = 2.5,
        jitter: float = 0.3,
        patterns: tuple[FailurePattern, ...] = FAILURE_PATTERNS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.max_attempts = max_attempts
        self._initial_delay = initial_delay_seconds
        self._max_delay = max_delay_seconds
        self._factor = backoff_factor
        self._jitter = jitter
        self._patterns = patterns
        self._sleep = sleep
        self._rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def match(self, failure: BaseException | str) -> FailurePattern | None:
        """Return the first table row matching *failure*, if any."""
        text = failure_text(failure)
        for row in self._patterns:
            if row.pattern.search(text):
                return row
        return None

    def classify(
        self, failure: BaseException | str, occurrences: int = 1
    ) -> ErrorClassification:
        """Map a failure to its severity class.

        Pure: the same failure and occurrence count always yield the same
        class. *occurrences* is how many times this failure has been seen in
        a row; unmatched failures become FATAL once it exceeds max_attempts.
        """
        if isinstance(failure, FatalError):
            return ErrorClassification.FATAL
        if isinstance(failure, DetectionSignalError):
            return ErrorClassification.RATE_LIMITED

        row = self.match(failure)
        if row is not None:
            return row.classification

        if occurrences > self.max_attempts:
            return ErrorClassification.FATAL
        return ErrorClassification.TRANSIENT

    def is_network_failure(self, failure: BaseException | str) -> bool:
        """True when the failure is attributable to the network identity."""
        if isinstance(failure, (asyncio.TimeoutError, ConnectionError)):
            return True
        row = self.match(failure)
        return row is not None and row.kind == "network"

    # ------------------------------------------------------------------
    # Backoff
    # ------------------------------------------------------------------

    def compute_backoff(self, attempt: int) -> float:
        """Delay in seconds after failed *attempt* (1-based), with jitter."""
        base = min(self._max_delay, self._initial_delay * self._factor ** (attempt - 1))
        spread = self._rng.uniform(-self._jitter, self._jitter)
        return max(0.0, base * (1 + spread))

    # ------------------------------------------------------------------
    # Retry wrapper
    # ------------------------------------------------------------------

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
    ) -> T:
        """Run *operation* until it succeeds or attempts are exhausted.

        RATE_LIMITED and FATAL failures are re-raised immediately; SILENT
        and TRANSIENT ones are retried after compute_backoff(attempt). The
        last failure propagates unchanged.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except Exception as exc:
                classification = self.classify(exc, occurrences=attempt)
                extra = {"classification": classification.value, "attempt": attempt}

                if classification in (ErrorClassification.RATE_LIMITED, ErrorClassification.FATAL):
                    logger.warning(
                        "%s failed with %s failure (attempt %d/%d): %s",
                        operation_name,
                        classification.value,
                        attempt,
                        self.max_attempts,
                        exc,
                        extra=extra,
                    )
                    raise

                if classification is ErrorClassification.SILENT:
                    logger.debug(
                        "Silent error in %s (attempt %d/%d): %s",
                        operation_name,
                        attempt,
                        self.max_attempts,
                        exc,
                        extra=extra,
                    )
                else:
                    logger.warning(
                        "Error in %s (attempt %d/%d): %s",
                        operation_name,
                        attempt,
                        self.max_attempts,
                        exc,
                        extra=extra,
                    )

                if attempt >= self.max_attempts:
                    raise

                delay = self.compute_backoff(attempt)
                logger.debug("Retrying %s in %.1fs", operation_name, delay)
                await self._sleep(delay)

        raise RuntimeError("unreachable")  # pragma: no cover
