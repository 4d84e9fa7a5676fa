"""Unit tests for failure classification and the retry wrapper."""

from __future__ import annotations

import asyncio
import random

import pytest

from conftest import RecordingSleep
from pacekeeper.middleware.error_handler import (
    AuthenticationLostError,
    CaptchaUnsolvableError,
    DetectionSignalError,
)
from pacekeeper.resilience.retry import ErrorClassification, RetryClassifier, failure_text


class TestClassify:
    @pytest.mark.parametrize(
        "signal",
        [
            "net::ERR_CONNECTION_RESET",
            "net::ERR_PROXY_CONNECTION_FAILED at https://www.linkedin.com/feed",
            "Navigation timeout of 30000 ms exceeded",
            "Failed to load resource: the server responded with a status of 404",
            "Protocol error (Runtime.callFunctionOn): Target closed",
        ],
    )
    def test_network_and_http_noise_is_silent(self, signal: str) -> None:
        assert RetryClassifier().classify(signal) is ErrorClassification.SILENT

    @pytest.mark.parametrize(
        "signal",
        [
            "status of 429",
            "HTTP 429 Too Many Requests",
            "We've detected unusual activity from your account",
            "Please complete this security check",
            "redirected to /checkpoint/challenge/AgE",
            "Let's do a quick security verification",
        ],
    )
    def test_rate_limit_and_challenge_phrasing(self, signal: str) -> None:
        assert RetryClassifier().classify(signal) is ErrorClassification.RATE_LIMITED

    def test_rate_limit_wins_over_network_noise(self) -> None:
        signal = "net::ERR_FAILED while loading captcha frame"
        assert RetryClassifier().classify(signal) is ErrorClassification.RATE_LIMITED

    def test_unknown_failure_is_transient_until_ceiling(self) -> None:
        classifier = RetryClassifier(max_attempts=10)
        assert classifier.classify("unknown xyz failure") is ErrorClassification.TRANSIENT
        assert classifier.classify("unknown xyz failure", occurrences=10) is ErrorClassification.TRANSIENT
        assert classifier.classify("unknown xyz failure", occurrences=11) is ErrorClassification.FATAL

    def test_silent_failures_never_promote(self) -> None:
        classifier = RetryClassifier(max_attempts=2)
        assert classifier.classify("net::ERR_ABORTED", occurrences=50) is ErrorClassification.SILENT

    def test_typed_errors(self) -> None:
        classifier = RetryClassifier()
        assert classifier.classify(DetectionSignalError("odd page")) is ErrorClassification.RATE_LIMITED
        assert classifier.classify(AuthenticationLostError()) is ErrorClassification.FATAL
        assert classifier.classify(CaptchaUnsolvableError()) is ErrorClassification.FATAL

    def test_exception_type_name_is_matched(self) -> None:
        class ConnectError(Exception):
            pass

        assert RetryClassifier().classify(ConnectError("boom")) is ErrorClassification.SILENT
        assert failure_text(ConnectError("boom")) == "ConnectError: boom"

    def test_classification_is_deterministic(self) -> None:
        classifier = RetryClassifier()
        results = {classifier.classify("status: 503 Service Unavailable") for _ in range(20)}
        assert results == {ErrorClassification.SILENT}


class TestNetworkAttribution:
    def test_network_rows_and_timeouts(self) -> None:
        classifier = RetryClassifier()
        assert classifier.is_network_failure("net::ERR_TUNNEL_CONNECTION_FAILED")
        assert classifier.is_network_failure(asyncio.TimeoutError())
        assert classifier.is_network_failure(ConnectionResetError())
        assert not classifier.is_network_failure("status of 404")
        assert not classifier.is_network_failure("unknown xyz failure")


class TestComputeBackoff:
    def test_grows_exponentially_within_jitter(self) -> None:
        classifier = RetryClassifier(rng=random.Random(3))
        for attempt, base in [(1, 8.0), (2, 20.0), (3, 50.0), (4, 120.0), (8, 120.0)]:
            delay = classifier.compute_backoff(attempt)
            assert base * 0.7 <= delay <= base * 1.3

    def test_zero_jitter_is_exact(self) -> None:
        classifier = RetryClassifier(jitter=0.0)
        assert classifier.compute_backoff(1) == 8.0
        assert classifier.compute_backoff(3) == 50.0
        assert classifier.compute_backoff(9) == 120.0


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_returns_first_success(self, retry_classifier, sleep: RecordingSleep) -> None:
        async def operation():
            return "done"

        assert await retry_classifier.with_retry(operation) == "done"
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self, retry_classifier, sleep) -> None:
        attempts = []

        async def operation():
            attempts.append(1)
            if len(attempts) < 3:
                raise RuntimeError("flaky thing")
            return "ok"

        assert await retry_classifier.with_retry(operation) == "ok"
        assert len(attempts) == 3
        assert len(sleep.calls) == 2

    @pytest.mark.asyncio
    async def test_reraises_last_failure_unchanged(self, retry_classifier, sleep) -> None:
        errors = [RuntimeError(f"failure {i}") for i in range(3)]

        async def operation():
            raise errors.pop(0)

        with pytest.raises(RuntimeError, match="failure 2"):
            await retry_classifier.with_retry(operation)
        assert len(sleep.calls) == 2

    @pytest.mark.asyncio
    async def test_rate_limited_is_not_retried(self, retry_classifier, sleep) -> None:
        calls = []

        async def operation():
            calls.append(1)
            raise DetectionSignalError("status of 429")

        with pytest.raises(DetectionSignalError):
            await retry_classifier.with_retry(operation)
        assert len(calls) == 1
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_fatal_is_not_retried(self, retry_classifier, sleep) -> None:
        async def operation():
            raise AuthenticationLostError()

        with pytest.raises(AuthenticationLostError):
            await retry_classifier.with_retry(operation)
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_silent_failures_logged_at_debug(self, retry_classifier, caplog) -> None:
        async def operation():
            raise RuntimeError("net::ERR_CONNECTION_RESET")

        with caplog.at_level("DEBUG", logger="pacekeeper.resilience.retry"):
            with pytest.raises(RuntimeError):
                await retry_classifier.with_retry(operation, "probe")

        silent = [r for r in caplog.records if "Silent error in probe" in r.getMessage()]
        assert len(silent) == 3
        assert all(r.levelname == "DEBUG" for r in silent)
        assert all(r.classification == "silent" for r in silent)
