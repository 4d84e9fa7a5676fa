"""Shared test fixtures and hypothesis strategies for the controller test suite."""

from __future__ import annotations

import copy
import random
from datetime import datetime, timedelta

import pytest
from hypothesis import strategies as st

from pacekeeper.config.action_policies import ActionPolicy
from pacekeeper.config.settings import PacekeeperSettings
from pacekeeper.integration.json_store import JsonFileStore
from pacekeeper.resilience.rate_budget import RateBudget
from pacekeeper.resilience.retry import RetryClassifier
from pacekeeper.session.types import PageSignal


# ---------------------------------------------------------------------------
# Time doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Controllable clock. Call it for a datetime; use .time() for epoch seconds."""

    def __init__(self, start: datetime | None = None) -> None:
        # Monday, mid-morning: inside the default operating window
        self.current = start or datetime(2024, 5, 6, 10, 0, 0)

    def __call__(self) -> datetime:
        return self.current

    def time(self) -> float:
        return self.current.timestamp()

    def advance(self, seconds: float = 0, **kwargs: float) -> None:
        self.current += timedelta(seconds=seconds, **kwargs)


class RecordingSleep:
    """Async sleep stand-in that records requested delays and returns at once."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.calls: list[float] = []
        self._clock = clock

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self._clock is not None:
            self._clock.advance(seconds)


# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------


class MemoryStore:
    """In-memory persistence store."""

    def __init__(self, initial: dict[str, list[dict]] | None = None) -> None:
        self.data: dict[str, list[dict]] = copy.deepcopy(initial or {})

    async def load(self, key: str) -> list[dict]:
        return copy.deepcopy(self.data.get(key, []))

    async def save(self, key: str, records: list[dict]) -> None:
        self.data[key] = copy.deepcopy(list(records))

    async def append(self, key: str, record: dict) -> None:
        self.data.setdefault(key, []).append(copy.deepcopy(record))


def essential_cookies(domain: str = ".linkedin.com", expires: float | None = None) -> list[dict]:
    return [
        {"name": "li_at", "value": "token-value", "domain": domain, "expires": expires},
        {"name": "JSESSIONID", "value": "ajax:123", "domain": domain, "expires": expires},
    ]


class FakeExecutor:
    """Scriptable action executor.

    ``outcomes`` is consumed one entry per perform_action call: an exception
    instance is raised, anything else is returned. When empty, calls succeed.
    """

    def __init__(
        self,
        outcomes: list | None = None,
        cookies: list[dict] | None = None,
        signal: PageSignal | bool | None = None,
        login_results: list[bool] | None = None,
    ) -> None:
        self.outcomes = list(outcomes or [])
        self.cookies = essential_cookies() if cookies is None else cookies
        self.signal = signal
        self.login_results = list(login_results or [])
        self.performed: list[tuple[str, object]] = []
        self.identities: list[object] = []
        self.applied_tokens: list[str] = []
        self.set_cookie_calls: list[list[dict]] = []
        self.login_calls = 0

    async def perform_action(self, action, proxy):
        self.performed.append((action.key, proxy))
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return {"ok": True}

    async def inspect_page(self):
        return self.signal

    async def get_cookies(self):
        return list(self.cookies)

    async def set_cookies(self, cookies):
        self.set_cookie_calls.append(cookies)

    async def reauthenticate(self) -> bool:
        self.login_calls += 1
        if self.login_results:
            return self.login_results.pop(0)
        return True

    async def use_identity(self, proxy) -> None:
        self.identities.append(proxy)

    async def apply_captcha_solution(self, token: str) -> None:
        self.applied_tokens.append(token)


class FakeSolver:
    """Stands in for AntiCaptchaClient; ``results`` are returned (or raised) in order."""

    def __init__(self, results: list | None = None, task_id: int = 77) -> None:
        self.results = list(results or [])
        self.task_id = task_id
        self.created: list[dict] = []

    async def create_task(self, task: dict) -> int:
        self.created.append(task)
        return self.task_id

    async def get_task_result(self, task_id: int) -> dict:
        outcome = self.results.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


ARKOSE_PAGE = (
    '<script src="https://client-api.arkoselabs.com/fc/gt2/public_key/'
    '3117BF26-4762-4F5A-8ED9-A85E69209A46/api.js"></script>'
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host PACEKEEPER_* variables out of settings-based tests."""
    import os

    for key in list(os.environ):
        if key.startswith("PACEKEEPER_"):
            monkeypatch.delenv(key)


@pytest.fixture
def settings() -> PacekeeperSettings:
    return PacekeeperSettings(operating_hours=None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep(clock: FakeClock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def file_store(tmp_path) -> JsonFileStore:
    return JsonFileStore(tmp_path / "data")


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def rate_budget(clock: FakeClock) -> RateBudget:
    return RateBudget(
        {"default": ActionPolicy(daily_limit=15, weekly_limit=80)},
        operating_hours=None,
        clock=clock,
        rng=random.Random(42),
    )


@pytest.fixture
def retry_classifier(sleep: RecordingSleep) -> RetryClassifier:
    return RetryClassifier(max_attempts=3, sleep=sleep, rng=random.Random(7))


# ---------------------------------------------------------------------------
# Hypothesis strategies (reusable across property tests)
# ---------------------------------------------------------------------------

categories = st.sampled_from(["connect", "message", "follow"])

score_events = st.lists(st.booleans(), min_size=1, max_size=60)

detection_counts = st.integers(min_value=1, max_value=20)

proxy_addresses = st.lists(
    st.integers(min_value=1, max_value=254).map(lambda n: f"10.0.0.{n}"),
    min_size=1,
    max_size=8,
    unique=True,
)
