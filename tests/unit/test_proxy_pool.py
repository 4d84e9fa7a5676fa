"""Unit tests for the scored proxy pool."""

from __future__ import annotations

import random
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from conftest import FakeClock
from pacekeeper.middleware.error_handler import NoHealthyProxiesError
from pacekeeper.proxy.pool import ProxyPool
from pacekeeper.proxy.sources import StaticProxySource
from pacekeeper.proxy.types import ProxyRecord


def _pool(clock: FakeClock, entries: list[str] | None = None, **kwargs) -> ProxyPool:
    sources = [StaticProxySource(entries)] if entries is not None else []
    return ProxyPool(sources, clock=clock.time, rng=random.Random(5), **kwargs)


def _entries(n: int) -> list[str]:
    return [f"10.0.0.{i}:8080:user{i}:secret{i}" for i in range(1, n + 1)]


class TestLoad:
    @pytest.mark.asyncio
    async def test_first_nonempty_source_wins(self, clock: FakeClock) -> None:
        pool = ProxyPool(
            [StaticProxySource([]), StaticProxySource(_entries(2)), StaticProxySource(_entries(5))],
            clock=clock.time,
        )
        assert await pool.load() == 2
        assert {r.address for r in pool.records} == {"10.0.0.1", "10.0.0.2"}

    @pytest.mark.asyncio
    async def test_no_source_yields_zero(self, clock: FakeClock) -> None:
        pool = _pool(clock, [])
        assert await pool.load() == 0
        assert pool.records == []

    @pytest.mark.asyncio
    async def test_reload_excludes_blacklisted_and_keeps_scores(self, clock: FakeClock) -> None:
        pool = _pool(clock, _entries(3))
        await pool.load()
        first, second, _ = pool.records
        for _ in range(4):
            pool.mark_failure(first)
        pool.mark_failure(second)

        assert await pool.load() == 2
        keys = {r.key for r in pool.records}
        assert first.key not in keys
        assert next(r for r in pool.records if r.key == second.key).reliability_score == pytest.approx(0.8)


class TestValidate:
    @pytest.mark.asyncio
    async def test_result_reused_within_freshness_window(self, clock: FakeClock) -> None:
        pool = _pool(clock, freshness_seconds=600)
        record = ProxyRecord(address="10.0.0.1", port=8080)

        with patch.object(ProxyPool, "_probe", new_callable=AsyncMock, return_value=True) as probe:
            assert await pool.validate(record) is True
            clock.advance(599)
            assert await pool.validate(record) is True
            assert probe.await_count == 1

            clock.advance(2)
            await pool.validate(record)
            assert probe.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_probe_still_stamps_validation_time(self, clock: FakeClock) -> None:
        pool = _pool(clock)
        record = ProxyRecord(address="10.0.0.1", port=8080)

        with patch.object(ProxyPool, "_probe", new_callable=AsyncMock, return_value=False):
            assert await pool.validate(record) is False

        assert record.last_validated_at == clock.time()
        assert record.last_validation_ok is False

    @pytest.mark.asyncio
    async def test_probe_success_on_2xx(self, clock: FakeClock) -> None:
        pool = _pool(clock)
        record = ProxyRecord(address="10.0.0.1", port=8080, username="u", password="p")
        response = httpx.Response(200, request=httpx.Request("GET", "https://www.linkedin.com"))

        with patch("httpx.AsyncClient.get", new_callable=AsyncMock, return_value=response):
            assert await pool.validate(record) is True

    @pytest.mark.asyncio
    async def test_probe_fails_on_non_success_status(self, clock: FakeClock) -> None:
        pool = _pool(clock)
        record = ProxyRecord(address="10.0.0.1", port=8080)
        response = httpx.Response(407, request=httpx.Request("GET", "https://www.linkedin.com"))

        with patch("httpx.AsyncClient.get", new_callable=AsyncMock, return_value=response):
            assert await pool.validate(record) is False

    @pytest.mark.asyncio
    async def test_probe_fails_on_timeout(self, clock: FakeClock) -> None:
        pool = _pool(clock)
        record = ProxyRecord(address="10.0.0.1", port=8080)

        with patch(
            "httpx.AsyncClient.get",
            new_callable=AsyncMock,
            side_effect=httpx.ConnectTimeout("timed out"),
        ):
            assert await pool.validate(record) is False

    @pytest.mark.asyncio
    async def test_validate_all_merges_scores(self, clock: FakeClock) -> None:
        pool = _pool(clock, _entries(3))
        await pool.load()
        good = {"10.0.0.1", "10.0.0.3"}

        async def fake_probe(self, record):
            return record.address in good

        with patch.object(ProxyPool, "_probe", fake_probe):
            assert await pool.validate_all() == 2

        scores = {r.address: r.reliability_score for r in pool.records}
        assert scores == {"10.0.0.1": 1.0, "10.0.0.2": pytest.approx(0.8), "10.0.0.3": 1.0}

    @pytest.mark.asyncio
    async def test_validate_all_skips_fresh_results(self, clock: FakeClock) -> None:
        pool = _pool(clock, _entries(1))
        await pool.load()

        with patch.object(ProxyPool, "_probe", new_callable=AsyncMock, return_value=False):
            await pool.validate_all()
            await pool.validate_all()

        # Second pass reused the fresh result and did not penalize again
        assert pool.records[0].failure_count == 1


class TestSelect:
    @pytest.mark.asyncio
    async def test_only_top_k_are_chosen(self, clock: FakeClock) -> None:
        pool = _pool(clock, _entries(6), top_k=3)
        await pool.load()
        for i, record in enumerate(pool.records):
            record.reliability_score = 1.0 - i * 0.1

        chosen = set()
        with patch.object(ProxyPool, "_probe", new_callable=AsyncMock, return_value=True):
            for _ in range(60):
                chosen.add((await pool.select()).address)

        assert chosen <= {"10.0.0.1", "10.0.0.2", "10.0.0.3"}
        assert len(chosen) > 1

    @pytest.mark.asyncio
    async def test_select_sets_current_proxy(self, clock: FakeClock) -> None:
        pool = _pool(clock, _entries(2))
        await pool.load()

        with patch.object(ProxyPool, "_probe", new_callable=AsyncMock, return_value=True):
            selected = await pool.select()

        assert pool.current_proxy is selected
        assert pool.last_rotation_at == clock.time()

    @pytest.mark.asyncio
    async def test_failed_validation_penalizes_each_candidate_once(self, clock: FakeClock) -> None:
        pool = _pool(clock, _entries(3), max_selection_attempts=3)
        await pool.load()

        with patch.object(ProxyPool, "_probe", new_callable=AsyncMock, return_value=False) as probe:
            with pytest.raises(NoHealthyProxiesError):
                await pool.select()

        assert probe.await_count == 3
        assert [r.failure_count for r in pool.records] == [1, 1, 1]
        assert all(r.reliability_score == pytest.approx(0.8) for r in pool.records)

    @pytest.mark.asyncio
    async def test_single_failed_validation_costs_one_step(self, clock: FakeClock) -> None:
        pool = _pool(clock, _entries(1), max_selection_attempts=3)
        await pool.load()

        with patch.object(ProxyPool, "_probe", new_callable=AsyncMock, return_value=False) as probe:
            with pytest.raises(NoHealthyProxiesError):
                await pool.select()
            # Inside the freshness window the cached failure is not charged again
            with pytest.raises(NoHealthyProxiesError):
                await pool.select()

        record = pool.records[0]
        assert probe.await_count == 1
        assert record.failure_count == 1
        assert record.reliability_score == pytest.approx(0.8)
        assert record.blacklisted is False

    @pytest.mark.asyncio
    async def test_failure_charged_by_validate_all_not_repeated(self, clock: FakeClock) -> None:
        pool = _pool(clock, _entries(2))
        await pool.load()
        bad, good = pool.records

        async def _probe(record: ProxyRecord) -> bool:
            return record.key == good.key

        with patch.object(ProxyPool, "_probe", new=AsyncMock(side_effect=_probe)):
            await pool.validate_all()
            for _ in range(5):
                assert (await pool.select()).key == good.key

        assert bad.failure_count == 1
        assert bad.reliability_score == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_empty_pool_raises(self, clock: FakeClock) -> None:
        with pytest.raises(NoHealthyProxiesError):
            await _pool(clock).select()

    @pytest.mark.asyncio
    async def test_never_returns_blacklisted(self, clock: FakeClock) -> None:
        pool = _pool(clock, _entries(2))
        await pool.load()
        bad = pool.records[0]
        for _ in range(4):
            pool.mark_failure(bad)
        bad.reliability_score = 1.0  # even a high score does not resurrect it

        with patch.object(ProxyPool, "_probe", new_callable=AsyncMock, return_value=True):
            for _ in range(20):
                assert (await pool.select()).key != bad.key


class TestScores:
    def test_failures_dominate_successes(self, clock: FakeClock) -> None:
        pool = _pool(clock)
        record = ProxyRecord(address="10.0.0.1", port=8080, reliability_score=0.5)
        pool.mark_success(record)
        assert record.reliability_score == pytest.approx(0.6)
        pool.mark_failure(record)
        assert record.reliability_score == pytest.approx(0.4)

    def test_success_clamped_at_one(self, clock: FakeClock) -> None:
        pool = _pool(clock)
        record = ProxyRecord(address="10.0.0.1", port=8080)
        for _ in range(5):
            pool.mark_success(record)
        assert record.reliability_score == 1.0
        assert record.success_count == 5

    @pytest.mark.asyncio
    async def test_blacklisted_on_fourth_failure(self, clock: FakeClock) -> None:
        pool = _pool(clock, _entries(1))
        await pool.load()
        record = pool.records[0]
        with patch.object(ProxyPool, "_probe", new_callable=AsyncMock, return_value=True):
            await pool.select()

        for _ in range(3):
            pool.mark_failure(record)
        assert record.blacklisted is False

        pool.mark_failure(record)
        assert record.blacklisted is True
        assert record.reliability_score == pytest.approx(0.2)
        assert pool.current_proxy is None

    def test_blacklisted_record_is_frozen(self, clock: FakeClock) -> None:
        pool = _pool(clock)
        record = ProxyRecord(address="10.0.0.1", port=8080, reliability_score=0.3)
        pool.mark_failure(record)
        assert record.blacklisted is True

        pool.mark_success(record)
        assert record.reliability_score == pytest.approx(0.1)
        assert record.blacklisted is True


class TestStats:
    @pytest.mark.asyncio
    async def test_stats_never_expose_credentials(self, clock: FakeClock) -> None:
        pool = _pool(clock, _entries(2))
        await pool.load()
        pool.mark_failure(pool.records[0])

        stats = pool.get_stats()

        assert stats["total"] == 2
        assert stats["available"] == 2
        assert "secret" not in repr(stats)
        assert stats["proxies"][0]["url"] == "http://***@10.0.0.1:8080"
