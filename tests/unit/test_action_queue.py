"""Unit tests for the persistent action queue."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import MemoryStore
from pacekeeper.models.actions import ActionStatus, PendingAction
from pacekeeper.services.action_queue import ActionQueue

NOW = datetime(2024, 5, 6, 10, 0, tzinfo=timezone.utc)


def _action(target: str, category: str = "connect", **kwargs) -> PendingAction:
    return PendingAction(category=category, target=f"https://www.linkedin.com/in/{target}", **kwargs)


@pytest.fixture
def queue(store: MemoryStore) -> ActionQueue:
    return ActionQueue(store, clock=lambda: NOW)


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_deduplicates_pending(self, queue: ActionQueue) -> None:
        assert await queue.enqueue(_action("alice")) is True
        assert await queue.enqueue(_action("alice")) is False
        assert len(await queue.pending()) == 1

    @pytest.mark.asyncio
    async def test_same_target_different_category_is_distinct(self, queue: ActionQueue) -> None:
        await queue.enqueue(_action("alice"))
        assert await queue.enqueue(_action("alice", category="message")) is True

    @pytest.mark.asyncio
    async def test_processed_targets_are_not_requeued(self, queue: ActionQueue) -> None:
        action = _action("bob")
        await queue.enqueue(action)
        await queue.mark_processed(action)

        assert await queue.enqueue(_action("bob")) is False

    @pytest.mark.asyncio
    async def test_enqueue_batch_counts_new_only(self, queue: ActionQueue) -> None:
        await queue.enqueue(_action("alice"))
        added = await queue.enqueue_batch([_action("alice"), _action("bob"), _action("bob"), _action("carol")])

        assert added == 2
        assert [a.target.rsplit("/", 1)[1] for a in await queue.pending()] == ["alice", "bob", "carol"]


class TestMarkProcessed:
    @pytest.mark.asyncio
    async def test_moves_action_with_status(self, queue: ActionQueue, store: MemoryStore) -> None:
        action = _action("alice")
        await queue.enqueue(action)

        processed = await queue.mark_processed(action, ActionStatus.FAILED, error="boom")

        assert await queue.pending() == []
        assert processed.status is ActionStatus.FAILED
        assert processed.processed_at == NOW
        assert store.data["processed"][0]["error"] == "boom"
        assert store.data["processed"][0]["status"] == "failed"


class TestStatusAndClean:
    @pytest.mark.asyncio
    async def test_get_status(self, queue: ActionQueue) -> None:
        await queue.enqueue_batch([_action("alice"), _action("bob")])
        await queue.mark_processed(_action("alice"))

        status = await queue.get_status()

        assert status["pending"] == 1
        assert status["processed"] == 1
        assert status["next"]["target"].endswith("/bob")

    @pytest.mark.asyncio
    async def test_clean_drops_stale_entries(self, queue: ActionQueue) -> None:
        await queue.enqueue_batch(
            [
                _action("old", queued_at=NOW - timedelta(days=8)),
                _action("recent", queued_at=NOW - timedelta(days=2)),
            ]
        )

        assert await queue.clean(max_age_days=7) == 1
        assert [a.target.rsplit("/", 1)[1] for a in await queue.pending()] == ["recent"]

    @pytest.mark.asyncio
    async def test_malformed_records_are_skipped(self, queue: ActionQueue, store: MemoryStore) -> None:
        store.data["pending"] = [{"category": ""}, _action("ok").model_dump(mode="json")]
        assert len(await queue.pending()) == 1
