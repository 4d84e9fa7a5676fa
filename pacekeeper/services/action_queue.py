"""Pending/processed action queue over the persistence store.

Actions are de-duplicated by key (category + target) against both the
pending and the processed collections, so a target is never acted on twice
for the same category. Processed actions keep their outcome and timestamp.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from pacekeeper.models.actions import ActionStatus, PendingAction, ProcessedAction
from pacekeeper.services.protocols import PersistenceStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActionQueue:
    """Persistent FIFO of pending actions.

    Parameters
    ----------
    store:
        Persistence store holding both collections.
    pending_key / processed_key:
        Store keys of the two collections.
    clock:
        Returns the current UTC time; used for stale-entry cleanup.
    """

    def __init__(
        self,
        store: PersistenceStore,
        *,
        pending_key: str = "pending",
        processed_key: str = "processed",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._pending_key = pending_key
        self._processed_key = processed_key
        self._clock = clock

    async def _load(self, key: str, model: type[PendingAction]) -> list:
        items = []
        for record in await self._store.load(key):
            try:
                items.append(model.model_validate(record))
            except ValidationError as exc:
                logger.warning("Skipping malformed %s record: %s", key, exc.error_count())
        return items

    async def pending(self) -> list[PendingAction]:
        return await self._load(self._pending_key, PendingAction)

    async def processed(self) -> list[ProcessedAction]:
        return await self._load(self._processed_key, ProcessedAction)

    async def _save_pending(self, actions: list[PendingAction]) -> None:
        await self._store.save(
            self._pending_key, [a.model_dump(mode="json") for a in actions]
        )

    async def enqueue(self, action: PendingAction) -> bool:
        """Add *action* unless its key is already pending or processed."""
        return await self.enqueue_batch([action]) == 1

    async def enqueue_batch(self, actions: Iterable[PendingAction]) -> int:
        """Add every action whose key is new. Returns how many were added."""
        pending = await self.pending()
        seen = {a.key for a in pending} | {a.key for a in await self.processed()}

        added = 0
        for action in actions:
            if action.key in seen:
                logger.info("Action %s already queued or processed", action.key)
                continue
            pending.append(action)
            seen.add(action.key)
            added += 1

        if added:
            await self._save_pending(pending)
            logger.info("Added %d actions to queue", added)
        return added

    async def mark_processed(
        self,
        action: PendingAction,
        status: ActionStatus = ActionStatus.COMPLETED,
        error: str | None = None,
    ) -> ProcessedAction:
        """Move *action* from pending to processed with its outcome."""
        pending = await self.pending()
        remaining = [a for a in pending if a.key != action.key]
        if len(remaining) != len(pending):
            await self._save_pending(remaining)

        processed = ProcessedAction(
            **action.model_dump(),
            status=status,
            processed_at=self._clock(),
            error=error,
        )
        await self._store.append(self._processed_key, processed.model_dump(mode="json"))
        logger.info(
            "Marked %s as processed with status: %s",
            action.key,
            status.value,
            extra={"category": action.category, "action_id": action.action_id},
        )
        return processed

    async def get_status(self) -> dict:
        pending = await self.pending()
        processed = await self.processed()
        return {
            "pending": len(pending),
            "processed": len(processed),
            "next": pending[0].model_dump(mode="json") if pending else None,
        }

    async def clean(self, max_age_days: int = 7) -> int:
        """Drop pending actions queued more than *max_age_days* ago."""
        pending = await self.pending()
        cutoff = self._clock() - timedelta(days=max_age_days)
        fresh = [a for a in pending if a.queued_at > cutoff]

        removed = len(pending) - len(fresh)
        if removed:
            await self._save_pending(fresh)
            logger.info("Cleaned %d old entries from queue", removed)
        return removed
