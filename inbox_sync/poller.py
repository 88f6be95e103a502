"""
Poll reconciler: periodic authoritative snapshots as a backstop for push.

The timer ticks every `interval` seconds while a conversation is open. A tick
whose predecessor is still fetching is skipped rather than queued, so two
snapshots can never be applied out of order. Nothing is ever deleted because
a snapshot lacks it; snapshots may be partial.
"""

import asyncio
import logging
from typing import Iterable, Optional, Set

from inbox_sync.config import settings
from inbox_sync.interfaces import MessageStoreAPI
from inbox_sync.metrics import record_poll_cycle
from inbox_sync.schemas import MessageRecord
from inbox_sync.transcript import ConversationStore

logger = logging.getLogger(__name__)


class PollReconciler:
    def __init__(self, store: ConversationStore, api: MessageStoreAPI, interval: Optional[float] = None) -> None:
        self._store = store
        self._api = api
        self.interval = interval if interval is not None else settings.POLL_INTERVAL_SECONDS
        self._timer: Optional[asyncio.Task] = None
        self._in_flight: Optional[str] = None
        self._cycles: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None

    def start(self, conversation_id: str) -> None:
        self.stop()
        self._timer = asyncio.create_task(self._run(conversation_id))
        logger.info(
            f"Poll timer started ({self.interval}s)",
            extra={"conversation_id": conversation_id},
        )

    def stop(self) -> None:
        # Cycles already fetching are left to finish; the store discards them
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _run(self, conversation_id: str) -> None:
        while self._store.is_active(conversation_id):
            await asyncio.sleep(self.interval)
            if not self._store.is_active(conversation_id):
                break
            self.tick(conversation_id)

    def tick(self, conversation_id: str) -> Optional[asyncio.Task]:
        """Start a cycle unless the previous one is still fetching."""
        if self._in_flight == conversation_id:
            logger.debug("Previous poll still in flight, skipping", extra={"conversation_id": conversation_id})
            record_poll_cycle("skipped")
            return None
        task = asyncio.create_task(self.poll_once(conversation_id))
        self._cycles.add(task)
        task.add_done_callback(self._cycles.discard)
        return task

    async def poll_once(self, conversation_id: str) -> bool:
        """
        Fetch one snapshot and merge it.

        Returns:
            True if the snapshot was fetched and handed to the store.
        """
        if self._in_flight == conversation_id:
            record_poll_cycle("skipped")
            return False

        self._in_flight = conversation_id
        try:
            snapshot = await self._api.fetch_messages(conversation_id)
        except Exception as e:
            logger.warning(f"Poll fetch failed: {e}", extra={"conversation_id": conversation_id})
            record_poll_cycle("failed")
            return False
        finally:
            if self._in_flight == conversation_id:
                self._in_flight = None

        self.reconcile(conversation_id, snapshot)
        record_poll_cycle("completed")
        return True

    def reconcile(self, conversation_id: str, snapshot: Iterable[MessageRecord]) -> bool:
        """Merge every snapshot record in one batch; returns whether the transcript changed."""
        return self._store.reconcile_snapshot(conversation_id, snapshot)
