"""In-process push hub: fans stored message changes out to subscribers."""

import logging
from collections import defaultdict
from typing import DefaultDict, List

from inbox_sync.interfaces import PushSubscriptionAPI, RecordCallback, Unsubscribe
from inbox_sync.schemas import MessageRecord

logger = logging.getLogger(__name__)


class PushHub(PushSubscriptionAPI):
    """
    Per-conversation publish/subscribe.

    A subscriber that raises is logged and skipped; the remaining
    subscribers still receive the record.
    """

    def __init__(self) -> None:
        self._subscribers: DefaultDict[str, List[RecordCallback]] = defaultdict(list)

    def subscribe(self, conversation_id: str, on_record: RecordCallback) -> Unsubscribe:
        self._subscribers[conversation_id].append(on_record)
        logger.debug(f"Push subscriber added for conversation {conversation_id}")

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(conversation_id)
            if callbacks and on_record in callbacks:
                callbacks.remove(on_record)
                if not callbacks:
                    del self._subscribers[conversation_id]
                logger.debug(f"Push subscriber removed for conversation {conversation_id}")

        return unsubscribe

    def subscriber_count(self, conversation_id: str) -> int:
        return len(self._subscribers.get(conversation_id, ()))

    def publish(self, record: MessageRecord) -> int:
        """Deliver a record to the subscribers of its conversation; returns how many got it."""
        delivered = 0
        for callback in list(self._subscribers.get(record.conversation_id, ())):
            try:
                callback(record)
                delivered += 1
            except Exception:
                logger.exception(
                    "Push subscriber failed",
                    extra={"conversation_id": record.conversation_id, "record_id": record.id},
                )
        return delivered
