import logging
from typing import Any, Optional

from pydantic import ValidationError

from inbox_sync.interfaces import PushSubscriptionAPI, Unsubscribe
from inbox_sync.merge import Source
from inbox_sync.schemas import MessageRecord
from inbox_sync.transcript import ConversationStore

logger = logging.getLogger(__name__)


class PushListener:
    """
    Feeds push notifications for the active conversation into the store.

    Delivery is at-least-once and unordered; the merge function makes
    repeats and reordering harmless. on_push never raises, since an
    exception inside a subscription callback would tear the subscription down.
    """

    def __init__(self, store: ConversationStore, push_api: PushSubscriptionAPI) -> None:
        self._store = store
        self._push_api = push_api
        self._unsubscribe: Optional[Unsubscribe] = None
        self._conversation_id: Optional[str] = None

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    def attach(self, conversation_id: str) -> None:
        self.detach()
        self._conversation_id = conversation_id
        self._unsubscribe = self._push_api.subscribe(
            conversation_id,
            lambda record: self.on_push(record, conversation_id),
        )
        logger.info("Push listener attached", extra={"conversation_id": conversation_id})

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            logger.info("Push listener detached", extra={"conversation_id": self._conversation_id})
        self._unsubscribe = None
        self._conversation_id = None

    def on_push(self, record: Any, conversation_id: Optional[str] = None) -> None:
        if not isinstance(record, MessageRecord):
            try:
                record = MessageRecord.model_validate(record)
            except ValidationError as e:
                logger.warning(
                    f"Skipping malformed push record: {e.error_count()} error(s)",
                    extra={"conversation_id": conversation_id},
                )
                return

        target = record.conversation_id or conversation_id or self._conversation_id
        try:
            self._store.apply_record(target, record, Source.PUSH)
        except Exception:
            logger.exception("Failed to apply push record", extra={"conversation_id": target, "record_id": record.id})
