import logging
from datetime import datetime
from typing import Callable, Optional, Union

from inbox_sync.interfaces import MessageStoreAPI, SendError
from inbox_sync.merge import Source
from inbox_sync.metrics import record_send_outcome
from inbox_sync.schemas import Direction, Message, MessageContent, MessageRecord, MessageStatus
from inbox_sync.transcript import ConversationStore
from inbox_sync.utils import new_local_id, utcnow

logger = logging.getLogger(__name__)


class OptimisticSender:
    """
    Shows an outgoing message right away, then feeds the channel's answer
    back through the merge pipeline.

    Failed sends are never retried here; retrying is a separate user action.
    """

    def __init__(
        self,
        store: ConversationStore,
        api: MessageStoreAPI,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = new_local_id,
    ) -> None:
        self._store = store
        self._api = api
        self._clock = clock
        self._id_factory = id_factory

    async def submit(
        self,
        conversation_id: str,
        content: Union[str, MessageContent],
        sender: Optional[str] = None,
    ) -> None:
        """
        Append a pending entry and send it.

        Raises:
            SendError: the send failed; the entry is left in `failed` state.
        """
        if isinstance(content, str):
            content = MessageContent(text=content)

        local_id = self._id_factory()
        pending = Message(
            id=local_id,
            conversation_id=conversation_id,
            direction=Direction.OUTBOUND,
            content=content,
            status=MessageStatus.PENDING,
            created_at=self._clock(),
            sender=sender,
        )
        if not self._store.append(pending):
            return

        logger.debug("Sending message", extra={"conversation_id": conversation_id, "message_id": local_id})
        try:
            ack = await self._api.send_message(conversation_id, content, sender=sender)
        except SendError:
            self._fail(conversation_id, local_id)
            raise
        except Exception as e:
            self._fail(conversation_id, local_id)
            raise SendError(str(e)) from e

        if ack.status == MessageStatus.FAILED:
            self._fail(conversation_id, local_id)
            raise SendError(f"channel reported {ack.channel_message_id} as failed")

        record_send_outcome("sent")
        logger.info(
            "Message accepted by channel",
            extra={
                "conversation_id": conversation_id,
                "message_id": local_id,
                "channel_message_id": ack.channel_message_id,
            },
        )
        self._store.apply_record(
            conversation_id,
            MessageRecord(id=local_id, channel_message_id=ack.channel_message_id, status=ack.status),
            Source.LOCAL,
        )

    def dismiss(self, conversation_id: str, local_id: str) -> bool:
        """Remove a failed entry from the transcript."""
        return self._store.discard_failed(conversation_id, local_id)

    def _fail(self, conversation_id: str, local_id: str) -> None:
        record_send_outcome("failed")
        logger.warning("Send failed", extra={"conversation_id": conversation_id, "message_id": local_id})
        self._store.mark_failed(conversation_id, local_id)
