"""
Message store backed by the service's own database.

send_outbound() is the server side of a send: it stores the message as
pending, hands it to the delivery channel and publishes every stored change
to the push hub. The HTTP send route and LocalMessageStore both use it.
"""

import logging
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from inbox_sync import storage
from inbox_sync.channel import ChannelError, DeliveryChannel
from inbox_sync.config import settings
from inbox_sync.interfaces import ConversationNotFoundError, MessageStoreAPI, SendError
from inbox_sync.push import PushHub
from inbox_sync.schemas import ChannelAck, MessageContent, MessageRecord

logger = logging.getLogger(__name__)


async def send_outbound(
    db: Session,
    channel: DeliveryChannel,
    hub: PushHub,
    conversation_id: str,
    content: MessageContent,
    sender: Optional[str] = None,
) -> ChannelAck:
    """
    Store, deliver and publish an outbound message.

    Raises:
        ConversationNotFoundError: unknown conversation
        SendError: the channel rejected the message or failed to deliver it
            (the row is marked failed)
    """
    conversation = storage.get_conversation(db, conversation_id)
    if conversation is None:
        raise ConversationNotFoundError(conversation_id)

    row = storage.create_outbound_message(db, conversation_id, content, sender=sender)
    hub.publish(storage.to_record(row))

    try:
        ack = await channel.deliver(conversation.phone, content)
    except Exception as e:
        # Transport errors of a real channel count as rejections too
        if not isinstance(e, ChannelError):
            logger.exception(f"Delivery channel error for message {row.id}")
        failed = storage.fail_outbound_message(db, row.id)
        if failed is not None:
            hub.publish(storage.to_record(failed))
        raise SendError(str(e) or type(e).__name__) from e

    confirmed = storage.confirm_outbound_message(db, row.id, ack.channel_message_id, ack.status)
    if confirmed is not None:
        hub.publish(storage.to_record(confirmed))
    return ack


class LocalMessageStore(MessageStoreAPI):
    """MessageStoreAPI over the SQLAlchemy store, a delivery channel and a push hub."""

    def __init__(
        self,
        channel: DeliveryChannel,
        hub: PushHub,
        session_factory: Callable[[], Session] = storage.SessionLocal,
        snapshot_limit: Optional[int] = None,
    ) -> None:
        self.channel = channel
        self.hub = hub
        self._session_factory = session_factory
        self._snapshot_limit = snapshot_limit or settings.SNAPSHOT_LIMIT

    async def fetch_messages(self, conversation_id: str) -> List[MessageRecord]:
        with self._session_factory() as db:
            if storage.get_conversation(db, conversation_id) is None:
                raise ConversationNotFoundError(conversation_id)
            rows, _ = storage.get_messages(db, conversation_id, limit=self._snapshot_limit, latest=True)
            return [storage.to_record(row) for row in rows]

    async def send_message(
        self,
        conversation_id: str,
        content: MessageContent,
        sender: Optional[str] = None,
    ) -> ChannelAck:
        with self._session_factory() as db:
            return await send_outbound(db, self.channel, self.hub, conversation_id, content, sender=sender)
