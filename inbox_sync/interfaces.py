"""
Boundaries between the reconciliation engine and the services it talks to.

The engine only depends on these two interfaces, so the same merge core can
sit behind any snapshot source and any push mechanism.
"""

from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from inbox_sync.schemas import ChannelAck, MessageContent, MessageRecord

RecordCallback = Callable[[object], None]
Unsubscribe = Callable[[], None]


class SendError(Exception):
    """The delivery channel did not accept an outbound message."""


class ConversationNotFoundError(LookupError):
    """The conversation does not exist in the message store."""


class MessageStoreAPI(ABC):
    """Authoritative message store."""

    @abstractmethod
    async def fetch_messages(self, conversation_id: str) -> List[MessageRecord]:
        """Ordered snapshot of a conversation; may be partial."""

    @abstractmethod
    async def send_message(
        self,
        conversation_id: str,
        content: MessageContent,
        sender: Optional[str] = None,
    ) -> ChannelAck:
        """Hand a message to the delivery channel; raises SendError on rejection."""


class PushSubscriptionAPI(ABC):
    """At-least-once, unordered notifications of new or changed messages."""

    @abstractmethod
    def subscribe(self, conversation_id: str, on_record: RecordCallback) -> Unsubscribe:
        """Deliver records for `conversation_id` to `on_record` until unsubscribed."""
