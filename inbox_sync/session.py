"""
One client-side conversation view: store, producers and the switch logic.

Only one conversation is reconciled at a time. Switching unsubscribes the
push listener and stops the poll timer for the old conversation; callbacks
for it that complete afterwards are discarded by the store.
"""

import logging
from datetime import datetime
from typing import Callable, Optional, Tuple, Union

from inbox_sync.interfaces import MessageStoreAPI, PushSubscriptionAPI
from inbox_sync.poller import PollReconciler
from inbox_sync.push_listener import PushListener
from inbox_sync.schemas import Message, MessageContent
from inbox_sync.send_path import OptimisticSender
from inbox_sync.transcript import ConversationStore
from inbox_sync.utils import new_local_id, utcnow

logger = logging.getLogger(__name__)


class ConversationSession:
    def __init__(
        self,
        api: MessageStoreAPI,
        push_api: PushSubscriptionAPI,
        poll_interval: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = new_local_id,
    ) -> None:
        self.store = ConversationStore()
        self.sender = OptimisticSender(self.store, api, clock=clock, id_factory=id_factory)
        self.listener = PushListener(self.store, push_api)
        self.poller = PollReconciler(self.store, api, interval=poll_interval)

    @property
    def conversation_id(self) -> Optional[str]:
        return self.store.active_conversation_id

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self.store.messages

    async def open(self, conversation_id: str, initial_load: bool = True) -> None:
        """Make `conversation_id` the active conversation."""
        if self.store.is_active(conversation_id):
            return
        self.close()

        self.store.open(conversation_id)
        # Subscribe before the initial load so nothing pushed meanwhile is missed
        self.listener.attach(conversation_id)
        if initial_load:
            await self.poller.poll_once(conversation_id)
            if not self.store.is_active(conversation_id):
                logger.info("Conversation switched during initial load", extra={"conversation_id": conversation_id})
                return
        self.poller.start(conversation_id)

    def close(self) -> None:
        if self.store.active_conversation_id is None:
            return
        self.listener.detach()
        self.poller.stop()
        self.store.close()

    async def submit(self, content: Union[str, MessageContent], sender: Optional[str] = None) -> None:
        conversation_id = self.store.active_conversation_id
        if conversation_id is None:
            raise RuntimeError("no conversation is open")
        await self.sender.submit(conversation_id, content, sender=sender)

    def dismiss(self, local_id: str) -> bool:
        conversation_id = self.store.active_conversation_id
        if conversation_id is None:
            return False
        return self.sender.dismiss(conversation_id, local_id)
