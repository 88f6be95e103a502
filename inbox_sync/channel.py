"""
Delivery channel seam.

Real transports (WhatsApp Cloud API, 360Dialog) plug in behind
DeliveryChannel; SandboxChannel accepts everything and hands out
provider-style ids, which is what the service runs with by default.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from typing import List, Tuple

from inbox_sync.schemas import ChannelAck, MessageContent, MessageStatus

logger = logging.getLogger(__name__)


class ChannelError(Exception):
    """Raised by a channel that rejected a message."""


class DeliveryChannel(ABC):
    """Hands outbound messages to the provider."""

    name = "base"

    @abstractmethod
    async def deliver(self, phone: str, content: MessageContent) -> ChannelAck:
        """Send `content` to `phone`; raises ChannelError when the provider refuses it."""


class SandboxChannel(DeliveryChannel):
    """Accepts every message and records it in `outbox`."""

    name = "sandbox"

    def __init__(self) -> None:
        self.outbox: List[Tuple[str, str, MessageContent]] = []
        self._reject_reason = None

    def reject_next(self, reason: str = "rejected by channel") -> None:
        self._reject_reason = reason

    async def deliver(self, phone: str, content: MessageContent) -> ChannelAck:
        if self._reject_reason is not None:
            reason, self._reject_reason = self._reject_reason, None
            logger.warning(f"Sandbox channel rejected message to {phone}: {reason}")
            raise ChannelError(reason)

        channel_message_id = f"wamid.{uuid.uuid4().hex}"
        self.outbox.append((channel_message_id, phone, content))
        logger.info(f"Sandbox channel accepted message to {phone}: {channel_message_id}")
        return ChannelAck(channel_message_id=channel_message_id, status=MessageStatus.SENT)
