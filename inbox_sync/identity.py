"""
Identity index for the messages of one transcript.

Every entry lives in a numbered slot. Slots are handed out in arrival order,
so they double as the stable tie-breaker when sorting. Lookups by local id
(temporary client ids and any server ids seen for the entry) and by channel
message id are O(1). Pending outbound entries without a channel id are also
pooled by (direction, content) for heuristic confirmation matching.
"""

from bisect import insort
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from inbox_sync.schemas import Direction, Message, MessageContent, MessageStatus

ContentKey = Tuple[Direction, MessageContent]


def _content_key(message: Message) -> ContentKey:
    return (message.direction, message.content)


class MessageIndex:
    """
    Slot-based index over transcript entries.

    The index is mutable; the merge function works on a copy so that the
    transcript it was given is never modified.
    """

    def __init__(self) -> None:
        self._entries: Dict[int, Message] = {}
        self._by_id: Dict[str, int] = {}
        self._by_channel_id: Dict[str, int] = {}
        self._pending: Dict[ContentKey, List[int]] = {}
        self._unlisted: Set[int] = set()
        self._next_slot = 0

    def copy(self) -> "MessageIndex":
        clone = MessageIndex()
        clone._entries = dict(self._entries)
        clone._by_id = dict(self._by_id)
        clone._by_channel_id = dict(self._by_channel_id)
        clone._pending = {key: list(slots) for key, slots in self._pending.items()}
        clone._unlisted = set(self._unlisted)
        clone._next_slot = self._next_slot
        return clone

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Tuple[int, Message]]:
        return iter(self._entries.items())

    def get(self, slot: int) -> Message:
        return self._entries[slot]

    # =========================================================================
    # Lookup
    # =========================================================================

    def find_by_channel_id(self, channel_message_id: Optional[str]) -> Optional[int]:
        if not channel_message_id:
            return None
        return self._by_channel_id.get(channel_message_id)

    def find_by_id(self, local_id: Optional[str]) -> Optional[int]:
        if not local_id:
            return None
        return self._by_id.get(local_id)

    def find_pending(self, direction: Optional[Direction], content: Optional[MessageContent]) -> Optional[int]:
        """Oldest outstanding pending outbound entry with exactly this content."""
        if direction != Direction.OUTBOUND or content is None:
            return None
        slots = self._pending.get((direction, content))
        return slots[0] if slots else None

    def pending_slots(self) -> List[int]:
        return sorted(slot for slots in self._pending.values() for slot in slots)

    # =========================================================================
    # Mutation
    # =========================================================================

    def add(self, message: Message, aliases: Iterable[str] = ()) -> int:
        slot = self._next_slot
        self._next_slot += 1
        self._entries[slot] = message
        self._register(slot, message, aliases)
        return slot

    def replace(self, slot: int, message: Message, aliases: Iterable[str] = ()) -> None:
        previous = self._entries[slot]
        self._drop_from_pool(slot, previous)
        self._entries[slot] = message
        self._register(slot, message, aliases)

    def unlist(self, slot: int) -> None:
        """Take an entry out of the heuristic matching pool for good."""
        self._drop_from_pool(slot, self._entries[slot])
        self._unlisted.add(slot)

    def remove(self, slot: int) -> Message:
        message = self._entries.pop(slot)
        self._drop_from_pool(slot, message)
        self._unlisted.discard(slot)
        for key in [key for key, value in self._by_id.items() if value == slot]:
            del self._by_id[key]
        if message.channel_message_id:
            self._by_channel_id.pop(message.channel_message_id, None)
        return message

    def _register(self, slot: int, message: Message, aliases: Iterable[str]) -> None:
        self._by_id[message.id] = slot
        for alias in aliases:
            if alias:
                self._by_id.setdefault(alias, slot)
        if message.channel_message_id:
            self._by_channel_id[message.channel_message_id] = slot
        if self._is_outstanding(slot, message):
            insort(self._pending.setdefault(_content_key(message), []), slot)

    def _drop_from_pool(self, slot: int, message: Message) -> None:
        key = _content_key(message)
        slots = self._pending.get(key)
        if slots and slot in slots:
            slots.remove(slot)
            if not slots:
                del self._pending[key]

    def _is_outstanding(self, slot: int, message: Message) -> bool:
        return (
            slot not in self._unlisted
            and message.status == MessageStatus.PENDING
            and message.direction == Direction.OUTBOUND
            and not message.channel_message_id
        )
