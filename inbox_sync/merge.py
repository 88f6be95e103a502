"""
Merge function shared by every producer that writes to a transcript.

merge(transcript, record, source) -> transcript

Identity resolution, in order:
    a. channel message id
    b. local id (temporary client id, or any id already seen for the entry)
    c. oldest outstanding pending outbound entry with identical content
    d. no match: the record becomes a new entry

A matched entry receives only the fields the record carries and that differ
(field-level last-writer-wins). Status never regresses; `failed` is only set
by the local send path and only from `pending`. Applying the same record
twice leaves the transcript untouched, and an unchanged transcript is
returned as the very same object.

All functions here are pure: the transcript passed in is never modified.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from inbox_sync.identity import MessageIndex
from inbox_sync.schemas import Message, MessageRecord, MessageStatus

logger = logging.getLogger(__name__)


class Source(str, Enum):
    LOCAL = "local"
    PUSH = "push"
    POLL = "poll"


STATUS_RANK = {
    MessageStatus.PENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}


def resolve_status(current: MessageStatus, incoming: Optional[MessageStatus], source: Source) -> MessageStatus:
    """
    Status after applying `incoming` to an entry currently in `current`.

    Ranks only move forward; `failed` is absorbing and can only be entered
    from `pending` by the local send path.
    """
    if incoming is None or incoming == current or current == MessageStatus.FAILED:
        return current
    if incoming == MessageStatus.FAILED:
        if source == Source.LOCAL and current == MessageStatus.PENDING:
            return MessageStatus.FAILED
        return current
    if STATUS_RANK[incoming] > STATUS_RANK[current]:
        return incoming
    return current


@dataclass
class MergeStats:
    inserted: int = 0
    updated: int = 0
    noop: int = 0
    dropped: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.inserted or self.updated)


def _sort_key(slot: int, message: Message) -> Tuple[int, float, int]:
    # Entries without createdAt follow timestamped ones, in arrival order
    if message.created_at is None:
        return (1, 0.0, slot)
    return (0, message.created_at.timestamp(), slot)


@dataclass(frozen=True)
class Transcript:
    """Immutable view of one conversation's messages plus their identity index."""

    conversation_id: str
    index: MessageIndex = field(default_factory=MessageIndex, compare=False, repr=False)
    messages: Tuple[Message, ...] = ()

    def __len__(self) -> int:
        return len(self.messages)

    def find(self, message_id: str) -> Optional[Message]:
        """Look an entry up by channel message id or any local id."""
        slot = self.index.find_by_channel_id(message_id)
        if slot is None:
            slot = self.index.find_by_id(message_id)
        return self.index.get(slot) if slot is not None else None

    def outstanding(self) -> List[Message]:
        """Pending outbound entries still awaiting confirmation."""
        return [self.index.get(slot) for slot in self.index.pending_slots()]


def _sorted(conversation_id: str, index: MessageIndex) -> Transcript:
    ordered = sorted(index, key=lambda item: _sort_key(*item))
    return Transcript(conversation_id, index, tuple(message for _, message in ordered))


def _resolve_target(index: MessageIndex, record: MessageRecord) -> Optional[int]:
    slot = index.find_by_channel_id(record.channel_message_id)
    if slot is None:
        slot = index.find_by_id(record.id)
    if slot is None:
        slot = index.find_pending(record.direction, record.content)
    return slot


def _updated(message: Message, record: MessageRecord, source: Source) -> Tuple[dict, List[str]]:
    updates = {}
    aliases = []
    for name, value in record.present_fields().items():
        if name == "id":
            if value != message.id:
                aliases.append(value)
        elif name == "conversation_id":
            continue
        elif name == "status":
            status = resolve_status(message.status, value, source)
            if status != message.status:
                updates["status"] = status
        elif name == "channel_message_id":
            if message.channel_message_id is None:
                updates["channel_message_id"] = value
            elif value != message.channel_message_id:
                logger.warning(
                    "Ignoring channel id change",
                    extra={"message_id": message.id, "channel_message_id": value},
                )
        elif getattr(message, name) != value:
            updates[name] = value

    # A confirmed entry is known by its channel id from then on
    channel_message_id = updates.get("channel_message_id")
    if channel_message_id and channel_message_id != message.id:
        aliases.append(message.id)
        updates["id"] = channel_message_id
    return updates, aliases


def _new_entry(record: MessageRecord) -> Optional[Message]:
    if record.conversation_id is None or record.direction is None or record.content is None:
        return None
    status = record.status
    if status is None or status == MessageStatus.FAILED:
        status = MessageStatus.SENT if record.channel_message_id else MessageStatus.PENDING
    return Message(
        id=record.channel_message_id or record.id,
        channel_message_id=record.channel_message_id,
        conversation_id=record.conversation_id,
        direction=record.direction,
        content=record.content,
        status=status,
        created_at=record.created_at,
        sender=record.sender,
    )


def apply_records(
    transcript: Transcript,
    records: Iterable[MessageRecord],
    source: Source,
) -> Tuple[Transcript, MergeStats]:
    """
    Merge a batch of records and resort once.

    Returns the new transcript and what happened to each record.
    """
    stats = MergeStats()
    index: Optional[MessageIndex] = None

    for record in records:
        if record.conversation_id and record.conversation_id != transcript.conversation_id:
            stats.dropped += 1
            continue
        if index is None:
            index = transcript.index.copy()

        slot = _resolve_target(index, record)
        if slot is None:
            message = _new_entry(record)
            if message is None:
                logger.debug(
                    "Dropping incomplete record with no matching entry",
                    extra={"conversation_id": transcript.conversation_id, "record_id": record.id},
                )
                stats.dropped += 1
                continue
            aliases = [record.id] if record.id and record.id != message.id else []
            index.add(message, aliases)
            stats.inserted += 1
            continue

        current = index.get(slot)
        updates, aliases = _updated(current, record, source)
        new_aliases = [alias for alias in aliases if index.find_by_id(alias) is None]
        if not updates and not new_aliases:
            stats.noop += 1
            continue
        message = current.model_copy(update=updates) if updates else current
        index.replace(slot, message, new_aliases)
        if message.status == MessageStatus.FAILED:
            index.unlist(slot)
        stats.updated += 1

    if index is None or not stats.changed:
        return transcript, stats
    return _sorted(transcript.conversation_id, index), stats


def merge_batch(transcript: Transcript, records: Iterable[MessageRecord], source: Source) -> Transcript:
    return apply_records(transcript, records, source)[0]


def merge(transcript: Transcript, record: MessageRecord, source: Source = Source.PUSH) -> Transcript:
    return apply_records(transcript, [record], source)[0]


def append(transcript: Transcript, message: Message) -> Transcript:
    """
    Add a freshly created local entry.

    Identity resolution is skipped on purpose: nothing can match a brand new
    temporary id, and content matching would swallow a repeated send.
    """
    if message.conversation_id != transcript.conversation_id:
        raise ValueError(f"message belongs to {message.conversation_id}, not {transcript.conversation_id}")
    if transcript.index.find_by_id(message.id) is not None:
        raise ValueError(f"duplicate local id: {message.id}")
    index = transcript.index.copy()
    index.add(message)
    return _sorted(transcript.conversation_id, index)


def mark_failed(transcript: Transcript, local_id: str) -> Transcript:
    """Fail a pending local entry and take it out of heuristic matching."""
    slot = transcript.index.find_by_id(local_id)
    if slot is None:
        return transcript
    failed = merge(transcript, MessageRecord(id=local_id, status=MessageStatus.FAILED), Source.LOCAL)
    if failed is transcript:
        logger.info(
            "Send failure ignored, entry is no longer pending",
            extra={"conversation_id": transcript.conversation_id, "message_id": local_id},
        )
    return failed


def discard_failed(transcript: Transcript, local_id: str) -> Transcript:
    """Remove a failed local entry; any other entry is left alone."""
    slot = transcript.index.find_by_id(local_id)
    if slot is None or transcript.index.get(slot).status != MessageStatus.FAILED:
        return transcript
    index = transcript.index.copy()
    index.remove(slot)
    return _sorted(transcript.conversation_id, index)

