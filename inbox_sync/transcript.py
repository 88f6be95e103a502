"""
Conversation store: the single owner of the active conversation's transcript.

All writes go through the merge functions, and every write names the
conversation it was issued for. Writes for a conversation that is no longer
active are discarded here, so producers do not have to re-check after each
suspension point.
"""

import logging
from typing import Callable, Iterable, List, Optional, Tuple

from inbox_sync import merge as merging
from inbox_sync.merge import MergeStats, Source, Transcript
from inbox_sync.metrics import record_merge, record_stale_callback
from inbox_sync.schemas import Message, MessageRecord

logger = logging.getLogger(__name__)

Listener = Callable[[Transcript], None]

_PRODUCERS = {
    Source.LOCAL: "send",
    Source.PUSH: "push",
    Source.POLL: "poll",
}


class ConversationStore:
    """Holds the ordered transcript of the currently open conversation."""

    def __init__(self) -> None:
        self._transcript: Optional[Transcript] = None
        self._listeners: List[Listener] = []

    @property
    def active_conversation_id(self) -> Optional[str]:
        return self._transcript.conversation_id if self._transcript is not None else None

    @property
    def transcript(self) -> Optional[Transcript]:
        return self._transcript

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self._transcript.messages if self._transcript is not None else ()

    def is_active(self, conversation_id: Optional[str]) -> bool:
        return conversation_id is not None and conversation_id == self.active_conversation_id

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register a callback fired after every change; returns its remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def open(self, conversation_id: str) -> None:
        logger.info("Opening transcript", extra={"conversation_id": conversation_id})
        self._commit(Transcript(conversation_id))

    def close(self) -> None:
        if self._transcript is not None:
            logger.info("Closing transcript", extra={"conversation_id": self._transcript.conversation_id})
        self._transcript = None

    # =========================================================================
    # Writes
    # =========================================================================

    def append(self, message: Message) -> bool:
        """Add a new local entry (the optimistic send path's pending message)."""
        if not self._guard(message.conversation_id, Source.LOCAL):
            return False
        changed = self._commit(merging.append(self._transcript, message))
        record_merge(Source.LOCAL.value, "inserted")
        return changed

    def apply_record(self, conversation_id: str, record: MessageRecord, source: Source) -> bool:
        return self.apply_records(conversation_id, [record], source)

    def apply_records(self, conversation_id: str, records: Iterable[MessageRecord], source: Source) -> bool:
        if not self._guard(conversation_id, source):
            return False
        transcript, stats = merging.apply_records(self._transcript, records, source)
        self._record(source, stats)
        return self._commit(transcript)

    def reconcile_snapshot(self, conversation_id: str, records: Iterable[MessageRecord]) -> bool:
        """
        Merge an authoritative snapshot.

        Entries missing from the snapshot are kept: snapshots can be partial.
        """
        return self.apply_records(conversation_id, records, Source.POLL)

    def mark_failed(self, conversation_id: str, local_id: str) -> bool:
        if not self._guard(conversation_id, Source.LOCAL):
            return False
        return self._commit(merging.mark_failed(self._transcript, local_id))

    def discard_failed(self, conversation_id: str, local_id: str) -> bool:
        if not self._guard(conversation_id, Source.LOCAL):
            return False
        return self._commit(merging.discard_failed(self._transcript, local_id))

    # =========================================================================
    # Internals
    # =========================================================================

    def _guard(self, conversation_id: Optional[str], source: Source) -> bool:
        if self.is_active(conversation_id):
            return True
        logger.info(
            "Discarding stale callback",
            extra={
                "conversation_id": conversation_id,
                "active_conversation_id": self.active_conversation_id,
                "producer": _PRODUCERS[source],
            },
        )
        record_stale_callback(_PRODUCERS[source])
        return False

    def _record(self, source: Source, stats: MergeStats) -> None:
        record_merge(source.value, "inserted", stats.inserted)
        record_merge(source.value, "updated", stats.updated)
        record_merge(source.value, "noop", stats.noop)
        record_merge(source.value, "dropped", stats.dropped)

    def _commit(self, transcript: Transcript) -> bool:
        if transcript is self._transcript:
            return False
        self._transcript = transcript
        for listener in list(self._listeners):
            try:
                listener(transcript)
            except Exception:
                logger.exception("Transcript listener failed", extra={"conversation_id": transcript.conversation_id})
        return True
