"""Bounded, timestamp-ordered chat event buffer owned by one channel session."""

from __future__ import annotations

import bisect
import heapq
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, overload

from chatstream.shared.chat.events import (
    ChatEvent,
    ClearAll,
    ClearMessage,
    ClearUser,
    DeletionSignal,
    MessageEvent,
    NoticeEvent,
    SystemEvent,
)
from chatstream.shared.logging.logger import get_logger

log = get_logger("shared.chat.event_log")

DEFAULT_CAPACITY = 1000


class EventLogView(Sequence[ChatEvent]):
    """Read-only, live view over an EventLog (oldest first)."""

    def __init__(self, log_: "EventLog") -> None:
        self._log = log_

    @overload
    def __getitem__(self, index: int) -> ChatEvent: ...

    @overload
    def __getitem__(self, index: slice) -> List[ChatEvent]: ...

    def __getitem__(self, index):
        return self._log._events[index]

    def __len__(self) -> int:
        return len(self._log._events)

    def __iter__(self) -> Iterator[ChatEvent]:
        return iter(list(self._log._events))

    def __repr__(self) -> str:
        return f"EventLogView(len={len(self)})"


class EventLog:
    """
    Ordered event buffer.

    Rules:
    - Events are kept oldest-first by timestamp; equal timestamps keep
      arrival order.
    - Ids are unique. A second event with a known id is ignored.
    - At most `capacity` events are retained; the oldest go first.
    - `deleted` only ever flips false → true.

    All mutation happens on the owning session's event-loop callbacks, so
    no locking is done here.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._events: List[ChatEvent] = []
        self._ids: Dict[str, ChatEvent] = {}

    # ------------------------------------------------------------------ #
    # Read access
    # ------------------------------------------------------------------ #

    def view(self) -> EventLogView:
        return EventLogView(self)

    def get(self, event_id: str) -> Optional[ChatEvent]:
        return self._ids.get(event_id)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._ids

    def __len__(self) -> int:
        return len(self._events)

    def snapshot(self) -> List[ChatEvent]:
        return list(self._events)

    # ------------------------------------------------------------------ #
    # Append
    # ------------------------------------------------------------------ #

    def append(self, event: ChatEvent) -> bool:
        """
        Insert a live event. Returns False if it was a duplicate or was
        immediately evicted for being older than a full buffer.
        """
        if event.id in self._ids:
            log.debug(f"Duplicate event ignored (id={event.id})")
            return False

        # Fast path: arrival order matches timestamp order.
        if not self._events or self._events[-1].timestamp <= event.timestamp:
            self._events.append(event)
        else:
            keys = [e.timestamp for e in self._events]
            self._events.insert(bisect.bisect_right(keys, event.timestamp), event)

        self._ids[event.id] = event
        self._enforce_cap()
        return event.id in self._ids

    def extend(self, events: Iterable[ChatEvent]) -> int:
        return sum(1 for event in events if self.append(event))

    # ------------------------------------------------------------------ #
    # Historical merge
    # ------------------------------------------------------------------ #

    def merge_historical(self, batch: Iterable[ChatEvent]) -> int:
        """
        Merge a backfill batch into the buffer.

        The batch is stably sorted by timestamp and merged with the live
        buffer; on equal timestamps historical events come first. Ids
        already present are not inserted again, but a deletion recorded in
        the batch still marks the buffered copy. Returns the number of
        events added.
        """
        fresh: List[ChatEvent] = []
        seen = set()
        for event in batch:
            known = self._ids.get(event.id)
            if known is not None:
                if event.deleted:
                    known.mark_deleted()
                continue
            if event.id in seen:
                continue
            seen.add(event.id)
            fresh.append(event)

        if not fresh:
            return 0

        fresh.sort(key=lambda e: e.timestamp)
        merged = list(heapq.merge(fresh, self._events, key=lambda e: e.timestamp))

        self._events = merged
        for event in fresh:
            self._ids[event.id] = event

        self._enforce_cap()
        added = sum(1 for event in fresh if event.id in self._ids)
        log.debug(f"Merged {added} historical events (buffer={len(self._events)})")
        return added

    # ------------------------------------------------------------------ #
    # Deletion marking
    # ------------------------------------------------------------------ #

    def apply_deletion(self, signal: DeletionSignal) -> List[ChatEvent]:
        """Mark matching events deleted. Returns the events that changed."""
        changed: List[ChatEvent] = []

        if isinstance(signal, ClearAll):
            for event in self._events:
                if isinstance(event, SystemEvent):
                    continue
                if event.mark_deleted():
                    changed.append(event)

        elif isinstance(signal, ClearUser):
            for event in self._events:
                if not isinstance(event, (MessageEvent, NoticeEvent)):
                    continue
                message = event.embedded_message
                if message is not None and message.author.id == signal.user_id:
                    if event.mark_deleted():
                        changed.append(event)

        elif isinstance(signal, ClearMessage):
            target = self._ids.get(signal.message_id)
            if target is None:
                target = self._find_by_message_id(signal.message_id)
            if target is not None and target.mark_deleted():
                changed.append(target)

        return changed

    def _find_by_message_id(self, message_id: str) -> Optional[ChatEvent]:
        for event in reversed(self._events):
            message = event.embedded_message
            if message is not None and message.id == message_id:
                return event
        return None

    # ------------------------------------------------------------------ #

    def clear(self) -> None:
        self._events = []
        self._ids = {}

    def _enforce_cap(self) -> None:
        overflow = len(self._events) - self.capacity
        if overflow <= 0:
            return

        for event in self._events[:overflow]:
            self._ids.pop(event.id, None)
        del self._events[:overflow]
