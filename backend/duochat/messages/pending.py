"""Holding area for status updates that reference ids we do not know yet.

A status update can overtake the event that introduces its message (for
example a delivered notification racing the save confirmation). Such updates
are parked here, keyed by the id they reference, and handed back once a
message with that id appears. Retention is bounded twice: by the number of
distinct ids (least recently touched ids evicted first) and by a per-id
expiry timer.
"""
import logging
from collections import OrderedDict
from typing import List

from duochat.connection.events import MessageStatusChanged
from duochat.scheduling import TaskScheduler

logger = logging.getLogger(__name__)

# Updates kept per unknown id; older ones are dropped first.
MAX_UPDATES_PER_ID = 16


class PendingUpdateBuffer:
    """Bounded, expiring buffer of status updates keyed by message id."""

    def __init__(self, scheduler: TaskScheduler, ttl: float, max_ids: int) -> None:
        self._scheduler = scheduler
        self._ttl = ttl
        self._max_ids = max_ids
        self._entries: "OrderedDict[str, List[MessageStatusChanged]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._entries

    def hold(self, message_id: str, update: MessageStatusChanged) -> None:
        """Park *update* until a message with *message_id* shows up."""
        updates = self._entries.get(message_id)
        if updates is not None:
            self._entries.move_to_end(message_id)
            updates.append(update)
            del updates[:-MAX_UPDATES_PER_ID]
            return

        self._entries[message_id] = [update]
        # The retention window starts with the first update for an id
        self._scheduler.call_later(("pending", message_id), self._ttl, self._expire, message_id)
        logger.debug("Holding %s update for unknown message %s", update.event, message_id)

        while len(self._entries) > self._max_ids:
            evicted, dropped = self._entries.popitem(last=False)
            self._scheduler.cancel(("pending", evicted))
            logger.debug("Evicted %d pending update(s) for %s", len(dropped), evicted)

    def take(self, *message_ids: str) -> List[MessageStatusChanged]:
        """Remove and return every update held for any of *message_ids*."""
        taken: List[MessageStatusChanged] = []
        for message_id in message_ids:
            if not message_id:
                continue
            updates = self._entries.pop(message_id, None)
            if updates:
                self._scheduler.cancel(("pending", message_id))
                taken.extend(updates)
        return taken

    def clear(self) -> None:
        for message_id in list(self._entries):
            self._scheduler.cancel(("pending", message_id))
        self._entries.clear()

    def _expire(self, message_id: str) -> None:
        dropped = self._entries.pop(message_id, None)
        if dropped:
            logger.debug("Discarded %d unresolved update(s) for %s", len(dropped), message_id)
