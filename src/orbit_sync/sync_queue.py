"""Ordered outbound queue with one pending item per entity."""

import logging
from typing import Iterable, Iterator, List, Optional, Set, Tuple

from .models import EntityType, QueueItemView, SyncQueueItem


logger = logging.getLogger(__name__)


class SyncQueue:
    """FIFO of pending outbound changes.

    At most one item exists per ``(type, entity_id)``; putting a newer item
    for the same entity replaces the older one and moves it to the back.
    """

    def __init__(self):
        self._items: List[SyncQueueItem] = []

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[SyncQueueItem]:
        return iter(list(self._items))

    def put(self, item: SyncQueueItem) -> Optional[SyncQueueItem]:
        """Append ``item``, returning the pending item it superseded if any."""
        replaced = self.remove(item.key)
        self._items.append(item)
        if replaced:
            logger.debug(f"Replaced pending {replaced.action.value} for {item.type.value} {item.entity_id}")
        return replaced

    def remove(self, key: Tuple[EntityType, str]) -> Optional[SyncQueueItem]:
        for index, existing in enumerate(self._items):
            if existing.key == key:
                return self._items.pop(index)
        return None

    def snapshot(self) -> List[SyncQueueItem]:
        """Copy of the current order, for a drain pass to walk."""
        return list(self._items)

    def rebuild(self, retained: Iterable[SyncQueueItem], snapshot: List[SyncQueueItem]):
        """Replace the contents after a drain pass.

        Items put while the pass ran are kept after the retained failures. A
        retained failure whose entity was enqueued again during the pass is
        superseded and dropped.
        """
        seen_ids: Set[str] = {item.id for item in snapshot}
        fresh = [item for item in self._items if item.id not in seen_ids]
        fresh_keys = {item.key for item in fresh}

        self._items = [item for item in retained if item.key not in fresh_keys] + fresh

    def clear(self) -> int:
        count = len(self._items)
        self._items = []
        return count

    def views(self) -> List[QueueItemView]:
        return [item.view() for item in self._items]
