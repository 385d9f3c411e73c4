from __future__ import annotations

import logging
from typing import Dict, Iterator, List

logger = logging.getLogger(__name__)


class ParticipantRegistry:
    """Ordered set of visible remote participants, keyed by uid.

    Insertion order is the tile order: the first participant to join takes
    the first slot. Duplicate joins and unknown leaves are benign no-ops,
    since signaling can repeat or reorder notifications.
    """

    def __init__(self) -> None:
        # dicts keep insertion order and give O(1) membership
        self._uids: Dict[int, None] = {}

    def add(self, uid: int) -> bool:
        if uid in self._uids:
            logger.debug("Participant %s already registered", uid)
            return False
        self._uids[uid] = None
        return True

    def remove(self, uid: int) -> bool:
        if uid not in self._uids:
            logger.debug("Participant %s not registered; nothing to remove", uid)
            return False
        del self._uids[uid]
        return True

    def clear(self) -> None:
        self._uids.clear()

    def count(self) -> int:
        return len(self._uids)

    def ordered_ids(self) -> List[int]:
        """Snapshot of uids in join order. Later mutations do not show up in it."""
        return list(self._uids)

    def __len__(self) -> int:
        return len(self._uids)

    def __contains__(self, uid: object) -> bool:
        return uid in self._uids

    def __iter__(self) -> Iterator[int]:
        return iter(self.ordered_ids())

    def __repr__(self) -> str:
        return f"ParticipantRegistry({self.ordered_ids()!r})"
