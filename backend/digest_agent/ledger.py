"""Bounded FIFO record of links that have already been pushed."""
from collections import Counter, deque
from typing import Iterable, List

LEDGER_CAPACITY = 5000


class DedupLedger:
    def __init__(self, links: Iterable[str] = (), capacity: int = LEDGER_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._order: deque = deque()
        # Counter, not set: the persisted list may hold duplicates from older runs
        self._members: Counter = Counter()
        for link in links:
            self.mark_seen(link)

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, link: str) -> bool:
        return self._members[link] > 0

    def is_new(self, link: str) -> bool:
        return link not in self

    def mark_seen(self, link: str) -> None:
        self._order.append(link)
        self._members[link] += 1
        while len(self._order) > self.capacity:
            evicted = self._order.popleft()
            self._members[evicted] -= 1
            if self._members[evicted] <= 0:
                del self._members[evicted]

    def to_list(self) -> List[str]:
        return list(self._order)
