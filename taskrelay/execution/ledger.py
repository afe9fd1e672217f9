"""
Transaction Ledger — bounded dedup window for execution requests.

At-most-once processing per transaction id while the id is retained.
Ids older than the last `capacity` insertions are evicted and may be
accepted again.
"""

from collections import OrderedDict


class TransactionLedger:

    def __init__(self, capacity: int = 50):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    def record(self, transaction_id: str) -> bool:
        """Record an id. Returns False if it is already retained."""
        if transaction_id in self._seen:
            return False
        self._seen[transaction_id] = None
        while len(self._seen) > self.capacity:
            self._seen.popitem(last=False)
        return True

    def __contains__(self, transaction_id: object) -> bool:
        return transaction_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)
