"""
In-process backend.

One re-entrant lock serialises every write, which gives the same per-item and
per-transaction atomicity the Redis backend gets from WATCH/MULTI. Items are
deep-copied on the way in and out so callers never share mutable state with
the store.
"""

import copy
import threading
from typing import Optional, Sequence

from ..exceptions import TransactionCanceled
from .base import BaseKeyValueStore
from .types import (
    Key,
    Operation,
    apply_op,
    condition_failure_for,
    condition_holds,
    validate_transaction,
)


class MemoryStore(BaseKeyValueStore):

    def __init__(self) -> None:
        self._items: dict[Key, dict] = {}
        self._lock = threading.RLock()

    def get(self, key: Key) -> Optional[dict]:
        with self._lock:
            item = self._items.get(key)
            return copy.deepcopy(item) if item is not None else None

    def query(self, pk: str, sk_prefix: str = '') -> list[dict]:
        with self._lock:
            matches = [
                copy.deepcopy(item)
                for key, item in self._items.items()
                if key.pk == pk and key.sk.startswith(sk_prefix)
            ]
        return sorted(matches, key=lambda item: item['sk'])

    def write(self, op: Operation) -> Optional[dict]:
        with self._lock:
            current = self._items.get(op.key)
            if not condition_holds(op, current):
                raise condition_failure_for(op)
            nxt = apply_op(op, current)
            self._store(op.key, nxt)
            return copy.deepcopy(nxt) if nxt is not None else None

    def transact_write(self, ops: Sequence[Operation]) -> None:
        validate_transaction(ops)
        with self._lock:
            current = [self._items.get(op.key) for op in ops]
            reasons = [
                None if condition_holds(op, item) else 'ConditionalCheckFailed'
                for op, item in zip(ops, current)
            ]
            if any(reasons):
                raise TransactionCanceled(reasons)
            for op, item in zip(ops, current):
                self._store(op.key, apply_op(op, item))

    def increment(self, key: Key, attribute: str, amount: int = 1, extra: Optional[dict] = None) -> int:
        with self._lock:
            item = self._items.get(key) or key.as_attrs()
            value = int(item.get(attribute) or 0) + amount
            item[attribute] = value
            item.update(copy.deepcopy(extra or {}))
            self._items[key] = item
            return value

    def _store(self, key: Key, item: Optional[dict]) -> None:
        if item is None:
            self._items.pop(key, None)
        else:
            self._items[key] = item
