"""
存储层的标准结构：Key / Condition / Operation。

所有 store 实现（memory / redis）都只认识这些对象；
条件判断和 item 变更的语义在这里实现一次，两个后端共用。
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from ..exceptions import AlreadyExists, PreconditionFailed

MAX_TRANSACT_ITEMS = 25


@dataclass(frozen=True)
class Key:
    pk: str
    sk: str

    def as_attrs(self) -> dict:
        return {'pk': self.pk, 'sk': self.sk}


def key_of(item: dict) -> Key:
    return Key(item['pk'], item['sk'])


# ── Conditions ─────────────────────────────────────────────────────────────

class Condition:
    """Predicate over the current item (None when the item is absent)."""

    def holds(self, item: Optional[dict]) -> bool:
        raise NotImplementedError

    def __and__(self, other: 'Condition') -> 'Condition':
        return AllOf((self, other))

    def __or__(self, other: 'Condition') -> 'Condition':
        return AnyOf((self, other))


@dataclass(frozen=True)
class ItemExists(Condition):
    def holds(self, item):
        return item is not None


@dataclass(frozen=True)
class ItemMissing(Condition):
    def holds(self, item):
        return item is None


@dataclass(frozen=True)
class AttrEquals(Condition):
    name: str
    value: Any

    def holds(self, item):
        return item is not None and self.name in item and item[self.name] == self.value


@dataclass(frozen=True)
class AttrIn(Condition):
    name: str
    values: tuple

    def holds(self, item):
        return item is not None and item.get(self.name) in self.values


@dataclass(frozen=True)
class AttrMissing(Condition):
    name: str

    def holds(self, item):
        return item is None or item.get(self.name) is None


@dataclass(frozen=True)
class AttrAtMost(Condition):
    name: str
    value: Any

    def holds(self, item):
        if item is None or item.get(self.name) is None:
            return False
        return item[self.name] <= self.value


@dataclass(frozen=True)
class AllOf(Condition):
    parts: tuple

    def holds(self, item):
        return all(part.holds(item) for part in self.parts)


@dataclass(frozen=True)
class AnyOf(Condition):
    parts: tuple

    def holds(self, item):
        return any(part.holds(item) for part in self.parts)


def exists() -> Condition:
    return ItemExists()


def not_exists() -> Condition:
    return ItemMissing()


def attr_eq(name: str, value: Any) -> Condition:
    return ItemExists() & AttrEquals(name, value)


def attr_in(name: str, *values: Any) -> Condition:
    return ItemExists() & AttrIn(name, tuple(values))


def attr_missing(name: str) -> Condition:
    return AttrMissing(name)


def attr_le(name: str, value: Any) -> Condition:
    return AttrAtMost(name, value)


# ── Operations ─────────────────────────────────────────────────────────────

@dataclass
class Put:
    item: dict
    condition: Optional[Condition] = None

    @property
    def key(self) -> Key:
        return key_of(self.item)


@dataclass
class Update:
    """
    SET / REMOVE 语义同 DynamoDB UpdateItem：
    item 不存在且条件允许时会被创建（只包含 key + set 的属性）。
    """

    key: Key
    set: dict = field(default_factory=dict)
    remove: tuple = ()
    set_if_missing: dict = field(default_factory=dict)
    condition: Optional[Condition] = None


@dataclass
class Delete:
    key: Key
    condition: Optional[Condition] = None


@dataclass
class ConditionCheck:
    key: Key
    condition: Condition


Operation = Union[Put, Update, Delete, ConditionCheck]


def condition_holds(op: Operation, current: Optional[dict]) -> bool:
    return op.condition is None or op.condition.holds(current)


def apply_op(op: Operation, current: Optional[dict]) -> Optional[dict]:
    """Return the item as it looks after ``op``; None means the key is absent."""
    if isinstance(op, Put):
        return copy.deepcopy(op.item)
    if isinstance(op, Delete):
        return None
    if isinstance(op, ConditionCheck):
        return current
    nxt = copy.deepcopy(current) if current is not None else op.key.as_attrs()
    for name, value in op.set_if_missing.items():
        if nxt.get(name) is None:
            nxt[name] = copy.deepcopy(value)
    for name, value in op.set.items():
        nxt[name] = copy.deepcopy(value)
    for name in op.remove:
        nxt.pop(name, None)
    return nxt


def condition_failure_for(op: Operation) -> Exception:
    if isinstance(op, Put):
        return AlreadyExists(
            f'Conditional put rejected for {op.key.pk}/{op.key.sk}',
            detail={'pk': op.key.pk, 'sk': op.key.sk},
        )
    return PreconditionFailed(
        f'Conditional {type(op).__name__.lower()} rejected for {op.key.pk}/{op.key.sk}',
        detail={'pk': op.key.pk, 'sk': op.key.sk},
    )


def validate_transaction(ops) -> None:
    if not ops:
        raise ValueError('Transaction needs at least one operation')
    if len(ops) > MAX_TRANSACT_ITEMS:
        raise ValueError(f'Transaction has {len(ops)} operations; the limit is {MAX_TRANSACT_ITEMS}')
    seen = set()
    for op in ops:
        if op.key in seen:
            raise ValueError(f'Transaction touches {op.key.pk}/{op.key.sk} more than once')
        seen.add(op.key)
