"""
BaseKeyValueStore — 所有存储后端的抽象基类。

每个新后端只需：
1. 继承 BaseKeyValueStore
2. 实现 get / query / write / transact_write / increment
3. 在 factory.py 的 _REGISTRY 注册一行

Repository 完全不知道背后是内存还是 Redis。

三个原语（put_if_absent / update_if_matches / transact_write）要么全部成功，
要么全部失败；失败信号分别是 AlreadyExists / PreconditionFailed / TransactionCanceled。
上层永远不做"读 → 算 → 无条件写"。
"""

from abc import ABC, abstractmethod
from typing import Iterable, Optional, Sequence

from .types import Condition, Delete, Key, Operation, Put, Update, not_exists


class BaseKeyValueStore(ABC):

    # ── 必须实现 ───────────────────────────────────────────────────────────

    @abstractmethod
    def get(self, key: Key) -> Optional[dict]:
        """Strongly consistent read of one item; None when absent."""

    @abstractmethod
    def query(self, pk: str, sk_prefix: str = '') -> list[dict]:
        """All items of partition ``pk`` whose sort key starts with ``sk_prefix``, ordered by sort key."""

    @abstractmethod
    def write(self, op: Operation) -> Optional[dict]:
        """
        原子地执行单个条件写，返回写入后的 item（Delete 返回 None）。

        Raises:
            AlreadyExists:      Put 的条件不成立
            PreconditionFailed: Update / Delete 的条件不成立
            StorageUnavailable: 暂时性存储错误
        """

    @abstractmethod
    def transact_write(self, ops: Sequence[Operation]) -> None:
        """
        所有 operation 一起生效或一起不生效（最多 25 个，每个 key 最多出现一次）。

        Raises:
            TransactionCanceled: 至少一个条件不成立；reasons 标明是哪几个
            StorageUnavailable:  暂时性存储错误
        """

    @abstractmethod
    def increment(self, key: Key, attribute: str, amount: int = 1, extra: Optional[dict] = None) -> int:
        """原子加法，返回加完之后的值；item 不存在时从 0 开始。"""

    # ── 派生原语 ───────────────────────────────────────────────────────────

    def put_if_absent(self, item: dict, condition: Optional[Condition] = None) -> dict:
        cond = not_exists() if condition is None else not_exists() & condition
        return self.write(Put(item=item, condition=cond))

    def update_if_matches(
        self,
        key: Key,
        set: Optional[dict] = None,
        remove: Iterable[str] = (),
        condition: Optional[Condition] = None,
        set_if_missing: Optional[dict] = None,
    ) -> dict:
        return self.write(Update(
            key=key,
            set=dict(set or {}),
            remove=tuple(remove),
            set_if_missing=dict(set_if_missing or {}),
            condition=condition,
        ))

    def delete(self, key: Key, condition: Optional[Condition] = None) -> None:
        self.write(Delete(key=key, condition=condition))
