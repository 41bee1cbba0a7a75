"""
Redis backend.

布局：
  {namespace}:item:{pk}|{sk}      hash，每个属性 JSON 编码后存一个 field
  {namespace}:partition:{pk}      sorted set（score 全为 0），成员是 sk，按字典序做前缀查询

条件写 / 事务：WATCH 所有涉及的 item → 读当前值 → 判断条件 → MULTI/EXEC。
EXEC 期间有人改过被 WATCH 的 key 会触发 WatchError，重新读、重新判断；
重试次数有上限（CLINIC_REDIS_WATCH_RETRIES）。超出后不带 WATCH 再判一次条件：
条件已不成立 → 按普通冲突返回；仍然成立 → StorageUnavailable。

计数器用 HINCRBY，单条命令就是原子加，不需要 WATCH。
"""

import json
import logging
from typing import Optional, Sequence

import redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from ..exceptions import StorageUnavailable, TransactionCanceled
from .base import BaseKeyValueStore
from .types import (
    ConditionCheck,
    Key,
    Operation,
    apply_op,
    condition_failure_for,
    condition_holds,
    validate_transaction,
)

logger = logging.getLogger(__name__)

_LEX_MAX = '\U0010ffff'


def encode_item(item: dict) -> dict:
    return {name: json.dumps(value) for name, value in item.items()}


def decode_item(raw: dict) -> Optional[dict]:
    if not raw:
        return None
    return {name: json.loads(value) for name, value in raw.items()}


class RedisStore(BaseKeyValueStore):

    def __init__(self, client=None, url=None, namespace='dental-clinic', watch_retries=5):
        if client is None:
            client = redis.from_url(url or 'redis://localhost:6379/0', decode_responses=True)
        self._client = client
        self._namespace = namespace
        self._watch_retries = watch_retries

    # ── naming ────────────────────────────────────────────────────────────

    def item_name(self, key: Key) -> str:
        return f'{self._namespace}:item:{key.pk}|{key.sk}'

    def partition_name(self, pk: str) -> str:
        return f'{self._namespace}:partition:{pk}'

    # ── reads ─────────────────────────────────────────────────────────────

    def get(self, key: Key) -> Optional[dict]:
        try:
            return decode_item(self._client.hgetall(self.item_name(key)))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StorageUnavailable(f'Redis read failed: {exc}') from exc

    def query(self, pk: str, sk_prefix: str = '') -> list[dict]:
        index = self.partition_name(pk)
        lo, hi = (f'[{sk_prefix}', f'[{sk_prefix}{_LEX_MAX}') if sk_prefix else ('-', '+')
        try:
            members = self._client.zrangebylex(index, lo, hi)
            if not members:
                return []
            with self._client.pipeline(transaction=False) as pipe:
                for sk in members:
                    pipe.hgetall(self.item_name(Key(pk, sk)))
                raws = pipe.execute()
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StorageUnavailable(f'Redis query failed: {exc}') from exc
        # a member whose hash vanished between the two round trips is skipped
        return [item for item in (decode_item(raw) for raw in raws) if item is not None]

    # ── writes ────────────────────────────────────────────────────────────

    def write(self, op: Operation) -> Optional[dict]:
        try:
            (result,) = self._run_transaction([op])
        except TransactionCanceled:
            raise condition_failure_for(op) from None
        return result

    def transact_write(self, ops: Sequence[Operation]) -> None:
        validate_transaction(ops)
        self._run_transaction(list(ops))

    def increment(self, key: Key, attribute: str, amount: int = 1, extra: Optional[dict] = None) -> int:
        name = self.item_name(key)
        try:
            with self._client.pipeline(transaction=True) as pipe:
                pipe.hincrby(name, attribute, amount)
                pipe.hsetnx(name, 'pk', json.dumps(key.pk))
                pipe.hsetnx(name, 'sk', json.dumps(key.sk))
                if extra:
                    pipe.hset(name, mapping=encode_item(extra))
                pipe.zadd(self.partition_name(key.pk), {key.sk: 0})
                results = pipe.execute()
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StorageUnavailable(f'Redis increment failed: {exc}') from exc
        return int(results[0])

    def _run_transaction(self, ops: list) -> list:
        names = [self.item_name(op.key) for op in ops]

        for attempt in range(1, self._watch_retries + 1):
            try:
                with self._client.pipeline() as pipe:
                    pipe.watch(*names)
                    current = [decode_item(pipe.hgetall(name)) for name in names]
                    reasons = [
                        None if condition_holds(op, item) else 'ConditionalCheckFailed'
                        for op, item in zip(ops, current)
                    ]
                    if any(reasons):
                        raise TransactionCanceled(reasons)

                    results = [apply_op(op, item) for op, item in zip(ops, current)]
                    pipe.multi()
                    for op, name, nxt in zip(ops, names, results):
                        self._stage(pipe, op, name, nxt)
                    pipe.execute()
                    return results
            except WatchError:
                logger.warning("[Redis] WATCH 冲突，重试事务 (attempt %d/%d)", attempt, self._watch_retries)
            except (RedisConnectionError, RedisTimeoutError) as exc:
                raise StorageUnavailable(f'Redis transaction failed: {exc}') from exc

        # 重试耗尽：不带 WATCH 再判一次条件，已经不成立就是普通冲突
        reasons = [
            None if condition_holds(op, item) else 'ConditionalCheckFailed'
            for op, item in zip(ops, self._read_items(names))
        ]
        if any(reasons):
            raise TransactionCanceled(reasons)
        logger.error("[Redis] 事务 %d 次都没抢到乐观锁", self._watch_retries)
        raise StorageUnavailable(
            'Redis transaction kept losing optimistic lock races',
            detail={'attempts': self._watch_retries},
        )

    def _read_items(self, names: list) -> list:
        try:
            with self._client.pipeline(transaction=False) as pipe:
                for name in names:
                    pipe.hgetall(name)
                raws = pipe.execute()
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StorageUnavailable(f'Redis read failed: {exc}') from exc
        return [decode_item(raw) for raw in raws]

    def _stage(self, pipe, op: Operation, name: str, nxt: Optional[dict]) -> None:
        if isinstance(op, ConditionCheck):
            return
        index = self.partition_name(op.key.pk)
        pipe.delete(name)
        if nxt is None:
            pipe.zrem(index, op.key.sk)
        else:
            pipe.hset(name, mapping=encode_item(nxt))
            pipe.zadd(index, {op.key.sk: 0})
