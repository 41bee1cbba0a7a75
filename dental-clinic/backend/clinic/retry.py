"""
Bounded retry for transient storage failures on the read side.

只重试 StorageUnavailable；条件写失败（AlreadyExists / PreconditionFailed /
TransactionCanceled）是语义上的结果，永远不重试。

重试策略（和异步任务的退避一致）：
  - 最多 CLINIC_STORAGE_RETRY_ATTEMPTS 次（默认 3）
  - 指数退避：base → 2·base → 4·base ...
"""

import functools
import logging
import time

from django.conf import settings

from .exceptions import StorageUnavailable

logger = logging.getLogger(__name__)


def with_retry(fn, *args, attempts=None, base_delay=None, **kwargs):
    attempts = attempts or getattr(settings, 'CLINIC_STORAGE_RETRY_ATTEMPTS', 3)
    if base_delay is None:
        base_delay = getattr(settings, 'CLINIC_STORAGE_RETRY_BASE_DELAY', 0.05)

    for attempt in range(attempts):
        try:
            return fn(*args, **kwargs)
        except StorageUnavailable as exc:
            if attempt + 1 >= attempts:
                logger.error("[Storage] %s 已达最大重试次数 (%d): %s",
                             getattr(fn, '__name__', fn), attempts, exc.message)
                raise
            countdown = base_delay * (2 ** attempt)
            logger.warning("[Storage] %s 暂时失败 (attempt %d/%d)，%.3fs 后重试: %s",
                           getattr(fn, '__name__', fn), attempt + 1, attempts, countdown, exc.message)
            time.sleep(countdown)


def retry_transient(fn):
    """Decorator form of :func:`with_retry` for repository read methods."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        return with_retry(fn, *args, **kwargs)

    return wrapper
