"""
工厂函数：根据 settings.CLINIC_STORE_BACKEND 返回对应的 store 实例。

新增存储后端只需：
  1. 新建 XxxStore(BaseKeyValueStore) 类
  2. 在此处 _build_registry 加一行
  不需要修改任何 repository。

同一进程内 store 只构建一次（memory 后端的数据就放在这个实例里）；
测试里用 get_store.cache_clear() 重置。
"""

from functools import lru_cache

from django.conf import settings

from .base import BaseKeyValueStore


def _build_memory() -> BaseKeyValueStore:
    from .memory import MemoryStore

    return MemoryStore()


def _build_redis() -> BaseKeyValueStore:
    # 延迟导入，memory 后端不需要 redis 客户端
    from .redis_store import RedisStore

    return RedisStore(
        url=getattr(settings, "REDIS_URL", "redis://localhost:6379/0"),
        namespace=getattr(settings, "CLINIC_TABLE_NAME", "dental-clinic"),
        watch_retries=getattr(settings, "CLINIC_REDIS_WATCH_RETRIES", 5),
    )


def _build_registry():
    return {
        "memory": _build_memory,
        "redis":  _build_redis,
    }


@lru_cache(maxsize=None)
def get_store() -> BaseKeyValueStore:
    """
    从 settings.CLINIC_STORE_BACKEND 读取后端名，返回对应的 store。

    Raises:
        ValueError: CLINIC_STORE_BACKEND 未知
    """
    backend = getattr(settings, "CLINIC_STORE_BACKEND", "memory")
    registry = _build_registry()
    builder = registry.get(backend)

    if builder is None:
        raise ValueError(
            f"Unknown CLINIC_STORE_BACKEND: {backend!r}. "
            f"Known backends: {list(registry.keys())}"
        )

    return builder()
