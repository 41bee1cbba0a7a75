from .base import BaseKeyValueStore
from .factory import get_store
from .memory import MemoryStore
from .types import (
    ConditionCheck,
    Delete,
    Key,
    Put,
    Update,
    attr_eq,
    attr_in,
    attr_le,
    attr_missing,
    exists,
    not_exists,
)

__all__ = [
    'BaseKeyValueStore',
    'ConditionCheck',
    'Delete',
    'Key',
    'MemoryStore',
    'Put',
    'Update',
    'attr_eq',
    'attr_in',
    'attr_le',
    'attr_missing',
    'exists',
    'not_exists',
    'get_store',
]
