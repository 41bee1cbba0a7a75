"""
BaseRepository — 所有 repository 的公共部分。

每个 repository 只需：
1. 继承 BaseRepository，声明 entity_type
2. 用 keys.* 计算出实体占用的全部物理 key
3. 把写操作表达成 store 的条件写 / 事务，把失败归类成领域异常
"""

from ..clock import Clock
from ..policies import ClinicPolicy
from ..types import as_attributes, is_set


class BaseRepository:
    entity_type = None

    def __init__(self, store, clock=None, policy=None):
        self.store = store
        self.clock = clock or Clock()
        self.policy = policy or ClinicPolicy.from_settings()

    def _item(self, key, entity) -> dict:
        """One physical copy: keys + entity_type + entity attributes."""
        return {**key.as_attrs(), 'entity_type': self.entity_type, **as_attributes(entity)}


def tri_state_patch(data, names):
    """
    Turn tri-state fields of ``data`` into (set, remove) for an Update.

    UNSET is skipped, None becomes a REMOVE, anything else is SET.
    """
    set_, remove = {}, []
    for name in names:
        value = getattr(data, name)
        if not is_set(value):
            continue
        if value is None:
            remove.append(name)
        else:
            set_[name] = value
    return set_, remove
