"""
Prescription versioning engine.

每个 visit 最多两个版本：
  v1  草稿，visit 未 DONE 前随便覆盖
  v2  定稿，visit DONE 之后第一次保存时创建（从 v1 继承内容），之后原地覆盖

rxId = "<visitId>#v<version>"，确定性的：并发的同版本保存落在同一个 key 上，
谁先 PutIfAbsent 成功谁赢，输的一方重新读取并返回赢家的记录。
"""

import logging
from dataclasses import replace

from .. import keys
from ..exceptions import (
    InvalidTransitionError,
    NotFoundError,
    PreconditionFailed,
    TransactionCanceled,
)
from ..retry import retry_transient
from ..store.types import Put, Update, attr_eq, attr_in, attr_le, attr_missing, exists, not_exists
from ..types import Prescription, PrescriptionSave, VisitStatus, from_item, is_set
from .base import BaseRepository, tri_state_patch

logger = logging.getLogger(__name__)

DRAFT_VERSION = 1
LOCKED_VERSION = 2

# Fields a save may patch; v2 inherits them from v1.
CONTENT_FIELDS = ('lines', 'tooth_details', 'doctor_notes', 'reception_notes')


class PrescriptionRepository(BaseRepository):
    entity_type = 'RX'

    def __init__(self, store, visits, clock=None, policy=None):
        super().__init__(store, clock=clock, policy=policy)
        self.visits = visits

    # ── reads ──────────────────────────────────────────────────────────────

    @retry_transient
    def get_by_id(self, rx_id):
        item = self.store.get(keys.rx_key(rx_id))
        return from_item(Prescription, item) if item else None

    def require(self, rx_id) -> Prescription:
        rx = self.get_by_id(rx_id)
        if rx is None:
            raise NotFoundError(f'Prescription {rx_id} not found', code='PRESCRIPTION_NOT_FOUND',
                                detail={'rx_id': rx_id})
        return rx

    @retry_transient
    def list_by_visit(self, visit_id):
        items = self.store.query(f'VISIT#{visit_id}', 'RX#')
        return sorted((from_item(Prescription, item) for item in items), key=lambda rx: rx.version)

    def get_by_visit_and_version(self, visit_id, version):
        item = self.store.get(keys.visit_rx_key(visit_id, keys.rx_id_for(visit_id, int(version))))
        return from_item(Prescription, item) if item else None

    def get_current_meta_for_visit(self, visit_id):
        """Highest version stored under the visit, without going through the pointer."""
        versions = self.list_by_visit(visit_id)
        return versions[-1] if versions else None

    def get_current_for_visit(self, visit_id):
        visit = self.visits.get_by_id(visit_id)
        if visit is None or not visit.current_rx_id:
            return None
        return self.get_by_id(visit.current_rx_id)

    # ── save ───────────────────────────────────────────────────────────────

    def save(self, visit_id, data: PrescriptionSave, actor_role=None) -> Prescription:
        if is_set(data.reception_notes):
            self.policy.assert_can_edit_reception_notes(actor_role)

        visit = self.visits.require(visit_id)
        # 第二次机会：visit 在读和写之间换了状态，重读后重新算版本
        for attempt in range(2):
            version = LOCKED_VERSION if visit.status is VisitStatus.DONE else DRAFT_VERSION
            existing = self.get_by_id(keys.rx_id_for(visit_id, version))
            if existing is not None:
                return self._overwrite(existing, data)

            created = self._create(visit, version, data)
            if created is not None:
                return created

            logger.info("[Rx] visit %s 的指针条件失败 (attempt %d)，重读 visit", visit_id, attempt + 1)
            visit = self.visits.require(visit_id)

        raise InvalidTransitionError(
            f'Visit {visit_id} changed state while saving its prescription',
            detail={'visit_id': visit_id, 'status': visit.status.value},
        )

    def _create(self, visit, version, data):
        """
        First save at ``version``. Returns the stored record, or None when only
        the visit pointer condition failed and the caller should re-read.
        """
        rx_id = keys.rx_id_for(visit.visit_id, version)
        seed = self._seed_from_draft(visit.visit_id) if version == LOCKED_VERSION else {}

        content = {}
        for name in CONTENT_FIELDS:
            value = getattr(data, name)
            content[name] = value if is_set(value) else seed.get(name)
        content['lines'] = content['lines'] or []

        now = self.clock.now_ms()
        rx = Prescription(
            rx_id=rx_id,
            visit_id=visit.visit_id,
            patient_id=visit.patient_id,
            visit_date=visit.visit_date,
            version=version,
            json_key=data.json_key,
            created_at=now,
            updated_at=now,
            **content,
        )

        if version == LOCKED_VERSION:
            status_cond = attr_eq('status', VisitStatus.DONE.value)
        else:
            status_cond = attr_in('status', VisitStatus.QUEUED.value, VisitStatus.IN_PROGRESS.value)
        pointer_cond = status_cond & (attr_missing('current_rx_version') | attr_le('current_rx_version', version))

        ops = [
            Put(item=self._item(keys.rx_key(rx_id), rx), condition=not_exists()),
            Put(item=self._item(keys.visit_rx_key(visit.visit_id, rx_id), rx), condition=not_exists()),
        ]
        ops += self.visits.update_ops(
            visit,
            set={'current_rx_id': rx_id, 'current_rx_version': version, 'updated_at': now},
            meta_condition=pointer_cond,
        )

        try:
            self.store.transact_write(ops)
        except TransactionCanceled as exc:
            if exc.failed(0) or exc.failed(1):
                winner = self.get_by_id(rx_id)
                if winner is not None:
                    logger.info("[Rx] %s 已被并发请求创建，返回已有记录", rx_id)
                    return winner
            elif exc.failed(2):
                return None
            logger.error("[Rx] 创建 %s 失败且无法归类, reasons=%s", rx_id, exc.reasons)
            raise PreconditionFailed(f'Could not create prescription {rx_id}',
                                     detail={'rx_id': rx_id, 'reasons': exc.reasons})

        logger.info("[Rx] 创建 %s (visit=%s, version=%d)", rx_id, visit.visit_id, version)
        return rx

    def _seed_from_draft(self, visit_id) -> dict:
        draft = self.get_by_id(keys.rx_id_for(visit_id, DRAFT_VERSION))
        if draft is None:
            return {}
        return {name: getattr(draft, name) for name in CONTENT_FIELDS}

    def _overwrite(self, existing, data):
        set_, remove = tri_state_patch(data, CONTENT_FIELDS)
        if 'lines' in remove:
            remove.remove('lines')
            set_['lines'] = []
        set_['json_key'] = data.json_key
        return self._patch_both(existing, set_, remove)

    def update_reception_notes(self, rx_id, notes, actor_role=None) -> Prescription:
        self.policy.assert_can_edit_reception_notes(actor_role)
        existing = self.require(rx_id)
        if notes is None or not str(notes).strip():
            return self._patch_both(existing, {}, ['reception_notes'])
        return self._patch_both(existing, {'reception_notes': notes}, [])

    def _patch_both(self, existing, set_, remove):
        now = self.clock.now_ms()
        set_ = {**set_, 'updated_at': now}
        ops = [
            Update(key=key, set=set_, remove=tuple(remove), condition=exists())
            for key in (keys.rx_key(existing.rx_id), keys.visit_rx_key(existing.visit_id, existing.rx_id))
        ]
        try:
            self.store.transact_write(ops)
        except TransactionCanceled as exc:
            logger.error("[Rx] %s 的副本在更新时缺失, reasons=%s", existing.rx_id, exc.reasons)
            raise NotFoundError(
                f'Prescription {existing.rx_id} disappeared during update',
                code='PRESCRIPTION_NOT_FOUND',
                detail={'rx_id': existing.rx_id, 'reasons': exc.reasons},
            )

        updated = replace(existing, **set_)
        for name in remove:
            setattr(updated, name, None)
        return updated
