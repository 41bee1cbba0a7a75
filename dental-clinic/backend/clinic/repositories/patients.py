"""
Patient repository + (phone, name) 唯一性。

唯一性靠一个索引 item：PATIENT_PHONE#<normalizedPhone>#<normalizedName> / PROFILE，
和 profile 在同一个事务里 PutIfAbsent。没有电话的患者没有索引 item。

规则：
- 创建 / 修改电话或姓名 → 撞上已有索引 → DUPLICATE_PATIENT (409)，已有患者不受影响
- 软删除 → 同一事务删掉索引，释放 (phone, name)
- 修改 / 软删除以读到的 (phone, name) 为条件；快照过期就重读一次，再失败 → CONCURRENT_UPDATE (409)
"""

import logging
from dataclasses import replace

from .. import keys
from ..clock import new_id
from ..exceptions import (
    ConcurrentUpdateError,
    DuplicatePatientError,
    NotFoundError,
    PreconditionFailed,
    TransactionCanceled,
    ValidationError,
)
from ..retry import retry_transient
from ..store.types import Delete, Put, Update, attr_eq, attr_missing, not_exists
from ..types import Patient, PatientCreate, PatientUpdate, from_item, is_set
from .base import BaseRepository, tri_state_patch

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ('name', 'phone', 'dob', 'gender')
SNAPSHOT_ATTEMPTS = 2


class PatientRepository(BaseRepository):
    entity_type = 'PATIENT'

    # ── reads ──────────────────────────────────────────────────────────────

    @retry_transient
    def get_by_id(self, patient_id, include_deleted=False):
        item = self.store.get(keys.patient_key(patient_id))
        if item is None:
            return None
        patient = from_item(Patient, item)
        if patient.is_deleted and not include_deleted:
            return None
        return patient

    def require(self, patient_id) -> Patient:
        patient = self.get_by_id(patient_id)
        if patient is None:
            raise NotFoundError(f'Patient {patient_id} not found', code='PATIENT_NOT_FOUND',
                                detail={'patient_id': patient_id})
        return patient

    def find_by_phone_and_name(self, phone, name):
        index = self.store.get(keys.patient_phone_key(keys.normalize_phone(phone), keys.normalize_name(name)))
        return self.get_by_id(index['patient_id']) if index else None

    # ── writes ─────────────────────────────────────────────────────────────

    def create(self, data: PatientCreate) -> Patient:
        name = (data.name or '').strip()
        if not name:
            raise ValidationError('Patient name is required', code='NAME_REQUIRED')

        now = self.clock.now_ms()
        normalized_phone = keys.normalize_phone(data.phone)
        patient = Patient(
            patient_id=new_id(),
            name=name,
            phone=data.phone or None,
            dob=data.dob,
            gender=data.gender,
            normalized_phone=normalized_phone or None,
            normalized_name=keys.normalize_name(name),
            created_at=now,
            updated_at=now,
        )
        profile = self._item(keys.patient_key(patient.patient_id), patient)

        if not normalized_phone:
            self.store.put_if_absent(profile)
            logger.info("[Patient] 创建 %s（无电话）", patient.patient_id)
            return patient

        ops = [
            Put(item=profile, condition=not_exists()),
            Put(item=self._index_item(patient, now), condition=not_exists()),
        ]
        try:
            self.store.transact_write(ops)
        except TransactionCanceled as exc:
            self._raise_duplicate_or_integrity(patient, exc, index_at=1)

        logger.info("[Patient] 创建 %s", patient.patient_id)
        return patient

    def update(self, patient_id, data: PatientUpdate) -> Patient:
        if is_set(data.name) and (data.name is None or not data.name.strip()):
            raise ValidationError('Patient name cannot be cleared', code='NAME_REQUIRED')

        for _ in range(SNAPSHOT_ATTEMPTS):
            updated = self._try_update(self.require(patient_id), data)
            if updated is not None:
                return updated
        self._raise_stale(patient_id)

    def soft_delete(self, patient_id) -> Patient:
        for _ in range(SNAPSHOT_ATTEMPTS):
            deleted = self._try_soft_delete(self.require(patient_id))
            if deleted is not None:
                return deleted
        self._raise_stale(patient_id)

    # ── snapshot-conditioned writes ────────────────────────────────────────
    # 返回 None 表示 profile 已不是读到的样子（改名 / 换号 / 被删），调用方重读再算。

    def _try_update(self, current: Patient, data: PatientUpdate):
        patient_id = current.patient_id
        set_, remove = tri_state_patch(data, EDITABLE_FIELDS)
        if 'name' in set_:
            set_['name'] = set_['name'].strip()

        updated = replace(current, **set_)
        for name in remove:
            setattr(updated, name, None)
        updated.normalized_phone = keys.normalize_phone(updated.phone) or None
        updated.normalized_name = keys.normalize_name(updated.name)

        now = self.clock.now_ms()
        updated.updated_at = now
        set_['normalized_name'] = updated.normalized_name
        set_['updated_at'] = now
        if updated.normalized_phone:
            set_['normalized_phone'] = updated.normalized_phone
        else:
            remove.append('normalized_phone')

        snapshot = self._snapshot_condition(current)
        profile_key = keys.patient_key(patient_id)
        pair_changed = (
            (current.normalized_phone, current.normalized_name)
            != (updated.normalized_phone, updated.normalized_name)
        )

        if not pair_changed:
            try:
                self.store.update_if_matches(profile_key, set=set_, remove=remove, condition=snapshot)
            except PreconditionFailed:
                logger.info("[Patient] %s 快照已过期，重新读取", patient_id)
                return None
            return updated

        ops = [Update(key=profile_key, set=set_, remove=tuple(remove), condition=snapshot)]
        if current.normalized_phone:
            ops.append(Delete(
                key=keys.patient_phone_key(current.normalized_phone, current.normalized_name),
                condition=not_exists() | attr_eq('patient_id', patient_id),
            ))
        index_at = None
        if updated.normalized_phone:
            ops.append(Put(item=self._index_item(updated, now), condition=not_exists()))
            index_at = len(ops) - 1

        try:
            self.store.transact_write(ops)
        except TransactionCanceled as exc:
            if exc.failed(0):
                logger.info("[Patient] %s 快照已过期，重新读取", patient_id)
                return None
            self._raise_duplicate_or_integrity(updated, exc, index_at=index_at)

        logger.info("[Patient] %s 更新了电话/姓名", patient_id)
        return updated

    def _try_soft_delete(self, current: Patient):
        patient_id = current.patient_id
        now = self.clock.now_ms()
        ops = [Update(
            key=keys.patient_key(patient_id),
            set={'is_deleted': True, 'deleted_at': now, 'updated_at': now},
            condition=self._snapshot_condition(current),
        )]
        if current.normalized_phone:
            ops.append(Delete(
                key=keys.patient_phone_key(current.normalized_phone, current.normalized_name),
                condition=not_exists() | attr_eq('patient_id', patient_id),
            ))

        try:
            self.store.transact_write(ops)
        except TransactionCanceled as exc:
            if exc.failed(0):
                logger.info("[Patient] %s 快照已过期，重新读取", patient_id)
                return None
            logger.error("[Patient] %s 的电话索引指向了别的患者, reasons=%s", patient_id, exc.reasons)
            raise PreconditionFailed(f'Phone index of patient {patient_id} is inconsistent',
                                     detail={'patient_id': patient_id, 'reasons': exc.reasons})

        logger.info("[Patient] 软删除 %s", patient_id)
        return replace(current, is_deleted=True, deleted_at=now, updated_at=now)

    @staticmethod
    def _snapshot_condition(patient: Patient):
        """profile 仍未删除，且 (phone, name) 还是快照里那一对。索引的增删都以这一对为准。"""
        condition = attr_eq('is_deleted', False) & attr_eq('normalized_name', patient.normalized_name)
        if patient.normalized_phone:
            return condition & attr_eq('normalized_phone', patient.normalized_phone)
        return condition & attr_missing('normalized_phone')

    def _raise_stale(self, patient_id):
        item = self.store.get(keys.patient_key(patient_id))
        if item is None or item.get('is_deleted'):
            raise NotFoundError(f'Patient {patient_id} not found', code='PATIENT_NOT_FOUND',
                                detail={'patient_id': patient_id})
        logger.warning("[Patient] %s 连续 %d 次快照过期，放弃写入", patient_id, SNAPSHOT_ATTEMPTS)
        raise ConcurrentUpdateError(f'Patient {patient_id} is being modified concurrently',
                                    detail={'patient_id': patient_id})

    # ── helpers ────────────────────────────────────────────────────────────

    def _index_item(self, patient, now) -> dict:
        key = keys.patient_phone_key(patient.normalized_phone, patient.normalized_name)
        return {
            **key.as_attrs(),
            'entity_type': 'PATIENT_PHONE_INDEX',
            'patient_id': patient.patient_id,
            'created_at': now,
        }

    def _raise_duplicate_or_integrity(self, patient, exc, index_at):
        if index_at is not None and exc.failed(index_at):
            holder = self.store.get(keys.patient_phone_key(patient.normalized_phone, patient.normalized_name)) or {}
            logger.info("[Patient] 重复患者: phone=%s name=%s 已属于 %s",
                        patient.normalized_phone, patient.normalized_name, holder.get('patient_id'))
            raise DuplicatePatientError(detail={
                'existing_patient_id': holder.get('patient_id'),
                'phone': patient.normalized_phone,
                'name': patient.name,
            })
        logger.error("[Patient] %s 写入失败且无法归类, reasons=%s", patient.patient_id, exc.reasons)
        raise PreconditionFailed(f'Could not write patient {patient.patient_id}',
                                 detail={'patient_id': patient.patient_id, 'reasons': exc.reasons})
