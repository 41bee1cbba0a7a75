"""
Visit lifecycle manager.

A visit occupies four physical items (meta, by-patient, by-date,
by-doctor+date). Every mutation touches all four inside one transaction: the
meta item carries the real precondition, the projections only require that
they still exist.

状态机：
  QUEUED → IN_PROGRESS → DONE（终态）
  线下 visit 在 allow_offline_skip_to_done 打开时可以 QUEUED → DONE
  其余迁移（同状态 / 回退 / 跳步）一律 InvalidTransitionError
"""

import logging
from dataclasses import replace

from .. import keys
from ..clock import new_id
from ..exceptions import (
    DoctorBusyError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionFailed,
    TransactionCanceled,
    ValidationError,
)
from ..retry import retry_transient
from ..sequences import SequenceGenerator, format_opd_no
from ..store.types import Delete, Put, Update, attr_eq, exists, not_exists
from ..types import Visit, VisitCreate, VisitStatus, VisitTag, from_item
from .base import BaseRepository

logger = logging.getLogger(__name__)

_NEXT = {
    VisitStatus.QUEUED: VisitStatus.IN_PROGRESS,
    VisitStatus.IN_PROGRESS: VisitStatus.DONE,
}


class VisitRepository(BaseRepository):
    entity_type = 'VISIT'

    def __init__(self, store, clock=None, policy=None, sequences=None):
        super().__init__(store, clock=clock, policy=policy)
        self.sequences = sequences or SequenceGenerator(store, self.clock)

    # ── reads ──────────────────────────────────────────────────────────────

    @retry_transient
    def get_by_id(self, visit_id):
        item = self.store.get(keys.visit_key(visit_id))
        return from_item(Visit, item) if item else None

    def require(self, visit_id) -> Visit:
        visit = self.get_by_id(visit_id)
        if visit is None:
            raise NotFoundError(f'Visit {visit_id} not found', code='VISIT_NOT_FOUND',
                                detail={'visit_id': visit_id})
        return visit

    @retry_transient
    def list_by_patient(self, patient_id):
        items = self.store.query(f'PATIENT#{patient_id}', 'VISIT#')
        visits = [from_item(Visit, item) for item in items]
        return sorted(visits, key=lambda v: (v.visit_date, v.created_at), reverse=True)

    @retry_transient
    def list_by_date(self, visit_date, status=None):
        items = self.store.query(f'DATE#{visit_date}', 'VISIT#')
        return self._filter_sorted(items, status)

    @retry_transient
    def list_doctor_queue(self, doctor_id, visit_date, status=None):
        items = self.store.query(keys.doctor_date_partition(doctor_id, visit_date), 'VISIT#')
        return self._filter_sorted(items, status)

    @staticmethod
    def _filter_sorted(items, status):
        visits = [from_item(Visit, item) for item in items]
        if status is not None:
            visits = [v for v in visits if v.status is VisitStatus(status)]
        return sorted(visits, key=lambda v: v.created_at)

    # ── create ─────────────────────────────────────────────────────────────

    def create(self, data: VisitCreate) -> Visit:
        patient = self.store.get(keys.patient_key(data.patient_id))
        if patient is None or patient.get('is_deleted'):
            raise NotFoundError(f'Patient {data.patient_id} not found', code='PATIENT_NOT_FOUND',
                                detail={'patient_id': data.patient_id})
        if not data.doctor_id:
            raise ValidationError('doctor_id is required')

        tag = VisitTag(data.tag or VisitTag.NEW)
        self._check_anchor(data, tag)

        now = self.clock.now_ms()
        visit_date = self.clock.today()
        daily, per_tag = self.sequences.next_opd(visit_date, tag)
        visit = Visit(
            visit_id=new_id(),
            patient_id=data.patient_id,
            doctor_id=data.doctor_id,
            visit_date=visit_date,
            status=VisitStatus.QUEUED,
            reason=data.reason or '',
            opd_no=format_opd_no(visit_date, daily, tag, per_tag),
            tag=tag,
            zero_billed=bool(data.zero_billed),
            is_offline=bool(data.is_offline),
            anchor_visit_id=data.anchor_visit_id if tag is VisitTag.FOLLOW_UP else None,
            created_at=now,
            updated_at=now,
        )

        ops = [Put(item=self._item(key, visit), condition=not_exists()) for key in keys.visit_keys(visit)]
        try:
            self.store.transact_write(ops)
        except TransactionCanceled as exc:
            logger.error("[Visit] 新 visit %s 的 key 已被占用, reasons=%s", visit.visit_id, exc.reasons)
            raise PreconditionFailed(f'Visit {visit.visit_id} keys already taken',
                                     detail={'visit_id': visit.visit_id, 'reasons': exc.reasons})

        logger.info("[Visit] 创建 visit %s opd=%s patient=%s", visit.visit_id, visit.opd_no, visit.patient_id)
        return visit

    def _check_anchor(self, data, tag):
        if tag is not VisitTag.FOLLOW_UP:
            return
        if not data.anchor_visit_id:
            raise ValidationError('A follow-up visit needs anchor_visit_id', code='ANCHOR_REQUIRED')
        anchor = self.get_by_id(data.anchor_visit_id)
        if anchor is None:
            raise ValidationError(f'Anchor visit {data.anchor_visit_id} does not exist',
                                  code='ANCHOR_NOT_FOUND', detail={'anchor_visit_id': data.anchor_visit_id})
        if anchor.patient_id != data.patient_id:
            raise ValidationError('Anchor visit belongs to another patient', code='ANCHOR_PATIENT_MISMATCH',
                                  detail={'anchor_visit_id': anchor.visit_id})
        if (anchor.tag or VisitTag.NEW) is not VisitTag.NEW:
            raise ValidationError('Anchor visit must be a new (N) visit', code='ANCHOR_NOT_NEW',
                                  detail={'anchor_visit_id': anchor.visit_id})

    # ── mutations ──────────────────────────────────────────────────────────

    def update_ops(self, visit, set, remove=(), meta_condition=None) -> list:
        """
        Update ops for all four copies of ``visit``, meta first.

        Callers append these to their own transaction so the copies never
        drift apart.
        """
        meta, *projections = keys.visit_keys(visit)
        ops = [Update(key=meta, set=dict(set), remove=tuple(remove),
                      condition=meta_condition if meta_condition is not None else exists())]
        ops.extend(Update(key=key, set=dict(set), remove=tuple(remove), condition=exists())
                   for key in projections)
        return ops

    def update_status(self, visit_id, next_status) -> Visit:
        visit = self.require(visit_id)
        target = VisitStatus(next_status)
        self._check_transition(visit, target)

        now = self.clock.now_ms()
        ops = self.update_ops(
            visit,
            set={'status': target.value, 'updated_at': now},
            meta_condition=attr_eq('status', visit.status.value),
        )
        lock_index = self._lock_op(visit, target, now, ops)

        try:
            self.store.transact_write(ops)
        except TransactionCanceled as exc:
            self._classify_status_failure(visit, target, exc, lock_index)

        logger.info("[Visit] %s: %s → %s", visit_id, visit.status.value, target.value)
        return replace(visit, status=target, updated_at=now)

    def _check_transition(self, visit, target):
        if _NEXT.get(visit.status) is target:
            return
        if (visit.status is VisitStatus.QUEUED and target is VisitStatus.DONE
                and visit.is_offline and self.policy.allow_offline_skip_to_done):
            return
        raise InvalidTransitionError(
            f'Cannot move visit from {visit.status.value} to {target.value}',
            detail={'visit_id': visit.visit_id, 'current': visit.status.value, 'requested': target.value},
        )

    def _lock_op(self, visit, target, now, ops):
        """Append the doctor-day lock op when the policy is on. Returns its index, if any."""
        if not self.policy.doctor_busy_lock:
            return None
        lock_key = keys.doctor_day_lock_key(visit.doctor_id, visit.visit_date)

        if target is VisitStatus.IN_PROGRESS:
            ops.append(Put(item={
                **lock_key.as_attrs(),
                'entity_type': 'DOCTOR_DAY_LOCK',
                'doctor_id': visit.doctor_id,
                'visit_date': visit.visit_date,
                'visit_id': visit.visit_id,
                'created_at': now,
            }, condition=not_exists()))
            return len(ops) - 1

        if visit.status is VisitStatus.IN_PROGRESS:
            holder = self.store.get(lock_key)
            if holder is not None and holder.get('visit_id') == visit.visit_id:
                ops.append(Delete(key=lock_key, condition=attr_eq('visit_id', visit.visit_id)))
        return None

    def _classify_status_failure(self, visit, target, exc, lock_index):
        if exc.failed(0):
            current = self.get_by_id(visit.visit_id)
            if current is None:
                raise NotFoundError(f'Visit {visit.visit_id} not found', code='VISIT_NOT_FOUND',
                                    detail={'visit_id': visit.visit_id})
            logger.info("[Visit] %s 迁移 %s → %s 输给并发请求，当前状态 %s",
                        visit.visit_id, visit.status.value, target.value, current.status.value)
            raise InvalidTransitionError(
                f'Visit moved to {current.status.value} concurrently',
                detail={'visit_id': visit.visit_id, 'current': current.status.value,
                        'requested': target.value},
            )

        if lock_index is not None and exc.failed(lock_index):
            holder = self.store.get(keys.doctor_day_lock_key(visit.doctor_id, visit.visit_date)) or {}
            logger.info("[Visit] 医生 %s 在 %s 已有进行中的 visit %s",
                        visit.doctor_id, visit.visit_date, holder.get('visit_id'))
            raise DoctorBusyError(
                'Doctor already has a visit in progress',
                detail={'doctor_id': visit.doctor_id, 'visit_date': visit.visit_date,
                        'busy_visit_id': holder.get('visit_id')},
            )

        logger.error("[Visit] %s 的反范式副本缺失, reasons=%s", visit.visit_id, exc.reasons)
        raise PreconditionFailed(
            f'Visit {visit.visit_id} projections are out of sync',
            detail={'visit_id': visit.visit_id, 'reasons': exc.reasons},
        )
