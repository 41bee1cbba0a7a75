"""Treatment estimations, numbered EST/<year>/SD/<seq> from a per-year counter."""

import logging
from dataclasses import asdict, replace

from .. import keys
from ..clock import new_id
from ..exceptions import EstimationRuleViolation, NotFoundError, PreconditionFailed
from ..retry import retry_transient
from ..sequences import SequenceGenerator, format_estimation_no
from ..store.types import exists
from ..types import Estimation, EstimationInput, EstimationLine, from_item
from .base import BaseRepository

logger = logging.getLogger(__name__)


def _clean(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class EstimationRepository(BaseRepository):
    entity_type = 'ESTIMATION'

    def __init__(self, store, patients, clock=None, policy=None, sequences=None):
        super().__init__(store, clock=clock, policy=policy)
        self.patients = patients
        self.sequences = sequences or SequenceGenerator(store, self.clock)

    def _lines(self, raw_items):
        if not raw_items:
            raise EstimationRuleViolation('An estimation needs at least one item')
        lines = []
        for raw in raw_items:
            line = raw if isinstance(raw, EstimationLine) else EstimationLine(**raw)
            if line.quantity is None or line.quantity < 1:
                raise EstimationRuleViolation('Item quantity must be at least 1', detail=asdict(line))
            if line.amount is None or line.amount < 0:
                raise EstimationRuleViolation('Item amount cannot be negative', detail=asdict(line))
            lines.append(asdict(line))
        return lines

    def create(self, patient_id, data: EstimationInput, created_by_user_id=None) -> Estimation:
        self.patients.require(patient_id)
        lines = self._lines(data.items)

        year = self.clock.year()
        seq = self.sequences.next_estimation(year)
        now = self.clock.now_ms()
        estimation = Estimation(
            estimation_id=new_id(),
            estimation_no=format_estimation_no(year, seq),
            patient_id=patient_id,
            items=lines,
            total=round(sum(line['amount'] for line in lines), 2),
            notes=_clean(data.notes),
            valid_until=_clean(data.valid_until),
            created_by_user_id=created_by_user_id,
            created_at=now,
            updated_at=now,
        )
        self.store.put_if_absent(self._item(keys.patient_estimation_key(patient_id, estimation.estimation_id),
                                            estimation))
        logger.info("[Estimation] 创建 %s (patient=%s)", estimation.estimation_no, patient_id)
        return estimation

    @retry_transient
    def get(self, patient_id, estimation_id):
        item = self.store.get(keys.patient_estimation_key(patient_id, estimation_id))
        return from_item(Estimation, item) if item else None

    @retry_transient
    def list_by_patient(self, patient_id):
        items = self.store.query(f'PATIENT#{patient_id}', 'ESTIMATION#')
        return sorted((from_item(Estimation, item) for item in items), key=lambda e: e.created_at, reverse=True)

    def update(self, patient_id, estimation_id, data: EstimationInput) -> Estimation:
        current = self.get(patient_id, estimation_id)
        if current is None:
            raise NotFoundError(f'Estimation {estimation_id} not found', code='ESTIMATION_NOT_FOUND',
                                detail={'estimation_id': estimation_id})
        lines = self._lines(data.items)
        notes, valid_until = _clean(data.notes), _clean(data.valid_until)

        set_ = {
            'items': lines,
            'total': round(sum(line['amount'] for line in lines), 2),
            'updated_at': self.clock.now_ms(),
        }
        remove = []
        for name, value in (('notes', notes), ('valid_until', valid_until)):
            if value is None:
                remove.append(name)
            else:
                set_[name] = value

        try:
            self.store.update_if_matches(keys.patient_estimation_key(patient_id, estimation_id),
                                         set=set_, remove=remove, condition=exists())
        except PreconditionFailed:
            raise NotFoundError(f'Estimation {estimation_id} not found', code='ESTIMATION_NOT_FOUND',
                                detail={'estimation_id': estimation_id})
        return replace(current, **{**set_, 'notes': notes, 'valid_until': valid_until})

    def delete(self, patient_id, estimation_id) -> bool:
        try:
            self.store.delete(keys.patient_estimation_key(patient_id, estimation_id), condition=exists())
        except PreconditionFailed:
            return False
        logger.info("[Estimation] 删除 %s (patient=%s)", estimation_id, patient_id)
        return True
