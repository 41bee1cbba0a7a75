"""
Billing checkout transactor.

Checkout 是一次性的：
  1. 先校验（visit DONE、金额规则、follow-up 日期），不碰 store
  2. 一个事务：
       [0]    PutIfAbsent  VISIT#<id> / BILLING       → 保证只结一次账
       [1..4] visit 四份副本写 billingAmount（meta 要求 DONE 且还没有 billingAmount）
       [5..6] 可选 follow-up 两份
  3. [0] 失败（或 meta 因为已有 billingAmount 失败）→ DUPLICATE_CHECKOUT
     其他失败 → 数据完整性问题，ERROR 日志 + PreconditionFailed
"""

import logging
from dataclasses import asdict

from .. import keys
from ..exceptions import (
    BillingRuleViolation,
    DuplicateCheckoutError,
    NotFoundError,
    PreconditionFailed,
    TransactionCanceled,
    VisitNotDoneError,
)
from ..retry import retry_transient
from ..store.types import Put, attr_eq, attr_missing, not_exists
from ..types import BillingLine, BillingRecord, CheckoutInput, FollowUpInput, VisitStatus, from_item
from .base import BaseRepository

logger = logging.getLogger(__name__)


def _money(value) -> float:
    return round(float(value), 2)


def _as_line(raw) -> BillingLine:
    return raw if isinstance(raw, BillingLine) else BillingLine(**raw)


class BillingRepository(BaseRepository):
    entity_type = 'BILLING'

    def __init__(self, store, visits, patients, followups, clock=None, policy=None):
        super().__init__(store, clock=clock, policy=policy)
        self.visits = visits
        self.patients = patients
        self.followups = followups

    @retry_transient
    def get_by_visit(self, visit_id):
        item = self.store.get(keys.billing_key(visit_id))
        return from_item(BillingRecord, item) if item else None

    def checkout(self, visit_id, data: CheckoutInput) -> BillingRecord:
        visit = self.visits.get_by_id(visit_id)
        if visit is None:
            raise NotFoundError(f'Visit {visit_id} not found', code='VISIT_NOT_FOUND', detail={'visit_id': visit_id})
        if visit.status is not VisitStatus.DONE:
            raise VisitNotDoneError(
                'Checkout is only allowed once the visit is DONE',
                detail={'visit_id': visit_id, 'status': visit.status.value},
            )
        if self.patients.get_by_id(visit.patient_id) is None:
            raise BillingRuleViolation('Patient of this visit does not exist or was deleted',
                                       detail={'patient_id': visit.patient_id})

        # 快速失败；真正的保证是下面事务里的 PutIfAbsent
        if visit.billing_amount is not None or self.get_by_visit(visit_id) is not None:
            logger.info("[Billing] visit %s 已结账（预检）", visit_id)
            raise DuplicateCheckoutError('Visit has already been checked out', detail={'visit_id': visit_id})

        record = self._price(visit, data)
        followup = None
        if data.follow_up is not None:
            fu_input = data.follow_up
            if isinstance(fu_input, dict):
                fu_input = FollowUpInput(**fu_input)
            self.followups.validate(visit, fu_input)
            followup = self.followups.build(visit, fu_input)

        visit_set = {'billing_amount': record.total, 'updated_at': record.created_at}
        if data.received_online is not None:
            visit_set['received_online'] = bool(data.received_online)
        if data.received_offline is not None:
            visit_set['received_offline'] = bool(data.received_offline)

        ops = [Put(item=self._item(keys.billing_key(visit_id), record), condition=not_exists())]
        ops += self.visits.update_ops(
            visit,
            set=visit_set,
            meta_condition=attr_eq('status', VisitStatus.DONE.value) & attr_missing('billing_amount'),
        )
        if followup is not None:
            ops += self.followups.ops_for(followup)

        try:
            self.store.transact_write(ops)
        except TransactionCanceled as exc:
            self._classify_failure(visit_id, exc)

        logger.info("[Billing] visit %s 结账完成 total=%.2f followup=%s",
                    visit_id, record.total, followup.followup_id if followup else None)
        return record

    def _price(self, visit, data: CheckoutInput) -> BillingRecord:
        if data.received_online and data.received_offline:
            raise BillingRuleViolation('Payment cannot be received both online and offline')

        lines = []
        for raw in data.items or []:
            line = _as_line(raw)
            if line.quantity is None or line.quantity < 1:
                raise BillingRuleViolation('Each item needs a quantity of at least 1', detail=asdict(line))
            line_total = _money(line.quantity * line.unit_amount)
            if line_total < 0:
                raise BillingRuleViolation('Line total cannot be negative', detail=asdict(line))
            lines.append({**asdict(line), 'line_total': line_total})

        subtotal = _money(sum(line['line_total'] for line in lines))
        discount = _money(data.discount_amount or 0)
        tax = _money(data.tax_amount or 0)
        if discount < 0 or tax < 0:
            raise BillingRuleViolation('Discount and tax cannot be negative',
                                       detail={'discount_amount': discount, 'tax_amount': tax})
        if discount > subtotal:
            raise BillingRuleViolation(
                'Discount cannot exceed subtotal',
                detail={'subtotal': subtotal, 'discount_amount': discount},
            )

        total = _money(subtotal - discount + tax)
        if total < 0:
            raise BillingRuleViolation('Total cannot be negative', detail={'total': total})

        if visit.zero_billed:
            if not data.allow_zero_billed:
                raise BillingRuleViolation('Visit is zero-billed; checkout needs allow_zero_billed',
                                           detail={'visit_id': visit.visit_id})
            if total != 0:
                raise BillingRuleViolation('Zero-billed visit must total 0', detail={'total': total})

        return BillingRecord(
            visit_id=visit.visit_id,
            items=lines,
            subtotal=subtotal,
            discount_amount=discount,
            tax_amount=tax,
            total=total,
            received_online=data.received_online,
            received_offline=data.received_offline,
            created_at=self.clock.now_ms(),
        )

    def _classify_failure(self, visit_id, exc):
        if exc.failed(0):
            logger.info("[Billing] visit %s 并发结账，本次失败", visit_id)
            raise DuplicateCheckoutError('Visit has already been checked out', detail={'visit_id': visit_id})
        if exc.failed(1):
            current = self.visits.get_by_id(visit_id)
            if current is not None and current.billing_amount is not None:
                logger.info("[Billing] visit %s 已有 billingAmount，本次失败", visit_id)
                raise DuplicateCheckoutError('Visit has already been checked out', detail={'visit_id': visit_id})
        logger.error("[Billing] visit %s 结账事务失败且不是重复结账, reasons=%s", visit_id, exc.reasons)
        raise PreconditionFailed(
            f'Checkout of visit {visit_id} failed an integrity precondition',
            detail={'visit_id': visit_id, 'reasons': exc.reasons},
        )
