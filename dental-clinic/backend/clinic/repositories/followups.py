"""
Follow-up repository.

每个 follow-up 两份：VISIT#<visitId> / FOLLOWUP#<id>（主）和
DATE#<followUpDate> / FOLLOWUP#<id>（按日期查的投影），同一个事务里写。
checkout 会借用 build() + ops_for() 把 follow-up 塞进自己的事务。
"""

import logging
from dataclasses import replace
from datetime import date

from .. import keys
from ..clock import new_id
from ..exceptions import (
    FollowUpRuleViolation,
    NotFoundError,
    PreconditionFailed,
    TransactionCanceled,
    ValidationError,
)
from ..retry import retry_transient
from ..store.types import Put, Update, exists, not_exists
from ..types import FollowUp, FollowUpInput, FollowUpStatus, from_item
from .base import BaseRepository

logger = logging.getLogger(__name__)


class FollowUpRepository(BaseRepository):
    entity_type = 'FOLLOWUP'

    def __init__(self, store, visits, clock=None, policy=None):
        super().__init__(store, clock=clock, policy=policy)
        self.visits = visits

    # ── building blocks shared with checkout ───────────────────────────────

    def validate(self, visit, data: FollowUpInput) -> None:
        try:
            canonical = date.fromisoformat(data.follow_up_date).isoformat()
        except (TypeError, ValueError):
            canonical = None
        # 只收 YYYY-MM-DD：字符串直接参与比较和 DATE#<date> key
        if canonical != data.follow_up_date:
            raise ValidationError('follow_up_date must be YYYY-MM-DD',
                                  detail={'follow_up_date': data.follow_up_date})
        if data.follow_up_date < visit.visit_date:
            raise FollowUpRuleViolation(
                'Follow-up date cannot be before the visit date',
                detail={'follow_up_date': data.follow_up_date, 'visit_date': visit.visit_date},
            )
        today = self.clock.today()
        if data.follow_up_date < today:
            raise FollowUpRuleViolation(
                'Follow-up date cannot be in the past',
                detail={'follow_up_date': data.follow_up_date, 'today': today},
            )

    def build(self, visit, data: FollowUpInput) -> FollowUp:
        now = self.clock.now_ms()
        return FollowUp(
            followup_id=new_id(),
            visit_id=visit.visit_id,
            follow_up_date=data.follow_up_date,
            status=FollowUpStatus.ACTIVE,
            reason=(data.reason or '').strip() or None,
            contact_method=data.contact_method or 'CALL',
            created_at=now,
            updated_at=now,
        )

    def ops_for(self, followup: FollowUp) -> list:
        return [
            Put(item=self._item(keys.followup_key(followup.visit_id, followup.followup_id), followup),
                condition=not_exists()),
            Put(item=self._item(keys.date_followup_key(followup.follow_up_date, followup.followup_id), followup),
                condition=not_exists()),
        ]

    # ── operations ─────────────────────────────────────────────────────────

    def create_for_visit(self, visit_id, data: FollowUpInput) -> FollowUp:
        visit = self.visits.require(visit_id)
        self.validate(visit, data)
        followup = self.build(visit, data)
        try:
            self.store.transact_write(self.ops_for(followup))
        except TransactionCanceled as exc:
            logger.error("[FollowUp] %s 的 key 已被占用, reasons=%s", followup.followup_id, exc.reasons)
            raise PreconditionFailed(f'Follow-up {followup.followup_id} keys already taken',
                                     detail={'followup_id': followup.followup_id, 'reasons': exc.reasons})
        logger.info("[FollowUp] 创建 %s (visit=%s, date=%s)", followup.followup_id, visit_id, followup.follow_up_date)
        return followup

    @retry_transient
    def get(self, visit_id, followup_id):
        item = self.store.get(keys.followup_key(visit_id, followup_id))
        return from_item(FollowUp, item) if item else None

    @retry_transient
    def list_by_visit(self, visit_id):
        items = self.store.query(f'VISIT#{visit_id}', 'FOLLOWUP#')
        return sorted((from_item(FollowUp, item) for item in items), key=lambda f: f.follow_up_date)

    @retry_transient
    def list_by_date(self, follow_up_date, status=None):
        followups = [from_item(FollowUp, item) for item in self.store.query(f'DATE#{follow_up_date}', 'FOLLOWUP#')]
        if status is not None:
            followups = [f for f in followups if f.status is FollowUpStatus(status)]
        return sorted(followups, key=lambda f: f.created_at)

    def list_active_by_date(self, follow_up_date):
        return self.list_by_date(follow_up_date, FollowUpStatus.ACTIVE)

    def update_status(self, visit_id, followup_id, status) -> FollowUp:
        current = self.get(visit_id, followup_id)
        if current is None:
            raise NotFoundError(f'Follow-up {followup_id} not found', code='FOLLOWUP_NOT_FOUND',
                                detail={'visit_id': visit_id, 'followup_id': followup_id})
        target = FollowUpStatus(status)
        now = self.clock.now_ms()
        set_ = {'status': target.value, 'updated_at': now}
        ops = [
            Update(key=keys.followup_key(visit_id, followup_id), set=set_, condition=exists()),
            Update(key=keys.date_followup_key(current.follow_up_date, followup_id), set=set_, condition=exists()),
        ]
        try:
            self.store.transact_write(ops)
        except TransactionCanceled as exc:
            if exc.failed(0):
                raise NotFoundError(f'Follow-up {followup_id} not found', code='FOLLOWUP_NOT_FOUND',
                                    detail={'visit_id': visit_id, 'followup_id': followup_id})
            logger.error("[FollowUp] %s 的日期投影缺失, reasons=%s", followup_id, exc.reasons)
            raise PreconditionFailed(f'Follow-up {followup_id} projection is missing',
                                     detail={'followup_id': followup_id, 'reasons': exc.reasons})
        return replace(current, status=target, updated_at=now)
