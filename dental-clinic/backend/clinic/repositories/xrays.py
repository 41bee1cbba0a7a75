"""X-ray metadata. The image bytes live in object storage; only ``content_key`` is kept here."""

import logging

from .. import keys
from ..clock import new_id
from ..exceptions import NotFoundError, TransactionCanceled, ValidationError, XrayConflictError
from ..retry import retry_transient
from ..store.types import Put, not_exists
from ..types import Xray, XrayRegistration, from_item
from .base import BaseRepository

logger = logging.getLogger(__name__)


class XrayRepository(BaseRepository):
    entity_type = 'XRAY'

    def __init__(self, store, visits, clock=None, policy=None):
        super().__init__(store, clock=clock, policy=policy)
        self.visits = visits

    def register(self, visit_id, data: XrayRegistration) -> Xray:
        if not data.content_key:
            raise ValidationError('content_key is required')
        if data.size is None or data.size < 0:
            raise ValidationError('size must be a non-negative number of bytes', detail={'size': data.size})

        visit = self.visits.require(visit_id)
        xray = Xray(
            xray_id=data.xray_id or new_id(),
            visit_id=visit.visit_id,
            patient_id=visit.patient_id,
            doctor_id=visit.doctor_id,
            visit_date=visit.visit_date,
            content_key=data.content_key,
            content_type=data.content_type,
            size=data.size,
            taken_at=data.taken_at,
            taken_by_user_id=data.taken_by_user_id,
            thumb_key=data.thumb_key,
            created_at=self.clock.now_ms(),
        )

        # 全局 key 先占位：同一个 xrayId 不管内容是否一样都只能注册一次
        ops = [
            Put(item=self._item(keys.xray_key(xray.xray_id), xray), condition=not_exists()),
            Put(item=self._item(keys.visit_xray_key(visit_id, xray.xray_id), xray), condition=not_exists()),
        ]
        try:
            self.store.transact_write(ops)
        except TransactionCanceled as exc:
            logger.info("[Xray] xrayId %s 已存在, reasons=%s", xray.xray_id, exc.reasons)
            raise XrayConflictError(f'X-ray {xray.xray_id} is already registered',
                                    detail={'xray_id': xray.xray_id})

        logger.info("[Xray] 登记 %s (visit=%s)", xray.xray_id, visit_id)
        return xray

    @retry_transient
    def get_by_id(self, xray_id):
        item = self.store.get(keys.xray_key(xray_id))
        if item is None or item.get('deleted_at'):
            return None
        return from_item(Xray, item)

    def require(self, xray_id) -> Xray:
        xray = self.get_by_id(xray_id)
        if xray is None:
            raise NotFoundError(f'X-ray {xray_id} not found', code='XRAY_NOT_FOUND', detail={'xray_id': xray_id})
        return xray

    @retry_transient
    def list_by_visit(self, visit_id):
        items = self.store.query(f'VISIT#{visit_id}', 'XRAY#')
        xrays = [from_item(Xray, item) for item in items if not item.get('deleted_at')]
        return sorted(xrays, key=lambda x: x.taken_at)
