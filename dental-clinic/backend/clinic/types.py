"""
实体与输入的 dataclass：repository 唯一认识的标准格式。

持久化的 item = keys + entity_type + as_attributes(entity)；
同一实体的多个反范式副本除 key 以外属性完全一致。

部分更新用三态字段：
  UNSET  → 没传，保留旧值
  None   → 显式清空，REMOVE 该属性
  其他值 → 替换（包括 '' 和 []）
"""

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Optional


class _Unset:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return 'UNSET'

    def __bool__(self):
        return False


UNSET: Any = _Unset()


def is_set(value) -> bool:
    return value is not UNSET


# ── Enums ──────────────────────────────────────────────────────────────────

class VisitStatus(str, Enum):
    QUEUED = 'QUEUED'
    IN_PROGRESS = 'IN_PROGRESS'
    DONE = 'DONE'


class VisitTag(str, Enum):
    NEW = 'N'
    FOLLOW_UP = 'F'


class FollowUpStatus(str, Enum):
    ACTIVE = 'ACTIVE'
    COMPLETED = 'COMPLETED'
    CANCELLED = 'CANCELLED'


class Role(str, Enum):
    ADMIN = 'ADMIN'
    DOCTOR = 'DOCTOR'
    RECEPTION = 'RECEPTION'


# ── item <-> entity ────────────────────────────────────────────────────────

def as_attributes(entity) -> dict:
    """Entity → item attributes. None values are dropped, enums become their value."""
    attrs = {}
    for name, value in asdict(entity).items():
        if value is None:
            continue
        attrs[name] = value.value if isinstance(value, Enum) else value
    return attrs


def from_item(cls, item: dict):
    names = {f.name for f in fields(cls)}
    return cls(**{name: value for name, value in item.items() if name in names})


# ── Patient ────────────────────────────────────────────────────────────────

@dataclass
class Patient:
    patient_id: str
    name: str
    phone: Optional[str] = None
    dob: Optional[str] = None
    gender: Optional[str] = None
    is_deleted: bool = False
    deleted_at: Optional[int] = None
    normalized_phone: Optional[str] = None
    normalized_name: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0


@dataclass
class PatientCreate:
    name: str
    phone: Optional[str] = None
    dob: Optional[str] = None
    gender: Optional[str] = None


@dataclass
class PatientUpdate:
    name: Any = UNSET
    phone: Any = UNSET
    dob: Any = UNSET
    gender: Any = UNSET


# ── Visit ──────────────────────────────────────────────────────────────────

@dataclass
class Visit:
    visit_id: str
    patient_id: str
    doctor_id: str
    visit_date: str
    status: VisitStatus = VisitStatus.QUEUED
    reason: str = ''
    opd_no: Optional[str] = None
    tag: Optional[VisitTag] = None
    zero_billed: bool = False
    is_offline: bool = False
    anchor_visit_id: Optional[str] = None
    billing_amount: Optional[float] = None
    received_online: Optional[bool] = None
    received_offline: Optional[bool] = None
    current_rx_id: Optional[str] = None
    current_rx_version: Optional[int] = None
    created_at: int = 0
    updated_at: int = 0

    def __post_init__(self):
        self.status = VisitStatus(self.status)
        if self.tag is not None:
            self.tag = VisitTag(self.tag)


@dataclass
class VisitCreate:
    patient_id: str
    doctor_id: str
    reason: str = ''
    tag: VisitTag = VisitTag.NEW
    zero_billed: bool = False
    is_offline: bool = False
    anchor_visit_id: Optional[str] = None


# ── Prescription ───────────────────────────────────────────────────────────

@dataclass
class Prescription:
    rx_id: str
    visit_id: str
    patient_id: str
    visit_date: str
    version: int
    json_key: str
    lines: list = field(default_factory=list)
    tooth_details: Any = None
    doctor_notes: Optional[str] = None
    reception_notes: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0


@dataclass
class PrescriptionSave:
    """
    Input of a prescription save.

    ``json_key`` points at the payload object written by the caller; the core
    never reads it. Every other field is tri-state (see module docstring).
    """

    json_key: str
    lines: Any = UNSET
    tooth_details: Any = UNSET
    doctor_notes: Any = UNSET
    reception_notes: Any = UNSET


# ── X-ray ──────────────────────────────────────────────────────────────────

@dataclass
class Xray:
    xray_id: str
    visit_id: str
    patient_id: str
    doctor_id: str
    visit_date: str
    content_key: str
    content_type: str
    size: int
    taken_at: int
    taken_by_user_id: Optional[str] = None
    thumb_key: Optional[str] = None
    deleted_at: Optional[int] = None
    created_at: int = 0


@dataclass
class XrayRegistration:
    content_key: str
    content_type: str
    size: int
    taken_at: int
    xray_id: Optional[str] = None
    thumb_key: Optional[str] = None
    taken_by_user_id: Optional[str] = None


# ── Billing / follow-up ────────────────────────────────────────────────────

@dataclass
class BillingLine:
    description: str
    quantity: int
    unit_amount: float


@dataclass
class FollowUpInput:
    follow_up_date: str  # ISO 8601: "YYYY-MM-DD"
    reason: Optional[str] = None
    contact_method: str = 'CALL'


@dataclass
class CheckoutInput:
    items: list
    discount_amount: float = 0
    tax_amount: float = 0
    follow_up: Optional[FollowUpInput] = None
    received_online: Optional[bool] = None
    received_offline: Optional[bool] = None
    allow_zero_billed: bool = False


@dataclass
class BillingRecord:
    visit_id: str
    items: list
    subtotal: float
    discount_amount: float
    tax_amount: float
    total: float
    currency: str = 'INR'
    received_online: Optional[bool] = None
    received_offline: Optional[bool] = None
    created_at: int = 0


@dataclass
class FollowUp:
    followup_id: str
    visit_id: str
    follow_up_date: str
    status: FollowUpStatus = FollowUpStatus.ACTIVE
    reason: Optional[str] = None
    contact_method: str = 'CALL'
    created_at: int = 0
    updated_at: int = 0

    def __post_init__(self):
        self.status = FollowUpStatus(self.status)


# ── Estimation ─────────────────────────────────────────────────────────────

@dataclass
class EstimationLine:
    description: str
    quantity: int
    amount: float


@dataclass
class EstimationInput:
    items: list
    notes: Optional[str] = None
    valid_until: Optional[str] = None


@dataclass
class Estimation:
    estimation_id: str
    estimation_no: str
    patient_id: str
    items: list
    total: float
    currency: str = 'INR'
    notes: Optional[str] = None
    valid_until: Optional[str] = None
    created_by_user_id: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0
