"""
Key-space designer.

Every entity lives in the single table as a primary item keyed by its natural
id plus denormalized copies keyed for the other access patterns (by visit, by
patient, by date, by doctor+date). All keys here are pure functions of stored
attributes, so reads can recompute exactly what writes produced.
"""

import re

from django.conf import settings

from .store.types import Key

META = 'META'
PROFILE = 'PROFILE'

_NON_DIGITS = re.compile(r'\D')
_WHITESPACE = re.compile(r'\s+')


# ── normalisation for uniqueness keys ─────────────────────────────────────

def normalize_phone(raw):
    """Digits only, last 10 kept, country prefix added. Empty input gives ''."""
    digits = _NON_DIGITS.sub('', raw or '')
    if not digits:
        return ''
    country = getattr(settings, 'CLINIC_PHONE_COUNTRY_CODE', '91')
    return f'+{country}{digits[-10:]}'


def normalize_name(name):
    return _WHITESPACE.sub(' ', (name or '').strip()).casefold()


# ── patient ────────────────────────────────────────────────────────────────

def patient_key(patient_id: str) -> Key:
    return Key(f'PATIENT#{patient_id}', PROFILE)


def patient_phone_key(normalized_phone: str, normalized_name: str) -> Key:
    return Key(f'PATIENT_PHONE#{normalized_phone}#{normalized_name}', PROFILE)


# ── visit ──────────────────────────────────────────────────────────────────

def visit_key(visit_id: str) -> Key:
    return Key(f'VISIT#{visit_id}', META)


def patient_visit_key(patient_id: str, visit_id: str) -> Key:
    return Key(f'PATIENT#{patient_id}', f'VISIT#{visit_id}')


def date_visit_key(visit_date: str, visit_id: str) -> Key:
    return Key(f'DATE#{visit_date}', f'VISIT#{visit_id}')


def doctor_date_partition(doctor_id: str, visit_date: str) -> str:
    return f'DOCTOR#{doctor_id}#DATE#{visit_date}'


def doctor_date_visit_key(doctor_id: str, visit_date: str, visit_id: str) -> Key:
    return Key(doctor_date_partition(doctor_id, visit_date), f'VISIT#{visit_id}')


def visit_keys(visit) -> list:
    """All physical keys of one visit; the meta item comes first."""
    return [
        visit_key(visit.visit_id),
        patient_visit_key(visit.patient_id, visit.visit_id),
        date_visit_key(visit.visit_date, visit.visit_id),
        doctor_date_visit_key(visit.doctor_id, visit.visit_date, visit.visit_id),
    ]


def doctor_day_lock_key(doctor_id: str, visit_date: str) -> Key:
    return Key(f'DOCTOR_DAY#{doctor_id}#{visit_date}', 'LOCK')


# ── prescription ───────────────────────────────────────────────────────────

def rx_id_for(visit_id: str, version: int) -> str:
    # deterministic: concurrent saves of the same version land on the same key
    return f'{visit_id}#v{version}'


def rx_key(rx_id: str) -> Key:
    return Key(f'RX#{rx_id}', META)


def visit_rx_key(visit_id: str, rx_id: str) -> Key:
    return Key(f'VISIT#{visit_id}', f'RX#{rx_id}')


# ── x-ray ──────────────────────────────────────────────────────────────────

def xray_key(xray_id: str) -> Key:
    return Key(f'XRAY#{xray_id}', META)


def visit_xray_key(visit_id: str, xray_id: str) -> Key:
    return Key(f'VISIT#{visit_id}', f'XRAY#{xray_id}')


# ── billing / follow-up ────────────────────────────────────────────────────

def billing_key(visit_id: str) -> Key:
    return Key(f'VISIT#{visit_id}', 'BILLING')


def followup_key(visit_id: str, followup_id: str) -> Key:
    return Key(f'VISIT#{visit_id}', f'FOLLOWUP#{followup_id}')


def date_followup_key(follow_up_date: str, followup_id: str) -> Key:
    return Key(f'DATE#{follow_up_date}', f'FOLLOWUP#{followup_id}')


# ── estimation ─────────────────────────────────────────────────────────────

def patient_estimation_key(patient_id: str, estimation_id: str) -> Key:
    return Key(f'PATIENT#{patient_id}', f'ESTIMATION#{estimation_id}')


# ── counters ───────────────────────────────────────────────────────────────

def counter_key(scope: str) -> Key:
    return Key(f'COUNTER#{scope}', META)


def estimation_scope(year: int) -> str:
    return f'ESTIMATION#{year}'


def opd_daily_scope(visit_date: str) -> str:
    return f'OPD#{visit_date}'


def opd_tag_scope(visit_date: str, tag: str) -> str:
    return f'OPD_TAG#{visit_date}#{tag}'
