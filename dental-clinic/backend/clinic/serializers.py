"""
Response serializers — entity dataclass → JSON-able dict (camelCase).

只负责「输出格式化」，不做任何解析或校验。
前台备注是否对医生可见由 ClinicPolicy 决定。
"""

from .policies import ClinicPolicy


def _enum(value):
    return value.value if value is not None and hasattr(value, 'value') else value


def serialize_patient(patient):
    return {
        'patientId': patient.patient_id,
        'name': patient.name,
        'phone': patient.phone,
        'dob': patient.dob,
        'gender': patient.gender,
        'isDeleted': patient.is_deleted,
        'createdAt': patient.created_at,
        'updatedAt': patient.updated_at,
    }


def serialize_visit(visit):
    return {
        'visitId': visit.visit_id,
        'patientId': visit.patient_id,
        'doctorId': visit.doctor_id,
        'visitDate': visit.visit_date,
        'status': _enum(visit.status),
        'reason': visit.reason,
        'opdNo': visit.opd_no,
        'tag': _enum(visit.tag),
        'zeroBilled': visit.zero_billed,
        'isOffline': visit.is_offline,
        'anchorVisitId': visit.anchor_visit_id,
        'billingAmount': visit.billing_amount,
        'receivedOnline': visit.received_online,
        'receivedOffline': visit.received_offline,
        'currentRxId': visit.current_rx_id,
        'currentRxVersion': visit.current_rx_version,
        'createdAt': visit.created_at,
        'updatedAt': visit.updated_at,
    }


def serialize_prescription(rx, role=None, policy=None):
    """role=None 表示内部调用，总能看到前台备注。"""
    policy = policy or ClinicPolicy.from_settings()
    body = {
        'rxId': rx.rx_id,
        'visitId': rx.visit_id,
        'patientId': rx.patient_id,
        'visitDate': rx.visit_date,
        'version': rx.version,
        'jsonKey': rx.json_key,
        'lines': rx.lines,
        'toothDetails': rx.tooth_details,
        'doctorNotes': rx.doctor_notes,
        'createdAt': rx.created_at,
        'updatedAt': rx.updated_at,
    }
    if policy.can_view_reception_notes(role):
        body['receptionNotes'] = rx.reception_notes
    return body


def serialize_xray(xray):
    return {
        'xrayId': xray.xray_id,
        'visitId': xray.visit_id,
        'patientId': xray.patient_id,
        'doctorId': xray.doctor_id,
        'visitDate': xray.visit_date,
        'contentKey': xray.content_key,
        'contentType': xray.content_type,
        'size': xray.size,
        'takenAt': xray.taken_at,
        'takenByUserId': xray.taken_by_user_id,
        'thumbKey': xray.thumb_key,
        'createdAt': xray.created_at,
    }


def serialize_billing(record):
    return {
        'visitId': record.visit_id,
        'items': [
            {
                'description': item['description'],
                'quantity': item['quantity'],
                'unitAmount': item['unit_amount'],
                'lineTotal': item.get('line_total'),
            }
            for item in record.items
        ],
        'subtotal': record.subtotal,
        'discountAmount': record.discount_amount,
        'taxAmount': record.tax_amount,
        'total': record.total,
        'currency': record.currency,
        'receivedOnline': record.received_online,
        'receivedOffline': record.received_offline,
        'createdAt': record.created_at,
    }


def serialize_followup(followup):
    return {
        'followupId': followup.followup_id,
        'visitId': followup.visit_id,
        'followUpDate': followup.follow_up_date,
        'status': _enum(followup.status),
        'reason': followup.reason,
        'contactMethod': followup.contact_method,
        'createdAt': followup.created_at,
        'updatedAt': followup.updated_at,
    }


def serialize_estimation(estimation):
    return {
        'estimationId': estimation.estimation_id,
        'estimationNo': estimation.estimation_no,
        'patientId': estimation.patient_id,
        'items': estimation.items,
        'total': estimation.total,
        'currency': estimation.currency,
        'notes': estimation.notes,
        'validUntil': estimation.valid_until,
        'createdByUserId': estimation.created_by_user_id,
        'createdAt': estimation.created_at,
        'updatedAt': estimation.updated_at,
    }


def serialize_list(items, serializer, key):
    """Wrap a list the way list endpoints return it: {'count': n, <key>: [...]}."""
    results = [serializer(item) for item in items]
    return {'count': len(results), key: results}
