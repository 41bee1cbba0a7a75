"""Unit tests for ClinicPolicy."""
import pytest

from clinic.exceptions import ReceptionNotesForbidden
from clinic.policies import ClinicPolicy, ReceptionNotesPolicy
from clinic.types import Role


def test_defaults():
    policy = ClinicPolicy()
    assert policy.doctor_busy_lock is False
    assert policy.reception_notes is ReceptionNotesPolicy.SHARED
    assert policy.allow_offline_skip_to_done is True


def test_from_settings(settings):
    settings.CLINIC_DOCTOR_BUSY_LOCK = True
    settings.CLINIC_RECEPTION_NOTES_POLICY = 'reception_only'
    settings.CLINIC_ALLOW_OFFLINE_SKIP = False

    policy = ClinicPolicy.from_settings()

    assert policy.doctor_busy_lock is True
    assert policy.reception_notes is ReceptionNotesPolicy.RECEPTION_ONLY
    assert policy.allow_offline_skip_to_done is False


def test_unknown_reception_policy_rejected(settings):
    settings.CLINIC_RECEPTION_NOTES_POLICY = 'everyone'
    with pytest.raises(ValueError):
        ClinicPolicy.from_settings()


class TestReceptionNotes:

    def test_shared_lets_doctors_in(self):
        policy = ClinicPolicy(reception_notes=ReceptionNotesPolicy.SHARED)
        assert policy.can_view_reception_notes(Role.DOCTOR)
        policy.assert_can_edit_reception_notes(Role.DOCTOR)

    def test_reception_only_keeps_doctors_out(self):
        policy = ClinicPolicy(reception_notes=ReceptionNotesPolicy.RECEPTION_ONLY)

        assert not policy.can_view_reception_notes('DOCTOR')
        assert policy.can_view_reception_notes(Role.RECEPTION)
        assert policy.can_view_reception_notes(None)
        with pytest.raises(ReceptionNotesForbidden) as exc_info:
            policy.assert_can_edit_reception_notes(Role.DOCTOR)
        assert exc_info.value.http_status == 403
        policy.assert_can_edit_reception_notes(Role.ADMIN)
