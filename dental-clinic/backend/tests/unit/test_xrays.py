"""Unit tests for XrayRepository."""
import pytest

from clinic import keys
from clinic.exceptions import NotFoundError, ValidationError, XrayConflictError
from tests.conftest import VisitCreateFactory, XrayRegistrationFactory


class TestRegisterXray:

    def test_both_copies_written(self, repos, store, visit):
        xray = repos.xrays.register(visit.visit_id, XrayRegistrationFactory(xray_id='x-1'))

        assert xray.patient_id == visit.patient_id
        assert xray.doctor_id == visit.doctor_id
        assert store.get(keys.xray_key('x-1'))['content_key'] == xray.content_key
        assert store.get(keys.visit_xray_key(visit.visit_id, 'x-1')) is not None

    def test_generated_id(self, repos, visit):
        xray = repos.xrays.register(visit.visit_id, XrayRegistrationFactory())
        assert xray.xray_id
        assert repos.xrays.get_by_id(xray.xray_id).visit_id == visit.visit_id

    def test_reused_id_conflicts_even_with_same_content(self, repos, visit):
        data = XrayRegistrationFactory(xray_id='x-1')
        repos.xrays.register(visit.visit_id, data)

        with pytest.raises(XrayConflictError) as exc_info:
            repos.xrays.register(visit.visit_id, data)
        assert exc_info.value.code == 'XRAY_CONFLICT'
        assert exc_info.value.http_status == 409

    def test_reused_id_on_another_visit_conflicts(self, repos, patient, visit):
        other = repos.visits.create(VisitCreateFactory(patient_id=patient.patient_id))
        repos.xrays.register(visit.visit_id, XrayRegistrationFactory(xray_id='x-1'))

        with pytest.raises(XrayConflictError):
            repos.xrays.register(other.visit_id, XrayRegistrationFactory(xray_id='x-1'))
        assert repos.xrays.list_by_visit(other.visit_id) == []

    def test_unknown_visit(self, repos):
        with pytest.raises(NotFoundError):
            repos.xrays.register('ghost', XrayRegistrationFactory())

    def test_content_key_required(self, repos, visit):
        with pytest.raises(ValidationError):
            repos.xrays.register(visit.visit_id, XrayRegistrationFactory(content_key=''))


class TestXrayReads:

    def test_list_by_visit_ordered_by_taken_at(self, repos, visit):
        late = repos.xrays.register(visit.visit_id, XrayRegistrationFactory(taken_at=2000))
        early = repos.xrays.register(visit.visit_id, XrayRegistrationFactory(taken_at=1000))

        assert [x.xray_id for x in repos.xrays.list_by_visit(visit.visit_id)] == [early.xray_id, late.xray_id]

    def test_soft_deleted_hidden(self, repos, store, visit):
        xray = repos.xrays.register(visit.visit_id, XrayRegistrationFactory())
        store.update_if_matches(keys.xray_key(xray.xray_id), set={'deleted_at': 1})

        assert repos.xrays.get_by_id(xray.xray_id) is None
        with pytest.raises(NotFoundError):
            repos.xrays.require(xray.xray_id)
