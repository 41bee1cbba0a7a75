"""
Unit tests for VisitRepository.

1. create 写四份副本，属性完全一致；OPD 号来自两个计数器
2. F（复诊）visit 的 anchor 校验
3. 状态机：合法迁移 / 非法迁移 / 线下跳步策略
4. 并发迁移只有一个赢家，输家拿到 InvalidTransitionError
5. doctor-busy lock 策略开 / 关
6. 列表查询
"""
from concurrent.futures import ThreadPoolExecutor

import pytest

from clinic import keys
from clinic.exceptions import (
    DoctorBusyError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionFailed,
    ValidationError,
)
from clinic.policies import ClinicPolicy
from clinic.types import VisitStatus, VisitTag
from tests.conftest import TODAY, PatientCreateFactory, VisitCreateFactory


def physical_copies(store, visit):
    return [store.get(key) for key in keys.visit_keys(visit)]


def strip_keys(item):
    return {k: v for k, v in item.items() if k not in ('pk', 'sk')}


# -------------------------------------------------------------------
# create
# -------------------------------------------------------------------

class TestCreateVisit:

    def test_writes_four_identical_copies(self, repos, store, patient):
        visit = repos.visits.create(VisitCreateFactory(patient_id=patient.patient_id))

        copies = physical_copies(store, visit)
        assert all(copy is not None for copy in copies)
        assert all(strip_keys(copy) == strip_keys(copies[0]) for copy in copies)
        assert copies[0]['status'] == 'QUEUED'
        assert copies[0]['entity_type'] == 'VISIT'

    def test_visit_date_is_clinic_local_today(self, visit):
        assert visit.visit_date == TODAY

    def test_opd_numbers_count_per_day_and_tag(self, repos, patient):
        first = repos.visits.create(VisitCreateFactory(patient_id=patient.patient_id))
        second = repos.visits.create(VisitCreateFactory(patient_id=patient.patient_id))
        follow_up = repos.visits.create(VisitCreateFactory(
            patient_id=patient.patient_id, tag=VisitTag.FOLLOW_UP, anchor_visit_id=first.visit_id,
        ))

        assert first.opd_no == '25/03/10/001/SDNEW/001'
        assert second.opd_no == '25/03/10/002/SDNEW/002'
        assert follow_up.opd_no == '25/03/10/003/SDFU/001'

    def test_unknown_patient(self, repos):
        with pytest.raises(NotFoundError):
            repos.visits.create(VisitCreateFactory(patient_id='ghost'))

    def test_deleted_patient(self, repos, patient):
        repos.patients.soft_delete(patient.patient_id)
        with pytest.raises(NotFoundError):
            repos.visits.create(VisitCreateFactory(patient_id=patient.patient_id))


class TestFollowUpAnchor:

    def test_anchor_required(self, repos, patient):
        with pytest.raises(ValidationError) as exc_info:
            repos.visits.create(VisitCreateFactory(patient_id=patient.patient_id, tag='F'))
        assert exc_info.value.code == 'ANCHOR_REQUIRED'

    def test_anchor_must_exist(self, repos, patient):
        with pytest.raises(ValidationError) as exc_info:
            repos.visits.create(VisitCreateFactory(
                patient_id=patient.patient_id, tag='F', anchor_visit_id='missing'))
        assert exc_info.value.code == 'ANCHOR_NOT_FOUND'

    def test_anchor_must_belong_to_patient(self, repos, visit):
        other = repos.patients.create(PatientCreateFactory())
        with pytest.raises(ValidationError) as exc_info:
            repos.visits.create(VisitCreateFactory(
                patient_id=other.patient_id, tag='F', anchor_visit_id=visit.visit_id))
        assert exc_info.value.code == 'ANCHOR_PATIENT_MISMATCH'

    def test_anchor_must_be_new_visit(self, repos, patient, visit):
        follow_up = repos.visits.create(VisitCreateFactory(
            patient_id=patient.patient_id, tag='F', anchor_visit_id=visit.visit_id))

        with pytest.raises(ValidationError) as exc_info:
            repos.visits.create(VisitCreateFactory(
                patient_id=patient.patient_id, tag='F', anchor_visit_id=follow_up.visit_id))
        assert exc_info.value.code == 'ANCHOR_NOT_NEW'


# -------------------------------------------------------------------
# state machine
# -------------------------------------------------------------------

class TestStatusTransitions:

    def test_canonical_path(self, repos, store, visit):
        repos.visits.update_status(visit.visit_id, VisitStatus.IN_PROGRESS)
        done = repos.visits.update_status(visit.visit_id, 'DONE')

        assert done.status is VisitStatus.DONE
        assert all(copy['status'] == 'DONE' for copy in physical_copies(store, visit))

    def test_queued_to_done_rejected(self, repos, visit):
        with pytest.raises(InvalidTransitionError):
            repos.visits.update_status(visit.visit_id, VisitStatus.DONE)

    def test_done_to_in_progress_rejected(self, repos, done_visit):
        with pytest.raises(InvalidTransitionError):
            repos.visits.update_status(done_visit.visit_id, VisitStatus.IN_PROGRESS)

    def test_same_state_rejected(self, repos, visit):
        with pytest.raises(InvalidTransitionError):
            repos.visits.update_status(visit.visit_id, VisitStatus.QUEUED)

    def test_missing_visit(self, repos):
        with pytest.raises(NotFoundError):
            repos.visits.update_status('ghost', VisitStatus.IN_PROGRESS)

    def test_offline_visit_may_skip(self, repos, patient):
        offline = repos.visits.create(VisitCreateFactory(patient_id=patient.patient_id, is_offline=True))
        done = repos.visits.update_status(offline.visit_id, VisitStatus.DONE)
        assert done.status is VisitStatus.DONE

    def test_offline_skip_disabled_by_policy(self, make_repos, patient):
        repos = make_repos(ClinicPolicy(allow_offline_skip_to_done=False))
        offline = repos.visits.create(VisitCreateFactory(patient_id=patient.patient_id, is_offline=True))
        with pytest.raises(InvalidTransitionError):
            repos.visits.update_status(offline.visit_id, VisitStatus.DONE)

    def test_concurrent_start_has_one_winner(self, repos, visit):
        def start(_):
            try:
                repos.visits.update_status(visit.visit_id, VisitStatus.IN_PROGRESS)
                return 'ok'
            except InvalidTransitionError:
                return 'lost'

        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(start, range(6)))

        assert results.count('ok') == 1
        assert results.count('lost') == 5
        assert repos.visits.get_by_id(visit.visit_id).status is VisitStatus.IN_PROGRESS

    def test_missing_projection_is_integrity_error(self, repos, store, visit):
        store.delete(keys.date_visit_key(visit.visit_date, visit.visit_id))

        with pytest.raises(PreconditionFailed):
            repos.visits.update_status(visit.visit_id, VisitStatus.IN_PROGRESS)
        assert repos.visits.get_by_id(visit.visit_id).status is VisitStatus.QUEUED


class TestDoctorBusyLock:

    def test_lock_off_allows_parallel_visits(self, repos, patient):
        a = repos.visits.create(VisitCreateFactory(patient_id=patient.patient_id))
        b = repos.visits.create(VisitCreateFactory(patient_id=patient.patient_id))

        repos.visits.update_status(a.visit_id, VisitStatus.IN_PROGRESS)
        repos.visits.update_status(b.visit_id, VisitStatus.IN_PROGRESS)

    def test_lock_on_blocks_second_visit_until_done(self, make_repos, patient):
        repos = make_repos(ClinicPolicy(doctor_busy_lock=True))
        a = repos.visits.create(VisitCreateFactory(patient_id=patient.patient_id))
        b = repos.visits.create(VisitCreateFactory(patient_id=patient.patient_id))
        repos.visits.update_status(a.visit_id, VisitStatus.IN_PROGRESS)

        with pytest.raises(DoctorBusyError) as exc_info:
            repos.visits.update_status(b.visit_id, VisitStatus.IN_PROGRESS)
        assert exc_info.value.detail['busy_visit_id'] == a.visit_id
        assert repos.visits.get_by_id(b.visit_id).status is VisitStatus.QUEUED

        repos.visits.update_status(a.visit_id, VisitStatus.DONE)
        repos.visits.update_status(b.visit_id, VisitStatus.IN_PROGRESS)

    def test_lock_is_per_doctor(self, make_repos, patient):
        repos = make_repos(ClinicPolicy(doctor_busy_lock=True))
        a = repos.visits.create(VisitCreateFactory(patient_id=patient.patient_id, doctor_id='doc-1'))
        b = repos.visits.create(VisitCreateFactory(patient_id=patient.patient_id, doctor_id='doc-2'))

        repos.visits.update_status(a.visit_id, VisitStatus.IN_PROGRESS)
        repos.visits.update_status(b.visit_id, VisitStatus.IN_PROGRESS)


# -------------------------------------------------------------------
# reads
# -------------------------------------------------------------------

class TestVisitLists:

    def test_list_by_patient_newest_first(self, repos, patient):
        first = repos.visits.create(VisitCreateFactory(patient_id=patient.patient_id))
        second = repos.visits.create(VisitCreateFactory(patient_id=patient.patient_id))

        assert [v.visit_id for v in repos.visits.list_by_patient(patient.patient_id)] == \
            [second.visit_id, first.visit_id]

    def test_list_by_date_with_status_filter(self, repos, patient):
        a = repos.visits.create(VisitCreateFactory(patient_id=patient.patient_id))
        b = repos.visits.create(VisitCreateFactory(patient_id=patient.patient_id))
        repos.visits.update_status(b.visit_id, VisitStatus.IN_PROGRESS)

        assert [v.visit_id for v in repos.visits.list_by_date(TODAY)] == [a.visit_id, b.visit_id]
        assert [v.visit_id for v in repos.visits.list_by_date(TODAY, 'QUEUED')] == [a.visit_id]

    def test_doctor_queue(self, repos, patient):
        mine = repos.visits.create(VisitCreateFactory(patient_id=patient.patient_id, doctor_id='doc-1'))
        repos.visits.create(VisitCreateFactory(patient_id=patient.patient_id, doctor_id='doc-2'))

        queue = repos.visits.list_doctor_queue('doc-1', TODAY, VisitStatus.QUEUED)
        assert [v.visit_id for v in queue] == [mine.visit_id]
