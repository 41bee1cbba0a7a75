"""Unit tests for EstimationRepository."""
from concurrent.futures import ThreadPoolExecutor

import pytest

from clinic.exceptions import EstimationRuleViolation, NotFoundError
from clinic.types import EstimationInput, EstimationLine
from tests.conftest import EstimationInputFactory


class TestCreateEstimation:

    def test_numbers_are_sequential_per_year(self, repos, patient):
        numbers = [repos.estimations.create(patient.patient_id, EstimationInputFactory()).estimation_no
                   for _ in range(3)]
        assert numbers == ['EST/2025/SD/000001', 'EST/2025/SD/000002', 'EST/2025/SD/000003']

    def test_total_is_sum_of_amounts(self, repos, patient):
        estimation = repos.estimations.create(patient.patient_id, EstimationInputFactory(), created_by_user_id='u-1')
        assert estimation.total == 10500
        assert estimation.created_by_user_id == 'u-1'

    def test_concurrent_numbers_unique(self, repos, patient):
        with ThreadPoolExecutor(max_workers=8) as pool:
            created = list(pool.map(
                lambda _: repos.estimations.create(patient.patient_id, EstimationInputFactory()), range(20)))
        assert len({e.estimation_no for e in created}) == 20

    def test_patient_must_exist(self, repos):
        with pytest.raises(NotFoundError):
            repos.estimations.create('ghost', EstimationInputFactory())

    @pytest.mark.parametrize('items', [
        [],
        [EstimationLine('Crown', 0, 6000)],
        [{'description': 'Crown', 'quantity': 1, 'amount': -1}],
    ])
    def test_invalid_lines(self, repos, patient, items):
        with pytest.raises(EstimationRuleViolation):
            repos.estimations.create(patient.patient_id, EstimationInput(items=items))


class TestEstimationCrud:

    def test_list_newest_first(self, repos, patient):
        first = repos.estimations.create(patient.patient_id, EstimationInputFactory())
        second = repos.estimations.create(patient.patient_id, EstimationInputFactory())

        assert [e.estimation_id for e in repos.estimations.list_by_patient(patient.patient_id)] == \
            [second.estimation_id, first.estimation_id]

    def test_update_recomputes_total_and_drops_blank_notes(self, repos, patient):
        estimation = repos.estimations.create(patient.patient_id, EstimationInputFactory(valid_until='2025-04-10'))

        updated = repos.estimations.update(patient.patient_id, estimation.estimation_id, EstimationInput(
            items=[EstimationLine('Scaling', 1, 1200)], notes='  ', valid_until='2025-05-01'))

        stored = repos.estimations.get(patient.patient_id, estimation.estimation_id)
        assert updated.total == stored.total == 1200
        assert stored.notes is None
        assert stored.valid_until == '2025-05-01'
        assert stored.estimation_no == estimation.estimation_no

    def test_update_missing(self, repos, patient):
        with pytest.raises(NotFoundError):
            repos.estimations.update(patient.patient_id, 'ghost', EstimationInputFactory())

    def test_delete(self, repos, patient):
        estimation = repos.estimations.create(patient.patient_id, EstimationInputFactory())

        assert repos.estimations.delete(patient.patient_id, estimation.estimation_id) is True
        assert repos.estimations.delete(patient.patient_id, estimation.estimation_id) is False
        assert repos.estimations.list_by_patient(patient.patient_id) == []
