"""
Shared fixtures for all tests.

factory-boy factories live here so both unit/ and integration/ can import them.
They build the input dataclasses the repositories accept; persistence always
goes through a fresh MemoryStore per test.
"""
import itertools
from datetime import datetime, timedelta, timezone as dt_timezone

import factory
import pytest

from clinic.clock import Clock
from clinic.policies import ClinicPolicy
from clinic.repositories import build_repositories
from clinic.store import MemoryStore
from clinic.types import (
    BillingLine,
    CheckoutInput,
    EstimationInput,
    EstimationLine,
    FollowUpInput,
    PatientCreate,
    PrescriptionSave,
    VisitCreate,
    VisitStatus,
    XrayRegistration,
)

# 2025-03-10 11:00 Asia/Kolkata
START = datetime(2025, 3, 10, 5, 30, tzinfo=dt_timezone.utc)
TODAY = '2025-03-10'


class FixedClock(Clock):
    """Starts at START and moves forward one millisecond per reading."""

    def __init__(self, start=START, tz_name='Asia/Kolkata'):
        super().__init__(tz_name)
        self.start = start
        self._ticks = itertools.count()

    def now(self):
        return self.start + timedelta(milliseconds=next(self._ticks))


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

class PatientCreateFactory(factory.Factory):
    class Meta:
        model = PatientCreate

    name = factory.Sequence(lambda n: f'Patient {n}')
    phone = factory.Sequence(lambda n: f'98{n:08d}')
    dob = '1990-01-15'
    gender = 'F'


class VisitCreateFactory(factory.Factory):
    class Meta:
        model = VisitCreate

    patient_id = 'set-me'
    doctor_id = 'doc-1'
    reason = 'Toothache'


class PrescriptionSaveFactory(factory.Factory):
    class Meta:
        model = PrescriptionSave

    json_key = factory.Sequence(lambda n: f'rx/payload-{n}.json')
    lines = factory.LazyFunction(lambda: [{'medicine': 'Amoxicillin 500mg', 'dosage': '1-0-1', 'days': 5}])


class XrayRegistrationFactory(factory.Factory):
    class Meta:
        model = XrayRegistration

    content_key = factory.Sequence(lambda n: f'xray/{n}.jpg')
    content_type = 'image/jpeg'
    size = 204800
    taken_at = factory.Sequence(lambda n: 1741584600000 + n)


class BillingLineFactory(factory.Factory):
    class Meta:
        model = BillingLine

    description = 'Consultation'
    quantity = 1
    unit_amount = 500


class CheckoutInputFactory(factory.Factory):
    class Meta:
        model = CheckoutInput

    items = factory.LazyFunction(lambda: [
        BillingLine('Consultation', 1, 500),
        BillingLine('IOPA X-ray', 1, 300),
    ])
    discount_amount = 100
    tax_amount = 0


class FollowUpInputFactory(factory.Factory):
    class Meta:
        model = FollowUpInput

    follow_up_date = '2025-03-17'
    reason = 'Review after scaling'


class EstimationInputFactory(factory.Factory):
    class Meta:
        model = EstimationInput

    items = factory.LazyFunction(lambda: [
        EstimationLine('Root canal treatment', 1, 4500),
        EstimationLine('Ceramic crown', 1, 6000),
    ])
    notes = 'Valid for one month'


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def policy():
    return ClinicPolicy()


@pytest.fixture
def make_repos(store, clock):
    """Build repositories over the shared store with a custom policy."""
    def _make(policy=None):
        return build_repositories(store=store, policy=policy or ClinicPolicy(), clock=clock)
    return _make


@pytest.fixture
def repos(make_repos, policy):
    return make_repos(policy)


@pytest.fixture
def patient(repos):
    return repos.patients.create(PatientCreateFactory(name='Asha Rao', phone='98765 43210'))


@pytest.fixture
def visit(repos, patient):
    return repos.visits.create(VisitCreateFactory(patient_id=patient.patient_id))


@pytest.fixture
def done_visit(repos, visit):
    repos.visits.update_status(visit.visit_id, VisitStatus.IN_PROGRESS)
    return repos.visits.update_status(visit.visit_id, VisitStatus.DONE)
