from dataclasses import dataclass

from ..clock import Clock
from ..policies import ClinicPolicy
from ..sequences import SequenceGenerator
from ..store import get_store
from .billing import BillingRepository
from .estimations import EstimationRepository
from .followups import FollowUpRepository
from .patients import PatientRepository
from .prescriptions import PrescriptionRepository
from .visits import VisitRepository
from .xrays import XrayRepository


@dataclass
class Repositories:
    store: object
    clock: Clock
    policy: ClinicPolicy
    sequences: SequenceGenerator
    patients: PatientRepository
    visits: VisitRepository
    prescriptions: PrescriptionRepository
    xrays: XrayRepository
    followups: FollowUpRepository
    billing: BillingRepository
    estimations: EstimationRepository


def build_repositories(store=None, policy=None, clock=None) -> Repositories:
    """Wire every repository onto one store. Defaults come from Django settings."""
    store = store if store is not None else get_store()
    policy = policy or ClinicPolicy.from_settings()
    clock = clock or Clock()
    sequences = SequenceGenerator(store, clock)

    common = {'clock': clock, 'policy': policy}
    patients = PatientRepository(store, **common)
    visits = VisitRepository(store, sequences=sequences, **common)
    followups = FollowUpRepository(store, visits, **common)
    return Repositories(
        store=store,
        clock=clock,
        policy=policy,
        sequences=sequences,
        patients=patients,
        visits=visits,
        prescriptions=PrescriptionRepository(store, visits, **common),
        xrays=XrayRepository(store, visits, **common),
        followups=followups,
        billing=BillingRepository(store, visits, patients, followups, **common),
        estimations=EstimationRepository(store, patients, sequences=sequences, **common),
    )


__all__ = [
    'BillingRepository',
    'EstimationRepository',
    'FollowUpRepository',
    'PatientRepository',
    'PrescriptionRepository',
    'Repositories',
    'VisitRepository',
    'XrayRepository',
    'build_repositories',
]
