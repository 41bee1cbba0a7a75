"""
Sequence generator.

Counters are single items (``COUNTER#<scope>`` / ``META``) advanced with one
atomic add at the storage boundary, so concurrent callers never see the same
value. Formatting the number into a document string is the caller's business;
the helpers below are pure.
"""

from . import keys
from .clock import Clock
from .types import VisitTag


class SequenceGenerator:

    def __init__(self, store, clock=None):
        self.store = store
        self.clock = clock or Clock()

    def next_value(self, scope: str) -> int:
        return self.store.increment(
            keys.counter_key(scope),
            'last',
            1,
            extra={'entity_type': 'COUNTER', 'updated_at': self.clock.now_ms()},
        )

    def next_estimation(self, year: int) -> int:
        return self.next_value(keys.estimation_scope(year))

    def next_opd(self, visit_date: str, tag: VisitTag) -> tuple:
        """(daily sequence, per-tag daily sequence) for an OPD number."""
        daily = self.next_value(keys.opd_daily_scope(visit_date))
        per_tag = self.next_value(keys.opd_tag_scope(visit_date, VisitTag(tag).value))
        return daily, per_tag


def format_estimation_no(year: int, seq: int) -> str:
    return f'EST/{year}/SD/{seq:06d}'


def format_opd_no(visit_date: str, daily_seq: int, tag, tag_seq: int) -> str:
    yy, mm, dd = visit_date[2:4], visit_date[5:7], visit_date[8:10]
    label = 'SDFU' if VisitTag(tag) is VisitTag.FOLLOW_UP else 'SDNEW'
    return f'{yy}/{mm}/{dd}/{daily_seq:03d}/{label}/{tag_seq:03d}'
