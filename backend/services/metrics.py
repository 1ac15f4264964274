"""
KPIs and chart data derived from a store snapshot. Pure functions: safe to
recompute on every read, never mutate anything.
"""

from typing import Dict, FrozenSet, List, NamedTuple

from pydantic import BaseModel

from models import Requirement, TestCase, TestCaseStatus
from storage import Snapshot


class KPIs(BaseModel):
    total_requirements: int
    test_cases_generated: int
    covered_requirements: int
    overall_coverage: int  # percent, 0 when there are no requirements
    approved_test_cases: int


class ChartPoint(NamedTuple):
    name: str
    value: int


class TraceabilityRow(BaseModel):
    requirement: Requirement
    linked_test_cases: List[TestCase]

    @property
    def covered(self) -> bool:
        return bool(self.linked_test_cases)


def _referenced(snap: Snapshot) -> FrozenSet[str]:
    return frozenset(tc.requirement_id for tc in snap.test_cases)


def covered_requirements(snap: Snapshot) -> int:
    referenced = _referenced(snap)
    return sum(1 for r in snap.requirements if r.id in referenced)


def overall_coverage(covered: int, total: int) -> int:
    if total <= 0:
        return 0
    # round half up, not Python's banker's rounding
    return int(covered * 100 / total + 0.5)


def kpis(snap: Snapshot) -> KPIs:
    total = len(snap.requirements)
    covered = covered_requirements(snap)
    return KPIs(
        total_requirements=total,
        test_cases_generated=len(snap.test_cases),
        covered_requirements=covered,
        overall_coverage=overall_coverage(covered, total),
        approved_test_cases=sum(1 for tc in snap.test_cases if tc.status is TestCaseStatus.APPROVED),
    )


def requirement_coverage_data(snap: Snapshot) -> List[ChartPoint]:
    covered = covered_requirements(snap)
    return [
        ChartPoint("Covered", covered),
        ChartPoint("Uncovered", len(snap.requirements) - covered),
    ]


def test_case_status_data(snap: Snapshot) -> List[ChartPoint]:
    counts: Dict[TestCaseStatus, int] = {s: 0 for s in TestCaseStatus}
    for tc in snap.test_cases:
        counts[tc.status] += 1
    return [ChartPoint(s.value, n) for s, n in counts.items() if n > 0]


def test_cases_for(snap: Snapshot, requirement_id: str) -> List[TestCase]:
    return [tc for tc in snap.test_cases if tc.requirement_id == requirement_id]


def traceability_matrix(snap: Snapshot) -> List[TraceabilityRow]:
    by_req: Dict[str, List[TestCase]] = {}
    for tc in snap.test_cases:
        by_req.setdefault(tc.requirement_id, []).append(tc)
    return [TraceabilityRow(requirement=r, linked_test_cases=by_req.get(r.id, [])) for r in snap.requirements]
