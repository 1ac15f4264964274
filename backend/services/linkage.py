import logging
from typing import Dict, FrozenSet, Iterable, List, NamedTuple, Optional, Sequence
from uuid import uuid4

from config import Settings
from models import (
    Document,
    InvalidInputError,
    LinkMethod,
    Priority,
    Requirement,
    RequirementStatus,
    Severity,
    TestCase,
    TestCaseStatus,
)
from storage import EntityStore, Snapshot

logger = logging.getLogger("reqtrace")


def new_test_case_id() -> str:
    return f"TC-{uuid4().hex[:8].upper()}"


class CascadeResult(NamedTuple):
    document: Document
    requirement_ids: FrozenSet[str]
    test_case_ids: FrozenSet[str]


class LinkageMaintainer:
    """
    Keeps Requirement.status in step with the test cases that reference it.

    Mapped/Unmapped is a projection of "at least one test case points here".
    Needs Review is a manual state; with preserve_needs_review (the default)
    no automatic rule touches it.
    Every change to test-case membership goes through this class so the
    projection is updated in the same store mutation.
    """

    def __init__(self, store: EntityStore, preserve_needs_review: Optional[bool] = None):
        self.store = store
        self.preserve_needs_review = (
            Settings.PRESERVE_NEEDS_REVIEW if preserve_needs_review is None else preserve_needs_review
        )

    # -------------------- projection --------------------

    def _with_status(self, req: Requirement, status: RequirementStatus) -> Requirement:
        if req.status is status:
            return req
        if req.status.is_manual and self.preserve_needs_review:
            return req
        return req.model_copy(update={"status": status})

    def _settle(self, req: Requirement, covered_ids: FrozenSet[str]) -> Requirement:
        target = RequirementStatus.MAPPED if req.id in covered_ids else RequirementStatus.UNMAPPED
        return self._with_status(req, target)

    @staticmethod
    def covered_ids(test_cases: Iterable[TestCase]) -> FrozenSet[str]:
        return frozenset(tc.requirement_id for tc in test_cases)

    def settle(self, requirement_ids: Optional[Iterable[str]] = None) -> None:
        """Recompute the derived status of the given requirements (all when None)."""
        wanted = None if requirement_ids is None else set(requirement_ids)

        def tx(snap: Snapshot) -> Dict[str, list]:
            covered = self.covered_ids(snap.test_cases)
            return {
                "requirements": [
                    self._settle(r, covered) if wanted is None or r.id in wanted else r
                    for r in snap.requirements
                ]
            }

        self.store.apply(tx)

    # -------------------- test-case membership --------------------

    def add_test_cases(
        self, cases: Sequence[TestCase], mark_mapped: Iterable[str] = ()
    ) -> List[TestCase]:
        """
        Append test cases and mark their requirements Mapped in one mutation.
        mark_mapped names extra requirement ids to mark Mapped whether or not
        any of the new cases reference them (batch generation is optimistic).
        """
        cases = list(cases)
        to_map = {tc.requirement_id for tc in cases} | set(mark_mapped)
        if not cases and not to_map:
            return []

        def tx(snap: Snapshot) -> Dict[str, list]:
            return {
                "test_cases": list(snap.test_cases) + cases,
                "requirements": [
                    self._with_status(r, RequirementStatus.MAPPED) if r.id in to_map else r
                    for r in snap.requirements
                ],
            }

        self.store.apply(tx)
        return cases

    def create_test_case(
        self,
        requirement_id: str,
        title: str,
        steps: str,
        expected_result: str,
        description: Optional[str] = None,
        priority: Priority = Priority.MEDIUM,
        severity: Severity = Severity.MINOR,
        preconditions: str = "",
        actual_result: Optional[str] = None,
    ) -> TestCase:
        if not (requirement_id or "").strip():
            raise InvalidInputError("A test case must reference a requirement.")
        if not (title or "").strip():
            raise InvalidInputError("Test case title is required.")
        if self.store.find("requirements", requirement_id) is None:
            raise InvalidInputError(f"Unknown requirement {requirement_id}.")

        tc = TestCase(
            id=new_test_case_id(),
            title=title.strip(),
            description=description,
            requirement_id=requirement_id,
            status=TestCaseStatus.DRAFT,
            priority=Priority(priority),
            severity=Severity(severity),
            preconditions=preconditions or "",
            steps=steps or "",
            expected_result=expected_result or "",
            actual_result=actual_result,
            link_method=LinkMethod.MANUAL,
        )
        self.add_test_cases([tc])
        logger.info("Test case %s created for %s", tc.id, requirement_id)
        return tc

    def update_test_case(self, updated: TestCase) -> Optional[TestCase]:
        """Replace a test case wholesale; both the old and the new requirement are recomputed."""
        found: List[TestCase] = []

        def tx(snap: Snapshot) -> Dict[str, list]:
            old = next((tc for tc in snap.test_cases if tc.id == updated.id), None)
            if old is None:
                return {}
            found.append(old)
            test_cases = [updated if tc.id == updated.id else tc for tc in snap.test_cases]
            covered = self.covered_ids(test_cases)
            touched = {old.requirement_id, updated.requirement_id}
            return {
                "test_cases": test_cases,
                "requirements": [
                    self._settle(r, covered) if r.id in touched else r for r in snap.requirements
                ],
            }

        self.store.apply(tx)
        if not found:
            return None
        if found[0].requirement_id != updated.requirement_id:
            logger.info(
                "Test case %s moved %s -> %s", updated.id, found[0].requirement_id, updated.requirement_id
            )
        return updated

    def delete_test_case(self, test_case_id: str) -> bool:
        removed: List[TestCase] = []

        def tx(snap: Snapshot) -> Dict[str, list]:
            target = next((tc for tc in snap.test_cases if tc.id == test_case_id), None)
            if target is None:
                return {}
            removed.append(target)
            test_cases = [tc for tc in snap.test_cases if tc.id != test_case_id]
            covered = self.covered_ids(test_cases)
            return {
                "test_cases": test_cases,
                "requirements": [
                    self._settle(r, covered) if r.id == target.requirement_id else r
                    for r in snap.requirements
                ],
            }

        self.store.apply(tx)
        return bool(removed)

    # -------------------- cascade --------------------

    def delete_document(self, document_id: str) -> Optional[CascadeResult]:
        """
        Remove a document, the requirements extracted from it and the test
        cases referencing those requirements. Both levels are computed from
        the same snapshot.
        """
        result: List[CascadeResult] = []

        def tx(snap: Snapshot) -> Dict[str, list]:
            doc = next((d for d in snap.documents if d.id == document_id), None)
            if doc is None:
                return {}
            req_ids = frozenset(r.id for r in snap.requirements if r.source == doc.file_name)
            tc_ids = frozenset(tc.id for tc in snap.test_cases if tc.requirement_id in req_ids)
            result.append(CascadeResult(doc, req_ids, tc_ids))
            return {
                "documents": [d for d in snap.documents if d.id != document_id],
                "requirements": [r for r in snap.requirements if r.id not in req_ids],
                "test_cases": [tc for tc in snap.test_cases if tc.id not in tc_ids],
            }

        self.store.apply(tx)
        if not result:
            return None

        res = result[0]
        logger.info(
            "Deleted %s: %d requirements, %d test cases",
            res.document.file_name, len(res.requirement_ids), len(res.test_case_ids),
        )
        return res
