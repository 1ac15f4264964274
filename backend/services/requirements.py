import logging
from typing import Dict, Iterable, List, Optional

from models import (
    InvalidInputError,
    Priority,
    Requirement,
    RequirementStatus,
    RequirementType,
    Severity,
    TestCase,
    TestCaseStatus,
    now_iso,
)
from storage import EntityStore, Snapshot
from backend.services.extraction import new_requirement_id
from backend.services.linkage import LinkageMaintainer

logger = logging.getLogger("reqtrace")

EDITABLE_FIELDS = ("text", "source", "status", "type", "priority", "quality_score")


class RequirementService:
    """Manual requirement authoring and edits. Extraction lives in ExtractionScheduler."""

    def __init__(self, store: EntityStore, linkage: LinkageMaintainer):
        self.store = store
        self.linkage = linkage

    def add_requirement(
        self,
        text: str,
        type: RequirementType = RequirementType.FUNCTIONAL,
        priority: Priority = Priority.MEDIUM,
        source: Optional[str] = None,
    ) -> Requirement:
        if not (text or "").strip():
            raise InvalidInputError("Requirement text is required.")

        req = Requirement(
            id=new_requirement_id(),
            text=text.strip(),
            source=source,
            status=RequirementStatus.UNMAPPED,
            type=RequirementType(type),
            priority=Priority(priority),
            quality_score=100,
        )
        self.store.mutate("requirements", lambda items: list(items) + [req])
        self.linkage.settle([req.id])
        return self.store.find("requirements", req.id)

    def update_requirement(self, requirement_id: str, **changes) -> Optional[Requirement]:
        updated = self.bulk_update_requirements([requirement_id], **changes)
        return updated[0] if updated else None

    def bulk_update_requirements(self, requirement_ids: Iterable[str], **changes) -> List[Requirement]:
        """
        Apply the same field changes to many requirements with one shared
        last_updated stamp. Status Needs Review is kept as set; Mapped or
        Unmapped is re-derived from actual coverage.
        """
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise InvalidInputError(f"Cannot edit field(s): {', '.join(sorted(unknown))}")
        if "text" in changes and not (changes["text"] or "").strip():
            raise InvalidInputError("Requirement text is required.")

        update: Dict[str, object] = dict(changes)
        if "status" in update:
            update["status"] = RequirementStatus(update["status"])
        if "type" in update:
            update["type"] = RequirementType(update["type"])
        if "priority" in update:
            update["priority"] = Priority(update["priority"])
        if update.get("quality_score") is not None and not 0 <= int(update["quality_score"]) <= 100:
            raise InvalidInputError("Quality score must be between 0 and 100.")

        ids = set(requirement_ids)
        update["last_updated"] = now_iso()
        self.store.mutate(
            "requirements",
            lambda items: [r.model_copy(update=update) if r.id in ids else r for r in items],
        )

        status = update.get("status")
        if status is not None and not status.is_manual:
            self.linkage.settle(ids)

        return [r for r in self.store.get("requirements") if r.id in ids]


# ==================== READ-SIDE QUERIES ====================
# Pure filters over snapshot collections.

def filter_requirements(
    requirements: Iterable[Requirement],
    search: str = "",
    status: Optional[RequirementStatus] = None,
    type: Optional[RequirementType] = None,
    priority: Optional[Priority] = None,
) -> List[Requirement]:
    term = (search or "").lower()
    return [
        r for r in requirements
        if (not term or term in r.id.lower() or term in r.text.lower())
        and (status is None or r.status == status)
        and (type is None or r.type == type)
        and (priority is None or r.priority == priority)
    ]


def group_by_source(requirements: Iterable[Requirement]) -> Dict[str, List[Requirement]]:
    groups: Dict[str, List[Requirement]] = {}
    for r in requirements:
        groups.setdefault(r.source or "Manual", []).append(r)
    return groups


def unmapped_requirements(
    snap: Snapshot,
    type: Optional[RequirementType] = None,
    priority: Optional[Priority] = None,
) -> List[Requirement]:
    return filter_requirements(snap.requirements, status=RequirementStatus.UNMAPPED, type=type, priority=priority)


def filter_test_cases(
    test_cases: Iterable[TestCase],
    search: str = "",
    status: Optional[TestCaseStatus] = None,
    priority: Optional[Priority] = None,
    severity: Optional[Severity] = None,
) -> List[TestCase]:
    term = (search or "").lower()
    return [
        tc for tc in test_cases
        if (not term or term in tc.id.lower() or term in tc.title.lower())
        and (status is None or tc.status == status)
        and (priority is None or tc.priority == priority)
        and (severity is None or tc.severity == severity)
    ]
