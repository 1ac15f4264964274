# models.py - ReqTrace entities, enums and inference drafts
# Documents -> Requirements -> Test Cases (+ User Stories)

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def now_iso() -> str:
    return datetime.now().isoformat()


class InvalidInputError(ValueError):
    """User-supplied input rejected before any store mutation."""


# ==================== ENUMS ====================

class Theme(str, Enum):
    LIGHT = "light"
    DARK = "dark"

class DocumentStatus(str, Enum):
    PENDING = "Pending"
    PARSING = "Parsing"
    SUCCESS = "Success"
    ERROR = "Error"

class RequirementStatus(str, Enum):
    MAPPED = "Mapped"
    UNMAPPED = "Unmapped"
    NEEDS_REVIEW = "Needs Review"

    @property
    def is_manual(self) -> bool:
        # Mapped/Unmapped are derived from test-case coverage; Needs Review is set by hand
        return self is RequirementStatus.NEEDS_REVIEW

class RequirementType(str, Enum):
    FUNCTIONAL = "Functional"
    NON_FUNCTIONAL = "Non-Functional"

class Priority(str, Enum):
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"

class TestCaseStatus(str, Enum):
    __test__ = False

    DRAFT = "Draft"
    REVIEWED = "Reviewed"
    APPROVED = "Approved"
    EXECUTED = "Executed"

class Severity(str, Enum):
    CRITICAL = "Critical"
    MAJOR = "Major"
    MINOR = "Minor"
    TRIVIAL = "Trivial"

class LinkMethod(str, Enum):
    AI_GENERATED = "AI-Generated"
    MANUAL = "Manual"

class UserStoryStatus(str, Enum):
    PENDING = "Pending"
    PARSING = "Parsing"
    READY = "Ready"
    GENERATING = "Generating"
    COMPLETE = "Complete"
    ERROR = "Error"

class NotificationKind(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


# ==================== ENTITIES ====================
# Frozen: every change goes through model_copy(update=...) inside a store mutation.

class Document(BaseModel):
    """Uploaded specification document awaiting or past extraction"""
    model_config = ConfigDict(frozen=True)

    id: str
    file_name: str
    file_type: str  # MIME type, e.g. "application/pdf"
    size: int = 0
    date_uploaded: str = Field(default_factory=now_iso)
    status: DocumentStatus = DocumentStatus.PENDING

    # Raw bytes; empty until the content load completes
    content: bytes = Field(default=b"", exclude=True, repr=False)

    @property
    def has_content(self) -> bool:
        return bool(self.content)

class Requirement(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    text: str
    source: Optional[str] = None  # originating Document.file_name; None when authored by hand
    status: RequirementStatus = RequirementStatus.UNMAPPED
    type: RequirementType = RequirementType.FUNCTIONAL
    priority: Priority = Priority.MEDIUM
    created_on: str = Field(default_factory=now_iso)
    last_updated: Optional[str] = None
    quality_score: Optional[int] = Field(default=None, ge=0, le=100)

class TestCase(BaseModel):
    model_config = ConfigDict(frozen=True)
    __test__ = False  # keep pytest from collecting this model

    id: str
    title: str
    description: Optional[str] = None
    requirement_id: str  # logical reference, not a hard foreign key
    status: TestCaseStatus = TestCaseStatus.DRAFT
    priority: Priority = Priority.MEDIUM
    severity: Severity = Severity.MINOR
    preconditions: str = ""
    steps: str = ""
    expected_result: str = ""
    actual_result: Optional[str] = None
    link_method: LinkMethod = LinkMethod.MANUAL

class UserStory(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    file_name: str
    file_type: str = ""
    story_identifier: Optional[str] = None
    story_text: Optional[str] = None
    acceptance_criteria: Optional[List[str]] = None
    status: UserStoryStatus = UserStoryStatus.PENDING

    content: bytes = Field(default=b"", exclude=True, repr=False)

class Notification(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    message: str
    kind: NotificationKind
    expires_at: float  # monotonic clock

class RecentQuery(BaseModel):
    model_config = ConfigDict(frozen=True)

    query: str
    timestamp: float  # epoch seconds


# ==================== INFERENCE DRAFTS ====================
# Shapes returned by the inference collaborator (camelCase on the wire).

class _Draft(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

class RequirementDraft(_Draft):
    id: Optional[str] = None
    text: Optional[str] = None
    type: Optional[RequirementType] = None
    priority: Optional[Priority] = None

class TestCaseDraft(_Draft):
    __test__ = False

    id: Optional[str] = None
    title: str
    description: Optional[str] = None
    requirement_id: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    severity: Severity = Severity.MINOR
    preconditions: str = ""
    steps: str
    expected_result: str

    @field_validator("steps", "preconditions", mode="before")
    @classmethod
    def _join_lines(cls, v):
        # some models answer with a list of steps
        if isinstance(v, list):
            return "\n".join(str(s) for s in v)
        return v

class UserStoryDraft(_Draft):
    story_identifier: str
    story_text: str
    acceptance_criteria: List[str] = []
