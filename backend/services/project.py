import asyncio
import logging
import random
from typing import Dict, Iterable, List, Optional, Sequence

from config import Settings
from models import (
    Document,
    Notification,
    Priority,
    RecentQuery,
    Requirement,
    RequirementStatus,
    RequirementType,
    Severity,
    TestCase,
    TestCaseStatus,
    Theme,
    UserStory,
)
from storage import EntityStore, Snapshot, ThemePreference
from backend.services import metrics
from backend.services.extraction import ExtractionScheduler, UploadedFile
from backend.services.inference import InferenceClient
from backend.services.linkage import CascadeResult, LinkageMaintainer
from backend.services.notifications import NotificationBus
from backend.services.recent_queries import RecentQueryLog
from backend.services.requirements import (
    RequirementService,
    filter_requirements,
    filter_test_cases,
    group_by_source,
    unmapped_requirements,
)
from backend.services.test_generation import ApiTestScriptGenerator, TestCaseGenerator
from backend.services.user_stories import UserStoryPipeline

logger = logging.getLogger("reqtrace")


class ProjectService:
    """
    One project workspace: a single EntityStore injected into every
    component, and the operations a presentation layer calls.
    """

    def __init__(
        self,
        inference: InferenceClient,
        store: Optional[EntityStore] = None,
        preferences: Optional[ThemePreference] = None,
        max_concurrent_extractions: Optional[int] = None,
        notification_ttl_s: Optional[float] = None,
        recent_query_limit: Optional[int] = None,
        preserve_needs_review: Optional[bool] = None,
        rng: Optional[random.Random] = None,
    ):
        self.store = store or EntityStore()
        self.inference = inference
        self.preferences = preferences

        self.notifications = NotificationBus(self.store, ttl_s=notification_ttl_s)
        self.recent_queries = RecentQueryLog(self.store, limit=recent_query_limit)
        self.linkage = LinkageMaintainer(self.store, preserve_needs_review=preserve_needs_review)
        self.requirements = RequirementService(self.store, self.linkage)
        self.scheduler = ExtractionScheduler(
            self.store, inference, self.notifications,
            max_concurrent=max_concurrent_extractions, rng=rng,
        )
        self.stories = UserStoryPipeline(self.store, inference, self.notifications, self.linkage)
        self.generator = TestCaseGenerator(self.store, inference, self.notifications, self.linkage)
        self.scripts = ApiTestScriptGenerator(inference, self.notifications)

    def snapshot(self) -> Snapshot:
        return self.store.snapshot()

    async def drain(self) -> None:
        """Await every background load, extraction and story task."""
        while not (self.scheduler.idle and self.stories.idle):
            await asyncio.gather(self.scheduler.drain(), self.stories.drain())

    # ==================== DOCUMENTS ====================

    def add_documents(self, files: Sequence[UploadedFile]) -> List[Document]:
        return self.scheduler.add_documents(files)

    def content_loaded(self, document_id: str, content: bytes) -> bool:
        return self.scheduler.content_loaded(document_id, content)

    def retry_document(self, document_id: str) -> bool:
        return self.scheduler.retry(document_id)

    def delete_document(self, document_id: str) -> Optional[CascadeResult]:
        return self.linkage.delete_document(document_id)

    # ==================== REQUIREMENTS ====================

    def add_requirement(
        self,
        text: str,
        type: RequirementType = RequirementType.FUNCTIONAL,
        priority: Priority = Priority.MEDIUM,
        source: Optional[str] = None,
    ) -> Optional[Requirement]:
        try:
            return self.requirements.add_requirement(text, type=type, priority=priority, source=source)
        except ValueError as exc:  # InvalidInputError, bad enum values
            self.notifications.error(str(exc))
            return None

    def update_requirement(self, requirement_id: str, **changes) -> Optional[Requirement]:
        try:
            return self.requirements.update_requirement(requirement_id, **changes)
        except ValueError as exc:  # InvalidInputError, bad enum values
            self.notifications.error(str(exc))
            return None

    def bulk_update_requirements(self, requirement_ids: Iterable[str], **changes) -> List[Requirement]:
        try:
            return self.requirements.bulk_update_requirements(requirement_ids, **changes)
        except ValueError as exc:  # InvalidInputError, bad enum values
            self.notifications.error(str(exc))
            return []

    def find_requirements(
        self,
        search: str = "",
        status: Optional[RequirementStatus] = None,
        type: Optional[RequirementType] = None,
        priority: Optional[Priority] = None,
    ) -> List[Requirement]:
        return filter_requirements(self.store.get("requirements"), search, status, type, priority)

    def requirements_by_source(self) -> Dict[str, List[Requirement]]:
        return group_by_source(self.store.get("requirements"))

    def unmapped_requirements(
        self,
        type: Optional[RequirementType] = None,
        priority: Optional[Priority] = None,
    ) -> List[Requirement]:
        """Candidates for batch test-case generation."""
        return unmapped_requirements(self.snapshot(), type=type, priority=priority)

    # ==================== TEST CASES ====================

    async def generate_test_cases(self, requirement_ids: Iterable[str]) -> List[TestCase]:
        return await self.generator.generate_for_requirements(requirement_ids)

    def add_test_case(self, requirement_id: str, title: str, steps: str, expected_result: str, **fields) -> Optional[TestCase]:
        try:
            return self.linkage.create_test_case(requirement_id, title, steps, expected_result, **fields)
        except ValueError as exc:  # InvalidInputError, bad enum values
            self.notifications.error(str(exc))
            return None

    def update_test_case(self, test_case: TestCase) -> Optional[TestCase]:
        return self.linkage.update_test_case(test_case)

    def delete_test_case(self, test_case_id: str) -> bool:
        return self.linkage.delete_test_case(test_case_id)

    def find_test_cases(
        self,
        search: str = "",
        status: Optional[TestCaseStatus] = None,
        priority: Optional[Priority] = None,
        severity: Optional[Severity] = None,
    ) -> List[TestCase]:
        return filter_test_cases(self.store.get("test_cases"), search, status, priority, severity)

    async def generate_api_test_script(self, json_input: str, status_code, variable_params: str = "") -> Optional[str]:
        return await self.scripts.generate(json_input, status_code, variable_params)

    # ==================== USER STORIES ====================

    def add_user_stories(self, files: Sequence[UploadedFile]) -> List[UserStory]:
        return self.stories.add_user_stories(files)

    def update_user_story(self, story: UserStory) -> Optional[UserStory]:
        return self.stories.update_user_story(story)

    def delete_user_story(self, story_id: str) -> bool:
        return self.stories.delete_user_story(story_id)

    async def extract_user_story(self, story_id: str) -> bool:
        return await self.stories.extract(story_id)

    async def generate_test_cases_for_user_story(self, story_id: str) -> List[TestCase]:
        return await self.stories.generate(story_id)

    # ==================== NOTIFICATIONS / SEARCHES ====================

    def active_notifications(self) -> List[Notification]:
        return self.notifications.active()

    def dismiss_notification(self, notification_id: int) -> bool:
        return self.notifications.dismiss(notification_id)

    def add_recent_search(self, query: str) -> Optional[RecentQuery]:
        return self.recent_queries.add(query)

    def clear_recent_searches(self) -> None:
        self.recent_queries.clear()

    # ==================== METRICS ====================

    def kpis(self) -> metrics.KPIs:
        return metrics.kpis(self.snapshot())

    def requirement_coverage_data(self) -> List[metrics.ChartPoint]:
        return metrics.requirement_coverage_data(self.snapshot())

    def status_breakdown(self) -> List[metrics.ChartPoint]:
        return metrics.test_case_status_data(self.snapshot())

    def traceability(self) -> List[metrics.TraceabilityRow]:
        return metrics.traceability_matrix(self.snapshot())

    # ==================== THEME ====================

    def _prefs(self) -> ThemePreference:
        if self.preferences is None:
            self.preferences = ThemePreference(Settings.PREFERENCES_FILE)
        return self.preferences

    def theme(self) -> Theme:
        return self._prefs().theme

    def toggle_theme(self) -> Theme:
        return self._prefs().toggle()
