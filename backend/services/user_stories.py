import asyncio
import logging
from typing import List, Optional, Sequence, Set
from uuid import uuid4

from models import LinkMethod, TestCase, TestCaseStatus, UserStory, UserStoryStatus
from storage import EntityStore
from backend.services.extraction import UploadedFile, spawn
from backend.services.inference import InferenceClient, parse_test_case_drafts, parse_user_story
from backend.services.linkage import LinkageMaintainer, new_test_case_id
from backend.services.notifications import NotificationBus
from backend.services.prompts import (
    STORY_TEST_CASE_SCHEMA,
    USER_STORY_SCHEMA,
    story_generation_prompt,
    user_story_prompt,
)

logger = logging.getLogger("reqtrace")

# requirement_id given to story test cases when the story has no identifier
FALLBACK_REQUIREMENT_ID = "UserStory"

_EXTRACTABLE = (UserStoryStatus.PENDING, UserStoryStatus.ERROR)


def new_story_id() -> str:
    return f"story-{uuid4().hex[:12]}"


class UserStoryPipeline:
    """
    Manually driven: nothing here is reactive or concurrency-bounded.

      Pending/Error --extract--> Parsing --> Ready | Error
      Ready --generate--> Generating --> Complete | Ready (failure is recoverable)
    """

    def __init__(
        self,
        store: EntityStore,
        inference: InferenceClient,
        notifications: NotificationBus,
        linkage: LinkageMaintainer,
    ):
        self.store = store
        self.inference = inference
        self.notifications = notifications
        self.linkage = linkage
        self._tasks: Set[asyncio.Task] = set()

    @property
    def idle(self) -> bool:
        return not self._tasks

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -------------------- CRUD --------------------

    def add_user_stories(self, files: Sequence[UploadedFile]) -> List[UserStory]:
        stories = [
            UserStory(id=new_story_id(), file_name=f.filename or "untitled", file_type=f.content_type or "")
            for f in files
        ]
        if stories:
            self.store.mutate("user_stories", lambda items: list(items) + stories)
            for story, f in zip(stories, files):
                spawn(self._tasks, self._load(story.id, f))
        return stories

    async def _load(self, story_id: str, f: UploadedFile) -> None:
        try:
            content = await f.read()
        except Exception as exc:
            # the story can still be extracted from its file name alone
            logger.warning("Could not read story file %s: %s", f.filename, exc)
            return
        if content:
            self._replace(story_id, content=content)

    def update_user_story(self, story: UserStory) -> Optional[UserStory]:
        existing = self.store.find("user_stories", story.id)
        if existing is None:
            return None
        # content never travels over the wire; keep the loaded bytes
        merged = story if story.content else story.model_copy(update={"content": existing.content})
        self.store.mutate("user_stories", lambda items: [merged if s.id == story.id else s for s in items])
        return merged

    def delete_user_story(self, story_id: str) -> bool:
        if self.store.find("user_stories", story_id) is None:
            return False
        self.store.mutate("user_stories", lambda items: [s for s in items if s.id != story_id])
        return True

    def _replace(self, story_id: str, **changes) -> bool:
        if self.store.find("user_stories", story_id) is None:
            return False
        self.store.mutate(
            "user_stories",
            lambda items: [s.model_copy(update=changes) if s.id == story_id else s for s in items],
        )
        return True

    # -------------------- pipeline --------------------

    async def extract(self, story_id: str) -> bool:
        story = self.store.find("user_stories", story_id)
        if story is None:
            return False
        if story.status not in _EXTRACTABLE:
            self.notifications.error(f"{story.file_name} is {story.status.value}; nothing to extract.")
            return False

        self._replace(story_id, status=UserStoryStatus.PARSING)
        text = story.content.decode("utf-8", errors="ignore") if story.content else None
        try:
            raw = await self.inference.generate(user_story_prompt(story.file_name, text), USER_STORY_SCHEMA)
            draft = parse_user_story(raw)
        except Exception as exc:
            logger.warning("Story extraction failed for %s: %s: %s", story.file_name, type(exc).__name__, exc)
            if self._replace(story_id, status=UserStoryStatus.ERROR):
                self.notifications.error(f"Failed to process {story.file_name}")
            return False

        applied = self._replace(
            story_id,
            story_identifier=draft.story_identifier,
            story_text=draft.story_text,
            acceptance_criteria=list(draft.acceptance_criteria),
            status=UserStoryStatus.READY,
        )
        if applied:
            self.notifications.success(f"Successfully extracted {draft.story_identifier}")
        return applied

    async def generate(self, story_id: str) -> List[TestCase]:
        story = self.store.find("user_stories", story_id)
        if story is None:
            return []
        if story.status is not UserStoryStatus.READY or not story.story_text:
            self.notifications.error(f"{story.file_name} is not ready for test generation.")
            return []

        self._replace(story_id, status=UserStoryStatus.GENERATING)
        try:
            raw = await self.inference.generate(
                story_generation_prompt(story.story_text, story.acceptance_criteria or []),
                STORY_TEST_CASE_SCHEMA,
            )
            drafts = parse_test_case_drafts(raw)
        except Exception as exc:
            logger.warning("Story generation failed for %s: %s: %s", story.file_name, type(exc).__name__, exc)
            if self._replace(story_id, status=UserStoryStatus.READY):
                self.notifications.error("Generation failed")
            return []

        if self.store.find("user_stories", story_id) is None:
            return []  # deleted while in flight

        requirement_id = story.story_identifier or FALLBACK_REQUIREMENT_ID
        taken = {tc.id for tc in self.store.get("test_cases")}
        cases: List[TestCase] = []
        for d in drafts:
            tc_id = d.id if d.id and d.id not in taken else new_test_case_id()
            taken.add(tc_id)
            cases.append(
                TestCase(
                    id=tc_id,
                    title=d.title,
                    description=d.description,
                    requirement_id=requirement_id,
                    status=TestCaseStatus.DRAFT,
                    priority=d.priority,
                    severity=d.severity,
                    preconditions=d.preconditions,
                    steps=d.steps,
                    expected_result=d.expected_result,
                    link_method=LinkMethod.AI_GENERATED,
                )
            )

        self.linkage.add_test_cases(cases)
        self._replace(story_id, status=UserStoryStatus.COMPLETE)
        self.notifications.success(f"Generated {len(cases)} test cases")
        return cases
