import asyncio

from models import LinkMethod, NotificationKind, UserStory, UserStoryStatus
from backend.services.inference import InferenceError
from backend.services.user_stories import FALLBACK_REQUIREMENT_ID
from conftest import as_json, upload

STORY = {
    "storyIdentifier": "US-101",
    "storyText": "As a shopper I want to save my cart so that I can buy later",
    "acceptanceCriteria": ["Cart persists after logout", "Saved cart shows item count"],
}


def story_status(project, story_id):
    return project.store.find("user_stories", story_id).status


async def uploaded_story(project, name="story.txt", data=b"As a shopper..."):
    (story,) = project.add_user_stories([upload(name, data)])
    await project.drain()
    return story


class TestExtract:
    def test_pending_to_ready(self, project, fake):
        async def scenario():
            story = await uploaded_story(project)
            fake.generate_results.append(as_json(STORY))
            assert await project.extract_user_story(story.id) is True
            return project.store.find("user_stories", story.id)

        story = asyncio.run(scenario())
        assert story.status is UserStoryStatus.READY
        assert story.story_identifier == "US-101"
        assert story.acceptance_criteria == STORY["acceptanceCriteria"]
        assert "As a shopper..." in fake.generate_calls[0]
        assert project.active_notifications()[-1].message == "Successfully extracted US-101"

    def test_failure_sets_error_and_can_retry(self, project, fake):
        async def scenario():
            story = await uploaded_story(project)
            fake.generate_results.append("not json")
            assert await project.extract_user_story(story.id) is False
            assert story_status(project, story.id) is UserStoryStatus.ERROR

            fake.generate_results.append(as_json(STORY))
            assert await project.extract_user_story(story.id) is True
            return story

        story = asyncio.run(scenario())
        assert story_status(project, story.id) is UserStoryStatus.READY

    def test_not_extractable_when_ready(self, project, fake):
        async def scenario():
            story = await uploaded_story(project)
            fake.generate_results.append(as_json(STORY))
            await project.extract_user_story(story.id)
            return await project.extract_user_story(story.id)

        assert asyncio.run(scenario()) is False
        assert len(fake.generate_calls) == 1


class TestGenerate:
    def ready_story(self, project, fake):
        async def scenario():
            story = await uploaded_story(project)
            fake.generate_results.append(as_json(STORY))
            await project.extract_user_story(story.id)
            return story
        return asyncio.run(scenario())

    def test_ready_to_complete(self, project, fake):
        story = self.ready_story(project, fake)
        fake.generate_results.append(as_json([
            {"title": "Cart persists", "steps": "1. Add item\n2. Log out", "expectedResult": "Item still there"},
            {"title": "Count shown", "steps": "1. Open cart", "expectedResult": "Count visible"},
        ]))

        cases = asyncio.run(project.generate_test_cases_for_user_story(story.id))

        assert len(cases) == 2
        assert {tc.requirement_id for tc in cases} == {"US-101"}
        assert all(tc.link_method is LinkMethod.AI_GENERATED for tc in cases)
        assert story_status(project, story.id) is UserStoryStatus.COMPLETE
        assert "Cart persists after logout" in fake.generate_calls[-1]
        assert len(project.store.get("test_cases")) == 2

    def test_failure_returns_to_ready(self, project, fake):
        story = self.ready_story(project, fake)
        fake.generate_results.append(InferenceError("down"))

        assert asyncio.run(project.generate_test_cases_for_user_story(story.id)) == []
        assert story_status(project, story.id) is UserStoryStatus.READY
        assert project.active_notifications()[-1].kind is NotificationKind.ERROR

    def test_requires_ready(self, project, fake):
        async def scenario():
            story = await uploaded_story(project)
            return await project.generate_test_cases_for_user_story(story.id)

        assert asyncio.run(scenario()) == []
        assert fake.generate_calls == []

    def test_fallback_requirement_id(self, project, fake):
        story = self.ready_story(project, fake)
        project.update_user_story(
            project.store.find("user_stories", story.id).model_copy(update={"story_identifier": None})
        )
        fake.generate_results.append(as_json([{"title": "t", "steps": "s", "expectedResult": "e"}]))
        (tc,) = asyncio.run(project.generate_test_cases_for_user_story(story.id))
        assert tc.requirement_id == FALLBACK_REQUIREMENT_ID


class TestCrud:
    def test_delete(self, project):
        async def scenario():
            return await uploaded_story(project)

        story = asyncio.run(scenario())
        assert project.delete_user_story(story.id) is True
        assert project.delete_user_story(story.id) is False
        assert project.store.get("user_stories") == ()

    def test_update_keeps_loaded_content(self, project, fake):
        async def scenario():
            story = await uploaded_story(project, data=b"As a user I log in")
            edited = project.update_user_story(UserStory(id=story.id, file_name="story.txt", story_text="edited"))
            assert edited.story_text == "edited"
            assert project.store.find("user_stories", story.id).content == b"As a user I log in"

            fake.generate_results.append(as_json(STORY))
            await project.extract_user_story(story.id)

        asyncio.run(scenario())
        assert "As a user I log in" in fake.generate_calls[0]

    def test_update_unknown(self, project):
        ghost = UserStory(id="story-404", file_name="ghost.txt")
        assert project.update_user_story(ghost) is None
        assert project.store.get("user_stories") == ()
