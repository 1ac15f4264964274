import pytest

from models import Priority, RequirementType, Severity
from backend.services.inference import (
    InferenceResponseError,
    extract_code_block,
    parse_requirement_drafts,
    parse_test_case_drafts,
    parse_user_story,
)


class TestParsing:
    def test_requirements_plain_array(self):
        (d,) = parse_requirement_drafts('[{"id": "REQ-1", "text": "Log in", "type": "Non-Functional", "priority": "Low"}]')
        assert d.id == "REQ-1"
        assert d.type is RequirementType.NON_FUNCTIONAL
        assert d.priority is Priority.LOW

    def test_requirements_items_envelope(self):
        drafts = parse_requirement_drafts('{"items": [{"text": "a"}, {"text": "b"}]}')
        assert [d.text for d in drafts] == ["a", "b"]

    def test_markdown_fence_stripped(self):
        drafts = parse_requirement_drafts('```json\n[{"text": "a"}]\n```')
        assert drafts[0].text == "a"

    @pytest.mark.parametrize("raw", ["", "not json", '{"text": "object"}', '[{"type": "Sometimes"}]'])
    def test_bad_requirement_payloads(self, raw):
        with pytest.raises(InferenceResponseError):
            parse_requirement_drafts(raw)

    def test_test_case_camel_case_fields(self):
        (d,) = parse_test_case_drafts(
            '[{"title": "t", "requirementId": "REQ-1", "steps": ["a", "b"], '
            '"expectedResult": "ok", "severity": "Critical", "preconditions": ["logged in"]}]'
        )
        assert d.requirement_id == "REQ-1"
        assert d.steps == "a\nb"
        assert d.preconditions == "logged in"
        assert d.severity is Severity.CRITICAL

    def test_test_case_missing_required(self):
        with pytest.raises(InferenceResponseError):
            parse_test_case_drafts('[{"title": "t"}]')

    def test_user_story(self):
        d = parse_user_story('{"storyIdentifier": "US-1", "storyText": "As a user", "acceptanceCriteria": ["x"]}')
        assert (d.story_identifier, d.acceptance_criteria) == ("US-1", ["x"])


class TestCodeBlock:
    def test_js_alias(self):
        assert extract_code_block("```js\nconst a = 1;\n```") == "const a = 1;"

    def test_other_fence_not_matched(self):
        text = "```python\nprint(1)\n```"
        assert extract_code_block(text) == text
