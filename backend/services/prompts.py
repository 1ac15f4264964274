# Instructions and output schemas sent to the inference collaborator.
# Schemas use camelCase keys; drafts in models.py carry the matching aliases.

from typing import Any, Dict, Iterable, Optional

from models import Priority, Requirement, RequirementType, Severity


EXTRACTION_INSTRUCTION = (
    "Extract all individual software requirements from this document. "
    "Provide them in a structured JSON list."
)

REQUIREMENT_SCHEMA: Dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "id": {"type": "string"},
            "text": {"type": "string"},
            "type": {"type": "string", "enum": [t.value for t in RequirementType]},
            "priority": {"type": "string", "enum": [p.value for p in Priority]},
        },
        "required": ["id", "text", "type", "priority"],
    },
}

TEST_CASE_SCHEMA: Dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "id": {"type": "string", "description": "Unique Test Case ID, e.g., TC-001"},
            "title": {"type": "string"},
            "description": {"type": "string"},
            "requirementId": {
                "type": "string",
                "description": "The ID of the requirement this test case covers",
            },
            "priority": {"type": "string", "enum": [p.value for p in Priority]},
            "severity": {"type": "string", "enum": [s.value for s in Severity]},
            "preconditions": {"type": "string"},
            "steps": {"type": "string"},
            "expectedResult": {"type": "string"},
        },
        "required": ["id", "title", "requirementId", "priority", "severity", "steps", "expectedResult"],
    },
}

STORY_TEST_CASE_SCHEMA: Dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "id": {"type": "string"},
            "title": {"type": "string"},
            "priority": {"type": "string", "enum": [p.value for p in Priority]},
            "severity": {"type": "string", "enum": [s.value for s in Severity]},
            "steps": {"type": "string"},
            "expectedResult": {"type": "string"},
        },
        "required": ["id", "title", "steps", "expectedResult"],
    },
}

USER_STORY_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "storyIdentifier": {"type": "string"},
        "storyText": {"type": "string"},
        "acceptanceCriteria": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["storyIdentifier", "storyText", "acceptanceCriteria"],
}


def requirements_generation_prompt(requirements: Iterable[Requirement]) -> str:
    requirements_text = "\n".join(f"Requirement [{r.id}]: {r.text}" for r in requirements)
    return (
        "Act as an expert QA Engineer. Generate comprehensive validation test cases "
        "for the following software requirements. Return the test cases as a JSON "
        "array of objects.\n\n"
        f"Requirements:\n{requirements_text}"
    )


def user_story_prompt(file_name: str, content: Optional[str] = None) -> str:
    if content:
        return f"Extract user story details from {file_name}.\n\n---\n{content}"
    return f"Extract user story details from {file_name}."


def story_generation_prompt(story_text: str, acceptance_criteria: Iterable[str] = ()) -> str:
    prompt = f"Generate test cases for User Story: {story_text}."
    criteria = [c for c in acceptance_criteria if c]
    if criteria:
        prompt += "\nAcceptance Criteria:\n" + "\n".join(f"- {c}" for c in criteria)
    return prompt + "\nProvide them as a JSON array."


def api_script_prompt(json_input: str, status_code: int, variable_params: str = "") -> str:
    return (
        "Analyze the JSON and generate a JavaScript test script.\n"
        f"Use code: {status_code}.\n"
        f"Dynamics: {variable_params}.\n"
        "Output only code block.\n\n"
        "JSON:\n"
        f"```json\n{json_input}\n```\n"
    )
