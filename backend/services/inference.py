"""
Boundary to the generative-AI service.

The core only sees the InferenceClient protocol: it hands over a document
(bytes + MIME type) or a prompt together with a JSON schema and gets text
back. Everything that text must satisfy is checked here; any failure is an
InferenceResponseError, never a crash.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Protocol, TypeVar

from pydantic import TypeAdapter, ValidationError

from models import RequirementDraft, TestCaseDraft, UserStoryDraft

logger = logging.getLogger("reqtrace")

T = TypeVar("T")


class InferenceError(Exception):
    """The inference collaborator could not produce a usable answer."""


class InferenceResponseError(InferenceError):
    """Response text is not JSON, or does not match the declared schema."""


class UnsupportedContentError(InferenceError):
    """The provider cannot accept this kind of file content."""


class InferenceClient(Protocol):
    async def extract(
        self,
        content: bytes,
        mime_type: str,
        instruction: str,
        schema: Dict[str, Any],
        file_name: str = "",
    ) -> str: ...

    async def generate(self, prompt: str, schema: Dict[str, Any]) -> str: ...

    async def complete_text(self, prompt: str) -> str: ...


# ── Response parsing ────────────────────────────────────────────────────

_REQUIREMENTS = TypeAdapter(List[RequirementDraft])
_TEST_CASES = TypeAdapter(List[TestCaseDraft])
_USER_STORY = TypeAdapter(UserStoryDraft)


def _load_json(raw: str) -> Any:
    text = (raw or "").strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[-1]
    if text.endswith("```"):
        text = text.rsplit("```", 1)[0]
    text = text.strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        logger.warning("Inference returned invalid JSON: %s | %s", exc, text[:200])
        raise InferenceResponseError("Response is not valid JSON") from exc


def _unwrap(data: Any) -> Any:
    # providers that only allow an object root answer {"items": [...]}
    if isinstance(data, dict) and isinstance(data.get("items"), list):
        return data["items"]
    return data


def _validate(adapter: TypeAdapter[T], data: Any, what: str) -> T:
    try:
        return adapter.validate_python(data)
    except ValidationError as exc:
        raise InferenceResponseError(f"Response does not match the {what} schema: {exc.error_count()} error(s)") from exc


def parse_requirement_drafts(raw: str) -> List[RequirementDraft]:
    return _validate(_REQUIREMENTS, _unwrap(_load_json(raw)), "requirement")


def parse_test_case_drafts(raw: str) -> List[TestCaseDraft]:
    return _validate(_TEST_CASES, _unwrap(_load_json(raw)), "test case")


def parse_user_story(raw: str) -> UserStoryDraft:
    return _validate(_USER_STORY, _load_json(raw), "user story")


_CODE_BLOCK = re.compile(r"```(?:javascript|js)\n([\s\S]*?)```")


def extract_code_block(text: str) -> str:
    """Return the fenced javascript block if present, else the whole text."""
    match = _CODE_BLOCK.search(text or "")
    if match:
        return match.group(1).strip()
    return (text or "").strip()
