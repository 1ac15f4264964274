"""
AI test-case generation for requirements, plus the API response
test-script helper.

Batch generation is all-or-nothing: either every accepted test case lands
together with the Mapped marking of the whole requested batch, or nothing
changes and the user gets an error notification.
"""

import json
import logging
from typing import Iterable, List, Optional

from models import InvalidInputError, LinkMethod, TestCase, TestCaseStatus
from storage import EntityStore
from backend.services.inference import (
    InferenceClient,
    extract_code_block,
    parse_test_case_drafts,
)
from backend.services.linkage import LinkageMaintainer, new_test_case_id
from backend.services.notifications import NotificationBus
from backend.services.prompts import TEST_CASE_SCHEMA, api_script_prompt, requirements_generation_prompt

logger = logging.getLogger("reqtrace")


class TestCaseGenerator:
    __test__ = False

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

    async def generate_for_requirements(self, requirement_ids: Iterable[str]) -> List[TestCase]:
        wanted = list(dict.fromkeys(requirement_ids))
        selected = [r for r in self.store.get("requirements") if r.id in set(wanted)]
        if not selected:
            return []

        logger.info("Generating test cases for %d requirement(s)", len(selected))
        try:
            raw = await self.inference.generate(requirements_generation_prompt(selected), TEST_CASE_SCHEMA)
            drafts = parse_test_case_drafts(raw)
        except Exception as exc:
            logger.warning("Test case generation failed: %s: %s", type(exc).__name__, exc)
            self.notifications.error("Failed to generate test cases. Please try again.")
            return []

        # requirements may have been removed (document deleted) while waiting
        live = {r.id for r in self.store.get("requirements")}
        taken = {tc.id for tc in self.store.get("test_cases")}
        cases: List[TestCase] = []
        for d in drafts:
            if d.requirement_id not in live:
                logger.info("Dropping generated test case for unknown requirement %r", d.requirement_id)
                continue
            tc_id = d.id if d.id and d.id not in taken else new_test_case_id()
            taken.add(tc_id)
            cases.append(
                TestCase(
                    id=tc_id,
                    title=d.title,
                    description=d.description,
                    requirement_id=d.requirement_id,
                    status=TestCaseStatus.DRAFT,
                    priority=d.priority,
                    severity=d.severity,
                    preconditions=d.preconditions,
                    steps=d.steps,
                    expected_result=d.expected_result,
                    link_method=LinkMethod.AI_GENERATED,
                )
            )

        self.linkage.add_test_cases(cases, mark_mapped=[rid for rid in wanted if rid in live])
        self.notifications.success(f"Successfully generated {len(cases)} test cases.")
        return cases


def validate_script_request(json_input: str, status_code) -> int:
    if not (json_input or "").strip():
        raise InvalidInputError("JSON input cannot be empty.")
    try:
        json.loads(json_input)
    except json.JSONDecodeError as exc:
        raise InvalidInputError("Invalid JSON provided.") from exc
    try:
        return int(str(status_code).strip())
    except (TypeError, ValueError) as exc:
        raise InvalidInputError("Valid status code is required.") from exc


class ApiTestScriptGenerator:
    """Turns a sample JSON response into a JavaScript API test script."""

    def __init__(self, inference: InferenceClient, notifications: NotificationBus):
        self.inference = inference
        self.notifications = notifications

    async def generate(self, json_input: str, status_code, variable_params: str = "") -> Optional[str]:
        try:
            code = validate_script_request(json_input, status_code)
        except InvalidInputError as exc:
            self.notifications.error(str(exc))
            return None

        try:
            text = await self.inference.complete_text(api_script_prompt(json_input, code, variable_params))
        except Exception as exc:
            logger.warning("Script generation failed: %s: %s", type(exc).__name__, exc)
            self.notifications.error(f"Failed to generate test script: {exc}")
            return None
        return extract_code_block(text)
