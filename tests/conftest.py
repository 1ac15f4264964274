import asyncio
import json
from typing import Any, Dict, List, Optional, Union

import pytest

from models import Requirement, TestCase
from storage import EntityStore, ThemePreference
from backend.services.extraction import BufferedUpload
from backend.services.linkage import LinkageMaintainer
from backend.services.notifications import NotificationBus
from backend.services.project import ProjectService

Scripted = Union[str, Exception]


class FakeInference:
    """
    Scripted inference collaborator.

    extract() answers per file name (default: an empty list) and can be held
    open with a gate so tests decide the completion order.
    """

    def __init__(self):
        self.extract_results: Dict[str, Scripted] = {}
        self.default_extract: Scripted = "[]"
        self.generate_results: List[Scripted] = []
        self.text_result: Scripted = ""
        self.gates: Dict[str, asyncio.Event] = {}

        self.extract_calls: List[str] = []
        self.generate_calls: List[str] = []
        self.text_calls: List[str] = []

    def gate(self, file_name: str) -> asyncio.Event:
        ev = asyncio.Event()
        self.gates[file_name] = ev
        return ev

    @staticmethod
    def _answer(result: Scripted) -> str:
        if isinstance(result, Exception):
            raise result
        return result

    async def extract(self, content, mime_type, instruction, schema, file_name=""):
        self.extract_calls.append(file_name)
        gate = self.gates.get(file_name)
        if gate is not None:
            await gate.wait()
        return self._answer(self.extract_results.get(file_name, self.default_extract))

    async def generate(self, prompt, schema):
        self.generate_calls.append(prompt)
        if not self.generate_results:
            return "[]"
        return self._answer(self.generate_results.pop(0))

    async def complete_text(self, prompt):
        self.text_calls.append(prompt)
        return self._answer(self.text_result)


def as_json(items: Any) -> str:
    return json.dumps(items)


def upload(name: str, data: bytes = b"The system shall log in users.", mime: str = "text/plain") -> BufferedUpload:
    return BufferedUpload(name, mime, data)


async def settle(rounds: int = 20) -> None:
    """Let spawned loads and jobs run until they block."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_requirement(rid: str, source: Optional[str] = None, **fields) -> Requirement:
    return Requirement(id=rid, text=f"Requirement {rid}", source=source, **fields)


def make_test_case(tid: str, requirement_id: str, **fields) -> TestCase:
    fields.setdefault("title", f"Check {requirement_id}")
    fields.setdefault("steps", "1. Do it")
    fields.setdefault("expected_result", "It works")
    return TestCase(id=tid, requirement_id=requirement_id, **fields)


@pytest.fixture
def store():
    return EntityStore()


@pytest.fixture
def notifications(store):
    return NotificationBus(store, ttl_s=60)


@pytest.fixture
def linkage(store):
    return LinkageMaintainer(store, preserve_needs_review=True)


@pytest.fixture
def fake():
    return FakeInference()


@pytest.fixture
def project(fake, tmp_path):
    return ProjectService(
        fake,
        preferences=ThemePreference(str(tmp_path / "prefs.json")),
        max_concurrent_extractions=3,
        notification_ttl_s=60,
        recent_query_limit=10,
        preserve_needs_review=True,
    )
