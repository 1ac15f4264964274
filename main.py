# main.py - ReqTrace API (thin adapter over backend.services.project)
# - Documents upload/list/retry/delete (cascade to requirements + test cases)
# - Requirements create/edit/bulk edit/filter
# - Test cases: AI batch generation, manual CRUD, filter
# - User stories: upload, extract, generate
# - Notifications, recent searches, metrics, traceability, theme
# - /providers-status (router debug)

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from models import (
    Document,
    Priority,
    Requirement,
    RequirementStatus,
    RequirementType,
    Severity,
    TestCase,
    TestCaseStatus,
    UserStory,
)
from backend.services import metrics
from backend.services.extraction import BufferedUpload
from backend.services.inference import InferenceError
from backend.services.llm_router import LLMRouter
from backend.services.project import ProjectService

logging.basicConfig(
    level=os.getenv("REQTRACE_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("reqtrace")

app = FastAPI(title="ReqTrace", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------------
# LLM Router + project
# ----------------------------

class _NoProviders:
    """Stand-in collaborator when no provider is configured: every call fails cleanly."""

    async def extract(self, *args, **kwargs) -> str:
        raise InferenceError("No LLM providers configured.")

    async def generate(self, *args, **kwargs) -> str:
        raise InferenceError("No LLM providers configured.")

    async def complete_text(self, *args, **kwargs) -> str:
        raise InferenceError("No LLM providers configured.")


router: Optional[LLMRouter] = None
project: Optional[ProjectService] = None

def get_router() -> Optional[LLMRouter]:
    global router
    if router is not None:
        return router
    try:
        router = LLMRouter()
        return router
    except RuntimeError as e:
        logger.warning("LLM router unavailable: %s", e)
        return None

def get_project() -> ProjectService:
    global project
    if project is None:
        project = ProjectService(inference=get_router() or _NoProviders())
    return project


# ----------------------------
# Request bodies
# ----------------------------

class RequirementCreate(BaseModel):
    text: str
    type: RequirementType = RequirementType.FUNCTIONAL
    priority: Priority = Priority.MEDIUM
    source: Optional[str] = None

class RequirementUpdate(BaseModel):
    text: Optional[str] = None
    status: Optional[RequirementStatus] = None
    type: Optional[RequirementType] = None
    priority: Optional[Priority] = None
    quality_score: Optional[int] = None

class BulkRequirementUpdate(BaseModel):
    ids: List[str]
    status: Optional[RequirementStatus] = None
    type: Optional[RequirementType] = None
    priority: Optional[Priority] = None

class GenerateRequest(BaseModel):
    requirement_ids: List[str]

class TestCaseCreate(BaseModel):
    requirement_id: str
    title: str
    steps: str
    expected_result: str
    description: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    severity: Severity = Severity.MINOR
    preconditions: str = ""

class SearchRequest(BaseModel):
    query: str

class ScriptRequest(BaseModel):
    json_input: str
    status_code: str = "200"
    variable_params: str = ""


# ----------------------------
# Helpers
# ----------------------------

def _safe_bool_env(key: str) -> bool:
    return bool((os.getenv(key) or "").strip())

def _doc_or_404(document_id: str) -> Document:
    d = get_project().store.find("documents", document_id)
    if not d:
        raise HTTPException(404, "Document not found")
    return d

def _story_or_404(story_id: str) -> UserStory:
    s = get_project().store.find("user_stories", story_id)
    if not s:
        raise HTTPException(404, "User story not found")
    return s

def _last_error(p: ProjectService) -> str:
    errors = [n.message for n in p.active_notifications() if n.kind.value == "error"]
    return errors[-1] if errors else "Invalid input"

async def _buffer(files: List[UploadFile]) -> List[BufferedUpload]:
    # the request's spooled files close when it ends; background loading reads from memory
    return [
        BufferedUpload(f.filename or "untitled", f.content_type or "", await f.read())
        for f in files
    ]


# ----------------------------
# Routes: Health
# ----------------------------

@app.get("/")
async def root():
    r = get_router()
    return {
        "status": "ReqTrace is running",
        "version": app.version,
        "env": {
            "GROQ_API_KEY": _safe_bool_env("GROQ_API_KEY"),
            "OPENAI_API_KEY": _safe_bool_env("OPENAI_API_KEY"),
            "OLLAMA_MODEL": (os.getenv("OLLAMA_MODEL") or "").strip(),
        },
        "router": (r.providers_status() if r else {"configured": [], "models": {}}),
        "stats": get_project().store.get_stats(),
    }

@app.get("/providers-status")
async def providers_status():
    r = get_router()
    if not r:
        return {"ok": False, "error": "No LLM providers configured or router init failed."}
    return {"ok": True, "router": r.providers_status()}


# ----------------------------
# Documents
# ----------------------------

@app.post("/documents/upload")
async def upload_documents(files: List[UploadFile] = File(...)):
    docs = get_project().add_documents(await _buffer(files))
    return {"success": True, "documents": docs}

@app.get("/documents", response_model=List[Document])
async def list_documents():
    return list(get_project().store.get("documents"))

@app.get("/documents/{document_id}", response_model=Document)
async def get_document(document_id: str):
    return _doc_or_404(document_id)

@app.post("/documents/{document_id}/retry")
async def retry_document(document_id: str):
    _doc_or_404(document_id)
    if not get_project().retry_document(document_id):
        raise HTTPException(409, "Only documents in Error can be retried")
    return {"ok": True, "document": get_project().store.find("documents", document_id)}

@app.delete("/documents/{document_id}")
async def delete_document(document_id: str):
    _doc_or_404(document_id)
    res = get_project().delete_document(document_id)
    return {
        "ok": True,
        "deleted_document_id": document_id,
        "deleted_requirements": sorted(res.requirement_ids) if res else [],
        "deleted_test_cases": sorted(res.test_case_ids) if res else [],
    }


# ----------------------------
# Requirements
# ----------------------------

@app.get("/requirements", response_model=List[Requirement])
async def list_requirements(
    search: str = "",
    status: Optional[RequirementStatus] = None,
    type: Optional[RequirementType] = None,
    priority: Optional[Priority] = None,
):
    return get_project().find_requirements(search, status, type, priority)

@app.get("/requirements/unmapped", response_model=List[Requirement])
async def list_unmapped_requirements(
    type: Optional[RequirementType] = None,
    priority: Optional[Priority] = None,
):
    return get_project().unmapped_requirements(type, priority)

@app.get("/requirements/by-source", response_model=Dict[str, List[Requirement]])
async def requirements_by_source():
    return get_project().requirements_by_source()

@app.post("/requirements", response_model=Requirement)
async def create_requirement(body: RequirementCreate):
    p = get_project()
    req = p.add_requirement(body.text, type=body.type, priority=body.priority, source=body.source)
    if req is None:
        raise HTTPException(400, _last_error(p))
    return req

@app.patch("/requirements/{requirement_id}", response_model=Requirement)
async def update_requirement(requirement_id: str, body: RequirementUpdate):
    p = get_project()
    if p.store.find("requirements", requirement_id) is None:
        raise HTTPException(404, "Requirement not found")
    req = p.update_requirement(requirement_id, **body.model_dump(exclude_unset=True))
    if req is None:
        raise HTTPException(400, _last_error(p))
    return req

@app.post("/requirements/bulk-update", response_model=List[Requirement])
async def bulk_update_requirements(body: BulkRequirementUpdate):
    changes = body.model_dump(exclude_unset=True, exclude={"ids"})
    return get_project().bulk_update_requirements(body.ids, **changes)


# ----------------------------
# Test cases
# ----------------------------

@app.post("/test-cases/generate", response_model=List[TestCase])
async def generate_test_cases(body: GenerateRequest):
    return await get_project().generate_test_cases(body.requirement_ids)

@app.get("/test-cases", response_model=List[TestCase])
async def list_test_cases(
    search: str = "",
    status: Optional[TestCaseStatus] = None,
    priority: Optional[Priority] = None,
    severity: Optional[Severity] = None,
):
    return get_project().find_test_cases(search, status, priority, severity)

@app.post("/test-cases", response_model=TestCase)
async def create_test_case(body: TestCaseCreate):
    p = get_project()
    fields = body.model_dump(exclude={"requirement_id", "title", "steps", "expected_result"})
    tc = p.add_test_case(body.requirement_id, body.title, body.steps, body.expected_result, **fields)
    if tc is None:
        raise HTTPException(400, _last_error(p))
    return tc

@app.put("/test-cases/{test_case_id}", response_model=TestCase)
async def update_test_case(test_case_id: str, body: TestCase):
    if body.id != test_case_id:
        raise HTTPException(400, "Test case id does not match the path")
    tc = get_project().update_test_case(body)
    if tc is None:
        raise HTTPException(404, "Test case not found")
    return tc

@app.delete("/test-cases/{test_case_id}")
async def delete_test_case(test_case_id: str):
    if not get_project().delete_test_case(test_case_id):
        raise HTTPException(404, "Test case not found")
    return {"ok": True, "deleted_test_case_id": test_case_id}


# ----------------------------
# User stories
# ----------------------------

@app.post("/user-stories/upload")
async def upload_user_stories(files: List[UploadFile] = File(...)):
    stories = get_project().add_user_stories(await _buffer(files))
    return {"success": True, "user_stories": stories}

@app.get("/user-stories", response_model=List[UserStory])
async def list_user_stories():
    return list(get_project().store.get("user_stories"))

@app.put("/user-stories/{story_id}", response_model=UserStory)
async def update_user_story(story_id: str, body: UserStory):
    if body.id != story_id:
        raise HTTPException(400, "User story id does not match the path")
    story = get_project().update_user_story(body)
    if story is None:
        raise HTTPException(404, "User story not found")
    return story

@app.delete("/user-stories/{story_id}")
async def delete_user_story(story_id: str):
    if not get_project().delete_user_story(story_id):
        raise HTTPException(404, "User story not found")
    return {"ok": True, "deleted_user_story_id": story_id}

@app.post("/user-stories/{story_id}/extract", response_model=UserStory)
async def extract_user_story(story_id: str):
    _story_or_404(story_id)
    await get_project().extract_user_story(story_id)
    return _story_or_404(story_id)

@app.post("/user-stories/{story_id}/generate", response_model=List[TestCase])
async def generate_for_user_story(story_id: str):
    _story_or_404(story_id)
    return await get_project().generate_test_cases_for_user_story(story_id)


# ----------------------------
# Notifications / recent searches
# ----------------------------

@app.get("/notifications")
async def list_notifications():
    return get_project().active_notifications()

@app.delete("/notifications/{notification_id}")
async def dismiss_notification(notification_id: int):
    return {"ok": get_project().dismiss_notification(notification_id)}

@app.get("/recent-searches")
async def list_recent_searches():
    return get_project().recent_queries.entries()

@app.post("/recent-searches")
async def add_recent_search(body: SearchRequest):
    get_project().add_recent_search(body.query)
    return get_project().recent_queries.entries()

@app.delete("/recent-searches")
async def clear_recent_searches():
    get_project().clear_recent_searches()
    return {"ok": True}


# ----------------------------
# Metrics / traceability
# ----------------------------

@app.get("/metrics")
async def get_metrics() -> Dict[str, Any]:
    p = get_project()
    return {
        "kpis": p.kpis(),
        "requirement_coverage": [pt._asdict() for pt in p.requirement_coverage_data()],
        "test_case_status": [pt._asdict() for pt in p.status_breakdown()],
    }

@app.get("/traceability")
async def get_traceability():
    return get_project().traceability()

@app.get("/traceability/{requirement_id}", response_model=List[TestCase])
async def get_requirement_trace(requirement_id: str):
    p = get_project()
    if p.store.find("requirements", requirement_id) is None:
        raise HTTPException(404, "Requirement not found")
    return metrics.test_cases_for(p.snapshot(), requirement_id)


# ----------------------------
# Theme / tools
# ----------------------------

@app.get("/theme")
async def get_theme():
    return {"theme": get_project().theme()}

@app.post("/theme/toggle")
async def toggle_theme():
    return {"theme": get_project().toggle_theme()}

@app.post("/tools/api-test-script")
async def api_test_script(body: ScriptRequest):
    p = get_project()
    code = await p.generate_api_test_script(body.json_input, body.status_code, body.variable_params)
    if code is None:
        raise HTTPException(400, _last_error(p))
    return {"code": code}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
