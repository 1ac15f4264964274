import asyncio
import bisect
import itertools
import logging
import random
from collections import deque
from typing import Any, Coroutine, Deque, Dict, List, NamedTuple, Optional, Protocol, Sequence, Set
from uuid import uuid4

from config import Settings
from models import (
    Document,
    DocumentStatus,
    Priority,
    Requirement,
    RequirementDraft,
    RequirementStatus,
    RequirementType,
    now_iso,
)
from storage import EntityStore, Snapshot
from backend.services.inference import InferenceClient, parse_requirement_drafts
from backend.services.notifications import NotificationBus
from backend.services.prompts import EXTRACTION_INSTRUCTION, REQUIREMENT_SCHEMA

logger = logging.getLogger("reqtrace")

SUPPORTED_MIME_TYPES = frozenset([
    "application/pdf",
    "text/plain",
    "text/markdown",
    "image/jpeg",
    "image/png",
    "image/webp",
    "text/csv",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
])

QUALITY_SCORE_RANGE = (75, 98)


def new_document_id() -> str:
    return f"doc-{uuid4().hex[:12]}"


def new_requirement_id() -> str:
    return f"REQ-{uuid4().hex[:8].upper()}"


class UploadedFile(Protocol):
    """Content-load collaborator: a file whose bytes arrive later (FastAPI's UploadFile fits)."""
    filename: Optional[str]
    content_type: Optional[str]
    size: Optional[int]

    async def read(self) -> bytes: ...


class BufferedUpload:
    """An UploadedFile over bytes already in memory."""

    def __init__(self, filename: str, content_type: str, data: bytes):
        self.filename = filename
        self.content_type = content_type
        self.data = data
        self.size = len(data)

    async def read(self) -> bytes:
        return self.data


class ExtractionJob(NamedTuple):
    document_id: str
    file_name: str
    mime_type: str
    content: bytes


def spawn(tasks: Set["asyncio.Task[Any]"], coro: Coroutine) -> Optional["asyncio.Task[Any]"]:
    """Start a background task on the running loop and keep a reference until it finishes."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        coro.close()
        logger.warning("No running event loop; background work not started")
        return None
    task = loop.create_task(coro)
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    return task


class ExtractionScheduler:
    """
    Document -> requirement pipeline.

    Documents become eligible once they are Pending with content. Eligible
    ids wait in a FIFO (ordered by upload) and are admitted while fewer than
    max_concurrent jobs are active; admission flips the document to Parsing
    in the same step. Admission is re-evaluated whenever the documents
    collection changes and whenever a job finishes.

    Completion order is whatever the inference service makes it. A job whose
    document was deleted while in flight commits nothing.
    """

    def __init__(
        self,
        store: EntityStore,
        inference: InferenceClient,
        notifications: NotificationBus,
        max_concurrent: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.inference = inference
        self.notifications = notifications
        self.max_concurrent = Settings.MAX_CONCURRENT_EXTRACTIONS if max_concurrent is None else max_concurrent
        self.rng = rng or random.Random()

        self._queue: List[str] = []
        self._retries: Deque[str] = deque()
        self._order: Dict[str, int] = {}
        self._seq = itertools.count()
        self._active: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._evaluating = False
        self._dirty = False

        store.subscribe("documents", lambda _old, _new: self.evaluate())

    # -------------------- introspection --------------------

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def queued(self) -> List[str]:
        return list(self._retries) + list(self._queue)

    @property
    def idle(self) -> bool:
        return not self._tasks

    async def drain(self) -> None:
        """Wait for every in-flight load and extraction, including ones they start."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -------------------- intake --------------------

    def add_documents(self, files: Sequence[UploadedFile]) -> List[Document]:
        docs = [
            Document(
                id=new_document_id(),
                file_name=f.filename or "untitled",
                file_type=f.content_type or "",
                size=f.size or 0,
            )
            for f in files
        ]
        if not docs:
            return []

        for d in docs:
            self._order[d.id] = next(self._seq)
        self.store.mutate("documents", lambda items: list(items) + docs)
        logger.info("Queued %d document(s) for upload", len(docs))

        for doc, f in zip(docs, files):
            spawn(self._tasks, self._load(doc.id, f))
        return docs

    async def _load(self, document_id: str, f: UploadedFile) -> None:
        name = f.filename or "untitled"
        try:
            content = await f.read()
        except Exception as exc:
            logger.warning("Could not read %s: %s: %s", name, type(exc).__name__, exc)
            if self._set_status(document_id, DocumentStatus.ERROR):
                self.notifications.error(f"Could not read {name}.")
            return

        if not content:
            if self._set_status(document_id, DocumentStatus.ERROR):
                self.notifications.error(f"{name} is empty.")
            return

        self.content_loaded(document_id, content)

    def content_loaded(self, document_id: str, content: bytes) -> bool:
        """Attach loaded bytes to a document. False when the document is gone or content is empty."""
        doc = self.store.find("documents", document_id)
        if doc is None or not content:
            return False

        if doc.status is DocumentStatus.PENDING:
            self._enqueue(document_id)
        self.store.mutate(
            "documents",
            lambda items: [d.model_copy(update={"content": content}) if d.id == document_id else d for d in items],
        )
        return True

    def retry(self, document_id: str) -> bool:
        """
        Re-run a failed extraction. Starts at once (Error -> Parsing) when a
        slot is free. When every slot is busy the document goes back to
        Pending and waits at the head of the queue, ahead of new uploads.
        """
        doc = self.store.find("documents", document_id)
        if doc is None or doc.status is not DocumentStatus.ERROR:
            return False
        if not doc.has_content:
            self.notifications.error(f"{doc.file_name} has no content to process.")
            return False

        if len(self._active) < self.max_concurrent and self._loop_running():
            self._dispatch(doc)
        else:
            self._retries.append(document_id)
            self._set_status(document_id, DocumentStatus.PENDING)
        return True

    def _enqueue(self, document_id: str) -> None:
        if document_id in self._queue or document_id in self._retries:
            return
        if document_id not in self._order:
            self._order[document_id] = next(self._seq)
        bisect.insort(self._queue, document_id, key=self._order.__getitem__)

    # -------------------- admission --------------------

    @staticmethod
    def _loop_running() -> bool:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return False
        return True

    def _next_candidate(self) -> Optional[str]:
        if self._retries:
            return self._retries.popleft()
        if self._queue:
            return self._queue.pop(0)
        return None

    def evaluate(self) -> int:
        """Admit queued documents into free slots. Returns how many were dispatched."""
        if self._evaluating:
            self._dirty = True
            return 0
        if not self._loop_running():
            return 0

        self._evaluating = True
        dispatched = 0
        try:
            while True:
                self._dirty = False
                while len(self._active) < self.max_concurrent:
                    doc_id = self._next_candidate()
                    if doc_id is None:
                        break
                    doc = self.store.find("documents", doc_id)
                    if doc is None or doc.status is not DocumentStatus.PENDING or not doc.has_content:
                        self._order.pop(doc_id, None)
                        continue
                    if self._dispatch(doc):
                        dispatched += 1
                if not self._dirty:
                    break
        finally:
            self._evaluating = False

        if dispatched:
            logger.debug("Admitted %d document(s); %d active, %d queued", dispatched, len(self._active), len(self.queued))
        return dispatched

    def _dispatch(self, doc: Document) -> bool:
        self._order.pop(doc.id, None)

        if doc.file_type not in SUPPORTED_MIME_TYPES:
            # rejected without ever holding a slot
            self._set_status(doc.id, DocumentStatus.ERROR)
            self.notifications.error(f"File type not supported: {doc.file_name} ({doc.file_type or 'unknown'}).")
            return False

        self._active.add(doc.id)
        self._set_status(doc.id, DocumentStatus.PARSING)
        job = ExtractionJob(doc.id, doc.file_name, doc.file_type, doc.content)
        spawn(self._tasks, self._run(job))
        logger.info("Extracting requirements from %s", doc.file_name)
        return True

    # -------------------- jobs --------------------

    async def _run(self, job: ExtractionJob) -> None:
        drafts: Optional[List[RequirementDraft]] = None
        error: Optional[Exception] = None
        try:
            raw = await self.inference.extract(
                job.content, job.mime_type, EXTRACTION_INSTRUCTION, REQUIREMENT_SCHEMA, file_name=job.file_name
            )
            drafts = parse_requirement_drafts(raw)
        except Exception as exc:
            error = exc

        self._active.discard(job.document_id)
        try:
            if error is None:
                self._commit(job, drafts or [])
            else:
                logger.warning("Extraction failed for %s: %s: %s", job.file_name, type(error).__name__, error)
                if self._set_status(job.document_id, DocumentStatus.ERROR):
                    self.notifications.error(f"Processing failed for {job.file_name}")
        finally:
            self.evaluate()

    def _commit(self, job: ExtractionJob, drafts: List[RequirementDraft]) -> None:
        created: List[Requirement] = []
        applied: List[bool] = []

        def tx(snap: Snapshot) -> Dict[str, list]:
            doc = next((d for d in snap.documents if d.id == job.document_id), None)
            if doc is None:
                return {}  # deleted while in flight
            applied.append(True)

            taken = {r.id for r in snap.requirements}
            covered = {tc.requirement_id for tc in snap.test_cases}
            now = now_iso()
            for draft in drafts:
                rid = draft.id if draft.id and draft.id not in taken else new_requirement_id()
                taken.add(rid)
                created.append(
                    Requirement(
                        id=rid,
                        text=draft.text or "No text provided",
                        source=doc.file_name,
                        status=RequirementStatus.MAPPED if rid in covered else RequirementStatus.UNMAPPED,
                        type=draft.type or RequirementType.FUNCTIONAL,
                        priority=draft.priority or Priority.MEDIUM,
                        created_on=now,
                        quality_score=self.rng.randint(*QUALITY_SCORE_RANGE),
                    )
                )
            return {
                "requirements": list(snap.requirements) + created,
                "documents": [
                    d.model_copy(update={"status": DocumentStatus.SUCCESS}) if d.id == doc.id else d
                    for d in snap.documents
                ],
            }

        self.store.apply(tx)
        if not applied:
            logger.info("Discarded result for deleted document %s", job.file_name)
            return

        logger.info("%s processed: %d requirements", job.file_name, len(created))
        self.notifications.success(f"{job.file_name} processed: {len(created)} requirements extracted.")

    def _set_status(self, document_id: str, status: DocumentStatus) -> bool:
        if self.store.find("documents", document_id) is None:
            return False
        self.store.mutate(
            "documents",
            lambda items: [d.model_copy(update={"status": status}) if d.id == document_id else d for d in items],
        )
        return True
