"""
Pytest configuration and fixtures for the question bank tests.
"""

import json
from typing import Any, Dict, List, Optional

import pytest

from lotg.core.errors import TransientStoreError
from lotg.core.extraction import ExtractionAdapter, ExtractionOutcome, parse_extraction_response
from lotg.core.ingest import IngestionPipeline, upload_key
from lotg.core.models import BankQuestion, ExtractionJob, JobSource, JobStatus, QuestionSource, QuestionStatus
from lotg.core.hashing import fingerprint
from lotg.core.object_store import LocalObjectStore
from lotg.core.store import InMemoryDocumentStore

BUCKET = "exams"


# =============================================================================
# Collaborator doubles
# =============================================================================


class FakeExtractionAdapter(ExtractionAdapter):
    """Returns canned model output; raises when given an error."""

    def __init__(self, items: Optional[List[Any]] = None, error: Optional[Exception] = None):
        self.items = items or []
        self.error = error
        self.calls = 0

    def extract(self, document_bytes: bytes) -> ExtractionOutcome:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return parse_extraction_response(json.dumps(self.items), model="fake")


class FlakyDocumentStore(InMemoryDocumentStore):
    """In-memory store whose batch writes fail for chosen chunk numbers."""

    def __init__(self, failing_chunks=()):
        super().__init__()
        self.failing_chunks = set(failing_chunks)
        self._chunk_calls = 0

    def _write_chunk(self, items):
        chunk = self._chunk_calls
        self._chunk_calls += 1
        if chunk in self.failing_chunks:
            raise TransientStoreError(f"throttled on chunk {chunk}")
        super()._write_chunk(items)


class QuestionWriteFailsOnceStore(InMemoryDocumentStore):
    """In-memory store whose first question write fails."""

    def __init__(self):
        super().__init__()
        self.failed = False

    def put(self, item):
        if item["PK"].startswith("QUESTION#") and not self.failed:
            self.failed = True
            raise TransientStoreError("throttled")
        super().put(item)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def object_store(tmp_path):
    return LocalObjectStore(tmp_path / "objects")


@pytest.fixture
def upload(object_store, tmp_path):
    """Place a fake PDF in the upload area and return its key."""

    def _upload(job_id: str = "JOB1", file_name: str = "exam.pdf", content: bytes = b"%PDF-1.4 fake") -> str:
        source = tmp_path / f"{job_id}-{file_name}"
        source.write_bytes(content)
        key = upload_key(job_id, file_name)
        object_store.put_file(BUCKET, key, source)
        return key

    return _upload


@pytest.fixture
def make_pipeline(store, object_store):
    """Build a pipeline around a fake extractor returning ``items``."""

    def _make(items=None, error=None, pipeline_store=None, **kwargs) -> IngestionPipeline:
        return IngestionPipeline(
            store=pipeline_store if pipeline_store is not None else store,
            object_store=object_store,
            extractor=FakeExtractionAdapter(items, error),
            **kwargs,
        )

    return _make


# =============================================================================
# Sample data
# =============================================================================


def candidate(text: str = "What is the minimum number of players?", confidence: float = 0.9, **overrides) -> Dict[str, Any]:
    """One model item in the shape the extraction prompt asks for."""
    item = {
        "text": text,
        "options": ["Five", "Six", "Seven", "Eight"],
        "correctAnswer": 2,
        "explanation": "A match may not start if either team has fewer than seven players.",
        "law": "Law 3",
        "lawReference": "Law 3.1",
        "confidence": confidence,
    }
    item.update(overrides)
    return item


def make_job(job_id: str = "JOB1", status: JobStatus = JobStatus.COMPLETED, **counters) -> ExtractionJob:
    return ExtractionJob(
        job_id=job_id,
        source_key=f"uploads/{job_id}/exam.pdf",
        display_name="exam.pdf",
        status=status,
        source=JobSource.UPLOAD,
        created_at="2026-01-01T00:00:00+00:00",
        updated_at="2026-01-01T00:00:00+00:00",
        **counters,
    )


def make_question(
    question_id: str,
    job_id: str = "JOB1",
    status: QuestionStatus = QuestionStatus.PENDING_REVIEW,
    created_at: str = "2026-01-01T00:00:00+00:00",
    law: str = "Law 3",
    text: Optional[str] = None,
) -> BankQuestion:
    text = text or f"Question {question_id}?"
    options = ["A", "B", "C", "D"]
    return BankQuestion(
        question_id=question_id,
        text=text,
        options=options,
        correct_answer=0,
        explanation="Because.",
        law=law,
        law_reference=law,
        confidence=0.8,
        status=status,
        source_file=f"uploads/{job_id}/exam.pdf",
        job_id=job_id,
        hash=fingerprint(text, options),
        source=QuestionSource.EXTRACTION,
        created_at=created_at,
        updated_at=created_at,
    )


