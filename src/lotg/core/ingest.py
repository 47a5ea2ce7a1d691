"""Ingestion pipeline: upload -> extract -> fingerprint/dedup -> score -> persist -> finalize job."""

import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from .approval_policy import ApprovalPolicyEngine
from .errors import ConflictError, ExtractionError, InvalidRequestError, LotgError, PolicyViolationError
from .extraction import ExtractionAdapter, ExtractionOutcome
from .hashing import fingerprint
from .ids import new_id, utc_now
from .jobs import JobLifecycleManager
from .logging_config import get_audit_logger, log_ingestion_event
from .models import (
    BankQuestion,
    CandidateQuestion,
    DEFAULT_CATEGORY,
    ExtractionJob,
    JobSource,
    JobStatus,
    ManualQuestionRequest,
    QuestionSource,
    QuestionStatus,
    question_key,
)
from .object_store import LocalObjectStore
from .question_bank import QuestionBankManager
from .store import BatchWriteResult, DocumentStore

logger = get_audit_logger("ingest")

UPLOAD_PREFIX = "uploads"
DEFAULT_BUCKET = "local"
DEFAULT_FILE_NAME = "unknown.pdf"
DEFAULT_EXTRACTION_TIMEOUT = 300.0


def parse_upload_key(key: str) -> Tuple[str, str]:
    """
    Derive job id and file name from ``uploads/{jobId}/{fileName}``.

    A key without a usable job id segment gets a freshly generated id.
    """
    parts = key.split("/")
    job_id = parts[1] if len(parts) >= 3 and parts[1].strip() else new_id()
    file_name = parts[-1] or DEFAULT_FILE_NAME
    return job_id, file_name


def upload_key(job_id: str, file_name: str) -> str:
    return f"{UPLOAD_PREFIX}/{job_id}/{file_name}"


@dataclass
class IngestResult:
    """Result of ingesting a single uploaded document."""
    job_id: str
    source_key: str = ""
    status: JobStatus = JobStatus.PROCESSING
    total_questions: int = 0
    approved_count: int = 0
    pending_count: int = 0
    rejected_count: int = 0
    duplicate_count: int = 0
    discarded_count: int = 0
    staged: int = 0
    persisted: int = 0
    failed_chunks: List[int] = field(default_factory=list)
    question_ids: List[str] = field(default_factory=list)
    error: Optional[str] = None
    skipped: bool = False
    elapsed_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == JobStatus.COMPLETED

    @property
    def complete(self) -> bool:
        """True when every staged question was durably written."""
        return self.success and self.persisted == self.staged


@dataclass
class _StagedBatch:
    questions: List[BankQuestion] = field(default_factory=list)
    duplicate_count: int = 0


class IngestionPipeline:
    """
    Orchestrates one ingestion run per uploaded document.

    Usage:
        pipeline = IngestionPipeline(store, object_store, extractor)
        result = pipeline.process_upload("local", "uploads/<jobId>/exam.pdf")

    Every collaborator is passed in; the pipeline keeps no state between runs.
    """

    def __init__(
        self,
        store: DocumentStore,
        object_store: LocalObjectStore,
        extractor: ExtractionAdapter,
        policy: Optional[ApprovalPolicyEngine] = None,
        extraction_timeout: float = DEFAULT_EXTRACTION_TIMEOUT,
    ):
        self.object_store = object_store
        self.extractor = extractor
        self.policy = policy or ApprovalPolicyEngine()
        self.extraction_timeout = extraction_timeout
        self.jobs = JobLifecycleManager(store)
        self.bank = QuestionBankManager(store)

    # ------------------------------------------------------------------
    # Upload ingestion
    # ------------------------------------------------------------------

    def process_upload(self, bucket: str, key: str, job_id: Optional[str] = None) -> IngestResult:
        """
        Ingest one uploaded document.

        Steps:
        1. Create the job in ``processing``
        2. Fetch the document bytes
        3. Extract candidates (timeout-bounded)
        4. Fingerprint, dedup and score each candidate
        5. Batch-insert the staged questions
        6. Complete the job with counters matching what was written

        Any failure after step 1 leaves the job ``failed`` with the error.
        If only the final job write in step 6 fails, the questions written in
        step 5 stay in the bank and the review queue under a ``failed`` job;
        ``ReviewCoordinator.reconcile_job`` counts them onto the job and logs
        ``failed_job_owns_questions``.

        Args:
            bucket: Object store bucket
            key: Object key, normally ``uploads/{jobId}/{fileName}``
            job_id: Overrides the id derived from the key

        Returns:
            IngestResult with the job's final status and counts
        """
        start_time = time.time()
        started_at = utc_now()
        derived_job_id, file_name = parse_upload_key(key)
        job_id = job_id or derived_job_id
        result = IngestResult(job_id=job_id, source_key=key)

        job = ExtractionJob(
            job_id=job_id,
            source_key=key,
            display_name=file_name,
            status=JobStatus.PROCESSING,
            source=JobSource.UPLOAD,
            created_at=started_at,
            updated_at=started_at,
        )
        try:
            self.jobs.create(job)
        except ConflictError:
            # redelivered notification: the first delivery owns the job
            existing = self.jobs.get(job_id)
            logger.warning("duplicate_upload_event", job_id=job_id, key=key, status=existing.status.value)
            result = self._result_from_job(existing, result)
            result.skipped = True
            result.elapsed_seconds = time.time() - start_time
            return result

        logger.info("ingestion_started", job_id=job_id, bucket=bucket, key=key)

        try:
            document = self.object_store.get(bucket, key)
            logger.info("document_fetched", job_id=job_id, bytes=len(document))

            outcome = self._extract(document)
            result.discarded_count = outcome.discarded_count

            batch = self._stage(outcome.candidates, job_id, key, started_at)
            result.staged = len(batch.questions)
            result.duplicate_count = batch.duplicate_count

            write = self.bank.batch_insert(batch.questions)
            persisted = self._persisted(batch.questions, write)
            result.persisted = len(persisted)
            result.failed_chunks = list(write.failed_chunks)
            result.question_ids = [q.question_id for q in persisted]
            if not write.complete:
                logger.error(
                    "questions_partially_persisted",
                    job_id=job_id,
                    staged=write.staged,
                    persisted=write.written,
                    failed_chunks=write.failed_chunks,
                )

            approved = sum(1 for q in persisted if q.status == QuestionStatus.APPROVED)
            finished = self.jobs.transition(job_id, JobStatus.COMPLETED, counters={
                "total_questions": len(persisted),
                "approved_count": approved,
                "pending_count": len(persisted) - approved,
                "rejected_count": 0,
                "duplicate_count": batch.duplicate_count,
            })
            result = self._result_from_job(finished, result)

        except Exception as e:
            logger.error("ingestion_failed", job_id=job_id, key=key, error=str(e))
            result.status = JobStatus.FAILED
            result.error = str(e) or e.__class__.__name__
            self._fail_job(job_id, result.error)

        result.elapsed_seconds = time.time() - start_time
        log_ingestion_event(
            logger,
            job_id=job_id,
            source_key=key,
            status=result.status.value,
            total_questions=result.total_questions,
            approved_count=result.approved_count,
            pending_count=result.pending_count,
            duplicate_count=result.duplicate_count,
            discarded_count=result.discarded_count,
            processing_time_ms=result.elapsed_seconds * 1000,
            failed_chunks=result.failed_chunks,
        )
        return result

    def process_file(
        self,
        pdf_path: Path,
        bucket: str = DEFAULT_BUCKET,
        job_id: Optional[str] = None,
    ) -> IngestResult:
        """Place a local PDF in the upload area and ingest it."""
        pdf_path = Path(pdf_path)
        job_id = job_id or new_id()
        key = upload_key(job_id, pdf_path.name)
        self.object_store.put_file(bucket, key, pdf_path)
        return self.process_upload(bucket, key)

    def ingest_directory(self, directory_path: Path, bucket: str = DEFAULT_BUCKET) -> List[IngestResult]:
        """Ingest every PDF in a directory, one job per file."""
        pdf_files = sorted(Path(directory_path).glob("*.pdf"))

        if not pdf_files:
            logger.warning("no_pdfs_found", directory=str(directory_path))
            return []

        logger.info("directory_ingest_started", directory=str(directory_path), files=len(pdf_files))
        results = [self.process_file(pdf_path, bucket=bucket) for pdf_path in pdf_files]
        succeeded = sum(1 for r in results if r.success)
        logger.info("directory_ingest_completed", succeeded=succeeded, total=len(results))
        return results

    def _extract(self, document: bytes) -> ExtractionOutcome:
        """Run the extractor with a hard upper bound on wall time."""
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="extraction")
        try:
            future = executor.submit(self.extractor.extract, document)
            try:
                return future.result(timeout=self.extraction_timeout)
            except FutureTimeoutError:
                raise ExtractionError(
                    f"Extraction timed out after {self.extraction_timeout:.0f}s"
                ) from None
        finally:
            executor.shutdown(wait=False)

    def _stage(
        self,
        candidates: List[CandidateQuestion],
        job_id: str,
        source_key: str,
        started_at: str,
    ) -> _StagedBatch:
        batch = _StagedBatch()
        seen = set()

        for candidate in candidates:
            content_hash = fingerprint(candidate.text, candidate.options)
            if content_hash in seen or self.bank.exists_by_hash(content_hash):
                batch.duplicate_count += 1
                logger.info("duplicate_question", job_id=job_id, hash=content_hash, text=candidate.text[:50])
                continue
            seen.add(content_hash)

            decision = self.policy.decide(candidate.confidence)
            batch.questions.append(BankQuestion(
                question_id=new_id(),
                text=candidate.text,
                options=candidate.options,
                correct_answer=candidate.correct_answer,
                explanation=candidate.explanation,
                law=candidate.law,
                law_reference=candidate.law_reference,
                confidence=candidate.confidence,
                status=decision.status,
                source_file=source_key,
                job_id=job_id,
                hash=content_hash,
                source=QuestionSource.EXTRACTION,
                created_at=started_at,
                updated_at=started_at,
            ))

        return batch

    @staticmethod
    def _persisted(staged: List[BankQuestion], write: BatchWriteResult) -> List[BankQuestion]:
        failed = set(write.failed_keys)
        return [q for q in staged if question_key(q.question_id) not in failed]

    def _fail_job(self, job_id: str, message: str) -> None:
        try:
            self.jobs.transition(job_id, JobStatus.FAILED, error_message=message)
        except LotgError as e:
            # job stays as last written; reconcile or operator action needed
            logger.error("job_fail_transition_failed", job_id=job_id, error=str(e))

    @staticmethod
    def _result_from_job(job: ExtractionJob, result: IngestResult) -> IngestResult:
        result.status = job.status
        result.total_questions = job.total_questions
        result.approved_count = job.approved_count
        result.pending_count = job.pending_count
        result.rejected_count = job.rejected_count
        result.duplicate_count = job.duplicate_count
        result.error = job.error_message
        return result

    # ------------------------------------------------------------------
    # Manual entry
    # ------------------------------------------------------------------

    def create_manual_job(
        self,
        title: str,
        description: str = "",
        category: Optional[str] = None,
    ) -> ExtractionJob:
        """Create a job that questions are typed into; it starts completed."""
        if not title or not title.strip():
            raise InvalidRequestError("title is required")

        now = utc_now()
        job = ExtractionJob(
            job_id=new_id(),
            source_key="",
            display_name=title.strip(),
            status=JobStatus.COMPLETED,
            source=JobSource.MANUAL,
            description=(description or "").strip(),
            category=(category or "").strip() or DEFAULT_CATEGORY,
            created_at=now,
            updated_at=now,
            completed_at=now,
        )
        return self.jobs.create(job)

    def add_manual_question(
        self,
        job_id: str,
        request: Union[ManualQuestionRequest, Dict[str, Any]],
    ) -> BankQuestion:
        """
        Add a reviewer-entered question to a job.

        Manual questions are approved on entry with confidence 1.0.

        Raises:
            InvalidRequestError: request fails validation
            NotFoundError: job does not exist
            PolicyViolationError: job is still being processed or failed
            ConflictError: a question with the same content already exists
        """
        if not isinstance(request, ManualQuestionRequest):
            try:
                request = ManualQuestionRequest.model_validate(request)
            except ValidationError as e:
                raise InvalidRequestError(str(e)) from e

        job = self.jobs.get(job_id)
        if job.status != JobStatus.COMPLETED:
            raise PolicyViolationError(f"Questions can only be added to completed jobs (job is {job.status.value})")

        options = [opt.strip() for opt in request.options]
        text = request.text.strip()
        now = utc_now()
        tags = [tag.strip() for tag in request.tags if tag.strip()] if request.tags is not None else None

        question = BankQuestion(
            question_id=new_id(),
            text=text,
            options=options,
            correct_answer=request.correct_answer,
            explanation=request.explanation.strip(),
            law=request.law,
            law_reference=request.law_reference.strip(),
            confidence=1.0,
            status=QuestionStatus.APPROVED,
            source_file="",
            job_id=job_id,
            hash=fingerprint(text, options),
            source=QuestionSource.MANUAL,
            difficulty=request.difficulty,
            tags=tags,
            usage_count=0,
            created_at=now,
            updated_at=now,
        )
        self.bank.insert_unique(question)
        self.jobs.record_new_question(job_id, QuestionStatus.APPROVED)
        logger.info("manual_question_added", job_id=job_id, question_id=question.question_id)
        return question
