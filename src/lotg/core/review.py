"""Review Coordinator: single and bulk status changes, job counter upkeep, reconciliation."""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .errors import InvalidRequestError, NotFoundError
from .jobs import JobLifecycleManager
from .logging_config import get_audit_logger, log_bulk_review_event, log_review_event
from .models import DEFAULT_REVIEWER, ExtractionJob, JobStatus, QuestionStatus, STATUS_COUNTERS
from .question_bank import QuestionBankManager
from .store import DocumentStore

logger = get_audit_logger("review")

VALID_STATUSES = [status.value for status in QuestionStatus]
MAX_BULK_REVIEW = 100


def parse_status(status) -> QuestionStatus:
    """Accept a QuestionStatus or its string value."""
    try:
        return QuestionStatus(status)
    except ValueError:
        raise InvalidRequestError(
            f"Invalid status. Must be one of: {', '.join(VALID_STATUSES)}"
        ) from None


def status_deltas(previous: QuestionStatus, new: QuestionStatus) -> Dict[str, int]:
    """Counter deltas for moving one question between statuses."""
    if previous == new:
        return {}
    return {STATUS_COUNTERS[previous]: -1, STATUS_COUNTERS[new]: 1}


@dataclass
class ReviewResult:
    question_id: str
    job_id: str
    previous_status: QuestionStatus
    status: QuestionStatus
    reviewed_by: str

    @property
    def changed(self) -> bool:
        return self.previous_status != self.status


@dataclass
class BulkItemResult:
    question_id: str
    success: bool
    previous_status: Optional[QuestionStatus] = None
    error: Optional[str] = None


@dataclass
class BulkReviewResult:
    """Summary of one bulk review batch."""
    target_status: QuestionStatus
    results: List[BulkItemResult] = field(default_factory=list)
    job_deltas: Dict[str, Dict[str, int]] = field(default_factory=dict)
    failed_jobs: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return self.total - self.successful

    def summary(self) -> Dict[str, object]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "targetStatus": self.target_status.value,
        }


class ReviewCoordinator:
    """
    Applies reviewer decisions to questions and keeps job counters in step.

    The question write and the job counter write are separate store
    operations with no transaction across them. If the second one fails or
    races with another reviewer, ``reconcile_job`` recomputes the counters
    from the job's questions.
    """

    def __init__(self, store: DocumentStore):
        self.bank = QuestionBankManager(store)
        self.jobs = JobLifecycleManager(store)

    def review(
        self,
        question_id: str,
        status,
        reviewed_by: Optional[str] = None,
    ) -> ReviewResult:
        """
        Set one question's status.

        Reviewing a question into the status it already has still stamps
        ``reviewedAt``/``reviewedBy`` but leaves job counters untouched.

        Raises:
            InvalidRequestError: unknown status
            NotFoundError: question does not exist
        """
        status = parse_status(status)
        reviewer = reviewed_by or DEFAULT_REVIEWER

        question = self.bank.get(question_id)
        if question is None:
            raise NotFoundError(f"Question not found: {question_id}")

        previous = self.bank.set_status(question_id, status, reviewer)
        if previous is None:
            raise NotFoundError(f"Question not found: {question_id}")

        deltas = status_deltas(previous, status)
        if deltas:
            self._settle(self.jobs.adjust_counters(question.job_id, deltas))

        log_review_event(logger, question_id, question.job_id, previous.value, status.value, reviewer)
        return ReviewResult(
            question_id=question_id,
            job_id=question.job_id,
            previous_status=previous,
            status=status,
            reviewed_by=reviewer,
        )

    def bulk_review(
        self,
        question_ids: Sequence[str],
        status,
        reviewed_by: Optional[str] = None,
    ) -> BulkReviewResult:
        """
        Set the same status on up to 100 questions.

        Items are processed independently; a missing question or any error on
        one item is recorded in its result and the batch goes on.
        Counter deltas are summed per job and written once per job.
        """
        if not isinstance(question_ids, (list, tuple)) or not question_ids:
            raise InvalidRequestError("questionIds must be a non-empty array")
        if len(question_ids) > MAX_BULK_REVIEW:
            raise InvalidRequestError(f"Maximum {MAX_BULK_REVIEW} questions per bulk operation")
        status = parse_status(status)
        reviewer = reviewed_by or DEFAULT_REVIEWER

        result = BulkReviewResult(target_status=status)
        job_deltas: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))

        for question_id in question_ids:
            try:
                question = self.bank.get(question_id)
                previous = self.bank.set_status(question_id, status, reviewer) if question else None
            except Exception as e:
                logger.error("bulk_review_item_failed", question_id=question_id, error=str(e))
                result.results.append(BulkItemResult(question_id, False, error="Processing failed"))
                continue

            if previous is None:
                result.results.append(BulkItemResult(question_id, False, error="Question not found"))
                continue

            for counter, delta in status_deltas(previous, status).items():
                job_deltas[question.job_id][counter] += delta
            result.results.append(BulkItemResult(question_id, True, previous_status=previous))

        for job_id, deltas in job_deltas.items():
            net = {counter: delta for counter, delta in deltas.items() if delta}
            if not net:
                continue
            result.job_deltas[job_id] = net
            try:
                self._settle(self.jobs.adjust_counters(job_id, net))
            except Exception as e:
                # question statuses are already written; reconcile repairs the job
                logger.error("bulk_review_job_update_failed", job_id=job_id, deltas=net, error=str(e))
                result.failed_jobs.append(job_id)

        log_bulk_review_event(
            logger,
            target_status=status.value,
            total=result.total,
            successful=result.successful,
            failed=result.failed,
            job_deltas=result.job_deltas,
            reviewed_by=reviewer,
        )
        return result

    def _settle(self, job: ExtractionJob) -> ExtractionJob:
        """Repair a finished job whose counters no longer add up after a delta was applied."""
        if job.counters_consistent or not job.is_terminal:
            return job
        return self.reconcile_job(job.job_id)

    def reconcile_job(self, job_id: str) -> ExtractionJob:
        """Recompute a job's review counters from its questions and overwrite them."""
        job = self.jobs.get(job_id)
        questions = self.bank.list_by_job(job_id)
        if job.status == JobStatus.FAILED and questions:
            logger.warning("failed_job_owns_questions", job_id=job_id, questions=len(questions))

        counts = {name: 0 for name in STATUS_COUNTERS.values()}
        for question in questions:
            counts[STATUS_COUNTERS[question.status]] += 1
        counts["total_questions"] = len(questions)

        drift = {name: (getattr(job, name), value) for name, value in counts.items() if getattr(job, name) != value}
        if not drift:
            return job

        logger.warning("job_counters_reconciled", job_id=job_id, drift=drift)
        return self.jobs.set_counters(job_id, counts)

    def reconcile_all(self) -> List[ExtractionJob]:
        """Reconcile every job; returns the jobs whose counters changed."""
        repaired = []
        for job in self.jobs.list_jobs():
            reconciled = self.reconcile_job(job.job_id)
            if reconciled != job:
                repaired.append(reconciled)
        logger.info("reconcile_completed", repaired=len(repaired))
        return repaired
