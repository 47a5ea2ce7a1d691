"""Job Lifecycle Manager: the ExtractionJob state machine and its counters."""

from typing import Dict, List, Mapping, Optional

from .errors import ConflictError, InvalidRequestError, NotFoundError, PolicyViolationError
from .ids import utc_now
from .logging_config import get_audit_logger, log_job_transition
from .models import (
    ExtractionJob, JobStatus, QuestionStatus, STATUS_COUNTERS, JOB_TYPE, METADATA_SK, job_key,
)
from .store import DocumentStore

logger = get_audit_logger("jobs")

COUNTER_FIELDS = (
    "total_questions",
    "approved_count",
    "pending_count",
    "rejected_count",
    "duplicate_count",
)
REVIEW_COUNTERS = ("approved_count", "pending_count", "rejected_count")

ALLOWED_TRANSITIONS: Dict[JobStatus, set] = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


def _alias(field_name: str) -> str:
    return ExtractionJob.model_fields[field_name].alias or field_name


def _check_counter_names(names, allowed) -> None:
    unknown = set(names) - set(allowed)
    if unknown:
        raise InvalidRequestError(f"Unknown job counters: {', '.join(sorted(unknown))}")


class JobLifecycleManager:
    """
    Owns ExtractionJob records.

    Every mutation is a partial, field-level update against the store. There
    is no concurrency token: concurrent writers on the same job are
    last-write-wins per field, and counter read-modify-write sequences can
    lose increments. ``ReviewCoordinator.reconcile_job`` repairs drift.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    def create(self, job: ExtractionJob) -> ExtractionJob:
        """Insert a new job; ConflictError if the id is already taken."""
        try:
            self.store.put_new(job.to_item())
        except ConflictError:
            raise ConflictError(f"Job already exists: {job.job_id}") from None
        logger.info("job_created", job_id=job.job_id, status=job.status.value, source=job.source.value)
        return job

    def get(self, job_id: str) -> ExtractionJob:
        """Fetch a job or raise NotFoundError."""
        item = self.store.get(job_key(job_id), METADATA_SK)
        if item is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return ExtractionJob.from_item(item)

    def find(self, job_id: str) -> Optional[ExtractionJob]:
        item = self.store.get(job_key(job_id), METADATA_SK)
        return ExtractionJob.from_item(item) if item is not None else None

    def list_jobs(self, limit: Optional[int] = None) -> List[ExtractionJob]:
        """All jobs, most recent first."""
        items = self.store.query("type-createdAt", JOB_TYPE, limit=limit, newest_first=True)
        return [ExtractionJob.from_item(item) for item in items]

    def _update(self, job_id: str, attrs: Dict[str, object]) -> ExtractionJob:
        attrs = dict(attrs)
        attrs.setdefault("updatedAt", utc_now())
        item = self.store.update(job_key(job_id), METADATA_SK, attrs)
        if item is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return ExtractionJob.from_item(item)

    def transition(
        self,
        job_id: str,
        status: JobStatus,
        counters: Optional[Mapping[str, int]] = None,
        error_message: Optional[str] = None,
    ) -> ExtractionJob:
        """
        Move a job to a new status, optionally setting counters.

        Only supplied fields change; counters that are not supplied keep their
        stored value. Entering a terminal state stamps ``completedAt``.

        Args:
            job_id: Job to update
            status: Target status
            counters: Absolute values keyed by counter field name
            error_message: Required when status is failed

        Returns:
            The updated job
        """
        status = JobStatus(status)
        counters = dict(counters or {})
        _check_counter_names(counters, COUNTER_FIELDS)
        if any(value < 0 for value in counters.values()):
            raise InvalidRequestError("Job counters cannot be negative")
        if status == JobStatus.FAILED and not error_message:
            raise InvalidRequestError("error_message is required when a job fails")

        job = self.get(job_id)
        if status != job.status and status not in ALLOWED_TRANSITIONS[job.status]:
            raise PolicyViolationError(
                f"Job {job_id} cannot move from {job.status.value} to {status.value}"
            )

        merged = job.model_copy(update={**counters, "status": status})
        if status == JobStatus.COMPLETED and not merged.counters_consistent:
            raise InvalidRequestError(
                f"Counters for job {job_id} do not sum to totalQuestions"
            )

        now = utc_now()
        attrs: Dict[str, object] = {"status": status.value, "updatedAt": now}
        attrs.update({_alias(name): value for name, value in counters.items()})
        if error_message is not None:
            attrs["errorMessage"] = error_message
        if merged.is_terminal and not job.is_terminal:
            attrs["completedAt"] = now

        updated = self._update(job_id, attrs)
        log_job_transition(logger, job_id, job.status.value, status.value, counters)
        return updated

    def adjust_counters(self, job_id: str, deltas: Mapping[str, int]) -> ExtractionJob:
        """
        Apply signed deltas to the review counters, flooring each at zero.

        A clamp that fires means the stored counters had already drifted; it
        is logged so the job can be reconciled.
        """
        _check_counter_names(deltas, REVIEW_COUNTERS)
        deltas = {name: delta for name, delta in deltas.items() if delta}
        if not deltas:
            return self.get(job_id)

        job = self.get(job_id)
        attrs: Dict[str, object] = {}
        for name, delta in deltas.items():
            current = getattr(job, name)
            value = current + delta
            if value < 0:
                logger.warning("counter_clamped", job_id=job_id, counter=name, current=current, delta=delta)
                value = 0
            attrs[_alias(name)] = value

        self._keep_publish_invariant(job, attrs)
        updated = self._update(job_id, attrs)
        logger.info("job_counters_adjusted", job_id=job_id, deltas=deltas)
        return updated

    def set_counters(self, job_id: str, counters: Mapping[str, int]) -> ExtractionJob:
        """Overwrite counters with absolute values."""
        _check_counter_names(counters, COUNTER_FIELDS)
        if any(value < 0 for value in counters.values()):
            raise InvalidRequestError("Job counters cannot be negative")
        job = self.get(job_id)
        attrs: Dict[str, object] = {_alias(name): value for name, value in counters.items()}
        self._keep_publish_invariant(job, attrs)
        return self._update(job_id, attrs)

    def record_new_question(self, job_id: str, status: QuestionStatus) -> ExtractionJob:
        """Count one more owned question: totalQuestions and the status counter both grow by one."""
        job = self.get(job_id)
        counter = STATUS_COUNTERS[QuestionStatus(status)]
        return self._update(job_id, {
            _alias("total_questions"): job.total_questions + 1,
            _alias(counter): getattr(job, counter) + 1,
        })

    def publish(self, job_id: str, publish: bool = True) -> ExtractionJob:
        """Publish a completed job with approved questions, or unpublish any job."""
        job = self.get(job_id)

        if publish:
            if job.status != JobStatus.COMPLETED:
                raise PolicyViolationError("Only completed jobs can be published")
            if job.approved_count == 0:
                raise PolicyViolationError("Cannot publish a job with no approved questions")
            attrs = {"published": True, "publishedAt": utc_now()}
        else:
            attrs = {"published": False}

        updated = self._update(job_id, attrs)
        logger.info("job_publish_changed", job_id=job_id, published=publish)
        return updated

    @staticmethod
    def _keep_publish_invariant(job: ExtractionJob, attrs: Dict[str, object]) -> None:
        """Unpublish a job whose approved count is about to reach zero."""
        if job.published and attrs.get(_alias("approved_count"), job.approved_count) == 0:
            attrs["published"] = False
            logger.warning("job_auto_unpublished", job_id=job.job_id)
