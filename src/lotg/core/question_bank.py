"""Question Bank Manager: BankQuestion records, dedup gate and read paths."""

from typing import List, Optional

from .errors import ConflictError, InvalidRequestError
from .ids import utc_now
from .logging_config import get_audit_logger
from .models import (
    BankQuestion,
    DEFAULT_REVIEWER,
    LAWS,
    METADATA_SK,
    QUESTION_TYPE,
    QuestionStatus,
    question_key,
)
from .store import BatchWriteResult, DocumentStore

logger = get_audit_logger("question_bank")

HASH_GUARD_TYPE = "HashGuard"
HASH_GUARD_SK = "GUARD"
MAX_LIST_LIMIT = 200


def _check_limit(limit: int) -> int:
    if limit < 1 or limit > MAX_LIST_LIMIT:
        raise InvalidRequestError(f"Limit must be between 1 and {MAX_LIST_LIMIT}")
    return limit


class QuestionBankManager:
    """
    Owns BankQuestion records.

    ``insert`` and ``batch_insert`` write unconditionally; callers gate them
    with ``exists_by_hash``. ``insert_unique`` additionally claims a hash
    guard item with a conditional write, which closes the window between the
    existence check and the insert for single-question paths. A guard whose
    question was never written is reclaimed by the next insert of that hash.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    def exists_by_hash(self, content_hash: str) -> bool:
        """True if any question with this fingerprint is stored."""
        items = self.store.query("hash", content_hash, limit=1, filters={"Type": QUESTION_TYPE})
        return len(items) > 0

    def insert(self, question: BankQuestion) -> BankQuestion:
        self.store.put(question.to_item())
        return question

    def insert_unique(self, question: BankQuestion) -> BankQuestion:
        """Insert only if no other question has claimed the same hash."""
        if self.exists_by_hash(question.hash):
            raise ConflictError("A similar question already exists")

        guard = {
            "PK": f"HASH#{question.hash}",
            "SK": HASH_GUARD_SK,
            "Type": HASH_GUARD_TYPE,
            "guardHash": question.hash,
            "questionId": question.question_id,
            "createdAt": question.created_at,
        }
        try:
            self.store.put_new(guard)
        except ConflictError:
            self._take_over_stale_guard(guard)

        return self.insert(question)

    def _take_over_stale_guard(self, guard: dict) -> None:
        """Reclaim a guard left behind by an insert that never wrote its question."""
        existing = self.store.get(guard["PK"], HASH_GUARD_SK)
        owner = existing.get("questionId") if existing else None
        if owner and self.get(owner) is not None:
            raise ConflictError("A similar question already exists")
        logger.warning("hash_guard_reclaimed", hash=guard["guardHash"], stale_owner=owner)
        self.store.put(guard)

    def batch_insert(self, questions: List[BankQuestion]) -> BatchWriteResult:
        """Chunked insert; inspect the result for chunks that were not written."""
        if not questions:
            return BatchWriteResult()
        result = self.store.batch_put([q.to_item() for q in questions])
        logger.info(
            "questions_batch_inserted",
            staged=result.staged,
            written=result.written,
            failed_chunks=result.failed_chunks,
        )
        return result

    def get(self, question_id: str) -> Optional[BankQuestion]:
        item = self.store.get(question_key(question_id), METADATA_SK)
        return BankQuestion.from_item(item) if item is not None else None

    def set_status(
        self,
        question_id: str,
        status: QuestionStatus,
        reviewed_by: Optional[str] = None,
    ) -> Optional[QuestionStatus]:
        """
        Record a review decision on a question.

        Args:
            question_id: Question to update
            status: New status
            reviewed_by: Reviewer label, "admin" when not given

        Returns:
            The status before the update, or None if the question does not exist
        """
        existing = self.get(question_id)
        if existing is None:
            return None

        now = utc_now()
        updated = self.store.update(question_key(question_id), METADATA_SK, {
            "status": QuestionStatus(status).value,
            "updatedAt": now,
            "reviewedAt": now,
            "reviewedBy": reviewed_by or DEFAULT_REVIEWER,
        })
        if updated is None:
            return None
        return existing.status

    def record_usage(self, question_id: str) -> Optional[BankQuestion]:
        """Increment usageCount; called each time a quiz serves the question."""
        existing = self.get(question_id)
        if existing is None:
            return None
        item = self.store.update(question_key(question_id), METADATA_SK, {
            "usageCount": existing.usage_count + 1,
            "updatedAt": utc_now(),
        })
        return BankQuestion.from_item(item) if item is not None else None

    def list_by_status(self, status: QuestionStatus, limit: int = 50) -> List[BankQuestion]:
        """Review queue order: oldest first."""
        items = self.store.query(
            "status-createdAt",
            QuestionStatus(status).value,
            limit=_check_limit(limit),
            newest_first=False,
            filters={"Type": QUESTION_TYPE},
        )
        return [BankQuestion.from_item(item) for item in items]

    def list_by_law(
        self,
        law: str,
        status: Optional[QuestionStatus] = None,
        limit: int = 50,
    ) -> List[BankQuestion]:
        """Questions for one law, optionally narrowed by status, newest first."""
        if law not in LAWS:
            raise InvalidRequestError(f"Invalid law. Must be one of: {', '.join(LAWS)}")
        items = self.store.query(
            "law-status",
            law,
            sort_value=QuestionStatus(status).value if status else None,
            limit=_check_limit(limit),
            newest_first=True,
            filters={"Type": QUESTION_TYPE},
        )
        return [BankQuestion.from_item(item) for item in items]

    def list_all(self, limit: int = 100) -> List[BankQuestion]:
        items = self.store.query("type-createdAt", QUESTION_TYPE, limit=_check_limit(limit), newest_first=True)
        return [BankQuestion.from_item(item) for item in items]

    def list_by_job(self, job_id: str) -> List[BankQuestion]:
        """Every question owned by a job, in insertion order."""
        items = self.store.query("type-createdAt", QUESTION_TYPE, filters={"jobId": job_id})
        return [BankQuestion.from_item(item) for item in items]

    def list_approved_by_job(self, job_id: str) -> List[BankQuestion]:
        """The approved questions a published job serves as a quiz."""
        items = self.store.query(
            "type-createdAt",
            QUESTION_TYPE,
            filters={"jobId": job_id, "status": QuestionStatus.APPROVED.value},
        )
        return [BankQuestion.from_item(item) for item in items]
