"""Tests for single and bulk review and counter reconciliation."""

import pytest

from conftest import make_job, make_question
from lotg.core.errors import InvalidRequestError, NotFoundError, TransientStoreError
from lotg.core.models import QuestionStatus
from lotg.core.review import MAX_BULK_REVIEW, ReviewCoordinator
from lotg.core.store import InMemoryDocumentStore


class FailingUpdateStore(InMemoryDocumentStore):
    """Store whose updates to chosen keys raise a transient error."""

    def __init__(self, failing_pks=()):
        super().__init__()
        self.failing_pks = set(failing_pks)

    def update(self, pk, sk, attrs):
        if pk in self.failing_pks:
            raise TransientStoreError(f"throttled: {pk}")
        return super().update(pk, sk, attrs)


class BrokenReadStore(InMemoryDocumentStore):
    """Store whose reads of chosen keys fail with an unexpected error."""

    def __init__(self, broken_pks=()):
        super().__init__()
        self.broken_pks = set(broken_pks)

    def get(self, pk, sk="METADATA"):
        if pk in self.broken_pks:
            raise RuntimeError(f"corrupt record: {pk}")
        return super().get(pk, sk)


def _seed(coordinator, job_id="JOB1", question_ids=("Q1", "Q2", "Q3")):
    coordinator.jobs.create(make_job(job_id, total_questions=len(question_ids), pending_count=len(question_ids)))
    for n, question_id in enumerate(question_ids):
        coordinator.bank.insert(make_question(
            question_id, job_id=job_id, created_at=f"2026-01-01T00:00:0{n}+00:00",
        ))


@pytest.fixture
def coordinator(store):
    coordinator = ReviewCoordinator(store)
    _seed(coordinator)
    return coordinator


def _counters(coordinator, job_id="JOB1"):
    job = coordinator.jobs.get(job_id)
    return job.total_questions, job.approved_count, job.pending_count, job.rejected_count


class TestReview:

    def test_pending_to_approved_moves_counters(self, coordinator):
        result = coordinator.review("Q1", "approved")

        assert result.previous_status == QuestionStatus.PENDING_REVIEW
        assert result.changed
        assert result.reviewed_by == "admin"
        assert _counters(coordinator) == (3, 1, 2, 0)

    def test_repeat_review_is_a_counter_no_op(self, coordinator):
        coordinator.review("Q1", QuestionStatus.APPROVED)
        result = coordinator.review("Q1", QuestionStatus.APPROVED, reviewed_by="second")

        assert not result.changed
        assert _counters(coordinator) == (3, 1, 2, 0)
        assert coordinator.bank.get("Q1").reviewed_by == "second"

    def test_approved_to_rejected(self, coordinator):
        coordinator.review("Q1", "approved")
        coordinator.review("Q1", "rejected")
        assert _counters(coordinator) == (3, 0, 2, 1)

    def test_missing_question(self, coordinator):
        with pytest.raises(NotFoundError):
            coordinator.review("nope", "approved")

    def test_invalid_status(self, coordinator):
        with pytest.raises(InvalidRequestError, match="Invalid status"):
            coordinator.review("Q1", "published")
        assert coordinator.bank.get("Q1").status == QuestionStatus.PENDING_REVIEW

    def test_counter_conservation_over_review_sequence(self, coordinator):
        sequence = [
            ("Q1", "approved"), ("Q2", "rejected"), ("Q1", "rejected"), ("Q3", "approved"),
            ("Q2", "pending_review"), ("Q3", "approved"), ("Q1", "approved"), ("Q2", "approved"),
        ]
        for question_id, status in sequence:
            coordinator.review(question_id, status)
            total, approved, pending, rejected = _counters(coordinator)
            assert approved + pending + rejected == total
            assert min(approved, pending, rejected) >= 0
        assert _counters(coordinator) == (3, 3, 0, 0)

    def test_clamped_counters_are_recomputed(self, store):
        coordinator = ReviewCoordinator(store)
        coordinator.jobs.create(make_job("JOB1", total_questions=1, approved_count=1))
        coordinator.bank.insert(make_question("Q1"))

        coordinator.review("Q1", "rejected")

        assert _counters(coordinator) == (1, 0, 0, 1)

    def test_losing_last_approved_question_unpublishes_job(self, store):
        coordinator = ReviewCoordinator(store)
        coordinator.jobs.create(make_job("JOB1", total_questions=1, approved_count=1))
        coordinator.bank.insert(make_question("Q1", status=QuestionStatus.APPROVED))
        coordinator.jobs.publish("JOB1")

        coordinator.review("Q1", "rejected")

        assert coordinator.jobs.get("JOB1").published is False


class TestBulkReview:

    def test_unexpected_item_error_does_not_abort_batch(self):
        store = BrokenReadStore(broken_pks={"QUESTION#Q2"})
        coordinator = ReviewCoordinator(store)
        _seed(coordinator)

        result = coordinator.bulk_review(["Q1", "Q2", "Q3"], "approved")

        assert result.summary() == {"total": 3, "successful": 2, "failed": 1, "targetStatus": "approved"}
        assert result.results[1].error == "Processing failed"
        assert _counters(coordinator) == (3, 2, 1, 0)

    def test_clamped_job_is_recomputed(self, store):
        coordinator = ReviewCoordinator(store)
        coordinator.jobs.create(make_job("JOB1", total_questions=2, approved_count=2))
        coordinator.bank.insert(make_question("Q1"))
        coordinator.bank.insert(make_question("Q2"))

        coordinator.bulk_review(["Q1", "Q2"], "rejected")

        assert _counters(coordinator) == (2, 0, 0, 2)


    def test_partial_failure(self, coordinator):
        result = coordinator.bulk_review(["Q1", "Q2", "MISSING"], "approved")

        assert result.summary() == {"total": 3, "successful": 2, "failed": 1, "targetStatus": "approved"}
        missing = result.results[2]
        assert (missing.question_id, missing.success, missing.error) == ("MISSING", False, "Question not found")
        assert result.results[0].previous_status == QuestionStatus.PENDING_REVIEW
        assert _counters(coordinator) == (3, 2, 1, 0)

    def test_one_counter_update_per_job(self, store):
        coordinator = ReviewCoordinator(store)
        _seed(coordinator, "JOB1", ("A1", "A2"))
        _seed(coordinator, "JOB2", ("B1",))
        updates = []
        original = coordinator.jobs.adjust_counters

        def tracking(job_id, deltas):
            updates.append((job_id, dict(deltas)))
            return original(job_id, deltas)

        coordinator.jobs.adjust_counters = tracking
        coordinator.bulk_review(["A1", "B1", "A2"], "rejected")

        assert sorted(updates) == [
            ("JOB1", {"pending_count": -2, "rejected_count": 2}),
            ("JOB2", {"pending_count": -1, "rejected_count": 1}),
        ]
        assert _counters(coordinator, "JOB1") == (2, 0, 0, 2)
        assert _counters(coordinator, "JOB2") == (1, 0, 0, 1)

    def test_net_zero_deltas_skip_job_update(self, coordinator):
        coordinator.review("Q1", "approved")
        result = coordinator.bulk_review(["Q1", "Q1"], "approved")
        assert result.successful == 2
        assert result.job_deltas == {}
        assert _counters(coordinator) == (3, 1, 2, 0)

    def test_store_error_on_one_item_does_not_abort_batch(self):
        store = FailingUpdateStore(failing_pks={"QUESTION#Q2"})
        coordinator = ReviewCoordinator(store)
        _seed(coordinator)

        result = coordinator.bulk_review(["Q1", "Q2", "Q3"], "approved")

        assert (result.successful, result.failed) == (2, 1)
        assert result.results[1].error == "Processing failed"
        assert _counters(coordinator) == (3, 2, 1, 0)

    def test_failed_job_update_is_reported(self):
        store = FailingUpdateStore(failing_pks={"JOB#JOB1"})
        coordinator = ReviewCoordinator(store)
        _seed(coordinator)

        result = coordinator.bulk_review(["Q1"], "approved")

        assert result.successful == 1
        assert result.failed_jobs == ["JOB1"]

    @pytest.mark.parametrize("ids", [[], ["Q"] * (MAX_BULK_REVIEW + 1), "Q1"])
    def test_batch_size_validation(self, coordinator, ids):
        with pytest.raises(InvalidRequestError):
            coordinator.bulk_review(ids, "approved")

    def test_hundred_ids_allowed(self, coordinator):
        result = coordinator.bulk_review(["Q1"] + [f"X{i}" for i in range(99)], "approved")
        assert (result.total, result.successful, result.failed) == (100, 1, 99)

    def test_invalid_status(self, coordinator):
        with pytest.raises(InvalidRequestError):
            coordinator.bulk_review(["Q1"], "archived")


class TestReconcile:

    def test_reconcile_job_recomputes_from_questions(self, coordinator):
        coordinator.review("Q1", "approved")
        coordinator.jobs.set_counters("JOB1", {"approved_count": 0, "pending_count": 7})

        job = coordinator.reconcile_job("JOB1")

        assert (job.total_questions, job.approved_count, job.pending_count, job.rejected_count) == (3, 1, 2, 0)

    def test_consistent_job_is_untouched(self, coordinator):
        before = coordinator.jobs.get("JOB1")
        assert coordinator.reconcile_job("JOB1") == before

    def test_reconcile_all_returns_repaired_jobs(self, store):
        coordinator = ReviewCoordinator(store)
        _seed(coordinator, "JOB1", ("A1",))
        _seed(coordinator, "JOB2", ("B1",))
        coordinator.jobs.set_counters("JOB2", {"pending_count": 0})

        repaired = coordinator.reconcile_all()

        assert [job.job_id for job in repaired] == ["JOB2"]
        assert _counters(coordinator, "JOB2") == (1, 0, 1, 0)

    def test_missing_job(self, coordinator):
        with pytest.raises(NotFoundError):
            coordinator.reconcile_job("nope")
