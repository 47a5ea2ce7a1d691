"""Quiz serving: published jobs as quizzes, answer-free question draws and answer scoring."""

import math
import random
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from pydantic import ValidationError

from .errors import InvalidRequestError, LotgError, NotFoundError
from .jobs import JobLifecycleManager
from .logging_config import get_audit_logger, log_quiz_scored
from .models import BankQuestion, ExtractionJob, JobSource, SubmittedAnswer
from .question_bank import QuestionBankManager
from .store import DocumentStore

logger = get_audit_logger("quiz")

DEFAULT_QUESTION_COUNT = 10
MAX_QUESTION_COUNT = 50
NO_EXPLANATION = "No explanation available."


def format_title(file_name: str) -> str:
    """'laws-of-the-game-2024.pdf' -> 'Laws Of The Game 2024'."""
    title = re.sub(r"\.pdf$", "", file_name, flags=re.IGNORECASE)
    title = re.sub(r"[-_]", " ", title)
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), title)


@dataclass
class Quiz:
    quiz_id: str
    title: str
    description: str
    category: str
    question_count: int
    created_at: str
    updated_at: str

    @classmethod
    def from_job(cls, job: ExtractionJob) -> "Quiz":
        if job.source == JobSource.MANUAL:
            title = job.display_name
            description = job.description
        else:
            title = format_title(job.display_name)
            description = job.description or f"Questions extracted from {job.display_name}"
        return cls(
            quiz_id=job.job_id,
            title=title,
            description=description,
            category=job.category,
            question_count=job.approved_count,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


@dataclass
class QuizQuestion:
    """A question as served to a quiz taker; the answer stays server-side."""
    question_id: str
    text: str
    options: List[str]


@dataclass
class AnsweredQuestion:
    question_id: str
    text: str
    options: List[str]
    selected_option: int
    correct_option: int
    is_correct: bool
    explanation: str
    law_reference: str


@dataclass
class QuizScore:
    """Graded answers plus the score over the answers that could be graded."""
    quiz_id: str
    results: List[AnsweredQuestion] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def correct(self) -> int:
        return sum(1 for r in self.results if r.is_correct)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def percentage(self) -> int:
        if not self.results:
            return 0
        # half rounds up
        return math.floor(self.correct * 100 / self.total + 0.5)

    def score(self):
        return {"correct": self.correct, "total": self.total, "percentage": self.percentage}


class QuizService:
    """
    Serves published jobs to quiz takers.

    A job is a quiz while it is published and has at least one approved
    question. Questions are drawn at random from the job's approved
    questions and never carry ``correctAnswer``; answers are graded against
    the stored question on submission.
    """

    def __init__(self, store: DocumentStore, rng: Optional[random.Random] = None):
        self.jobs = JobLifecycleManager(store)
        self.bank = QuestionBankManager(store)
        self.rng = rng or random.Random()

    def list_quizzes(self, limit: Optional[int] = None) -> List[Quiz]:
        """Published jobs with approved questions, newest first."""
        quizzes = [
            Quiz.from_job(job) for job in self.jobs.list_jobs()
            if job.published and job.approved_count > 0
        ]
        return quizzes[:limit] if limit is not None else quizzes

    def get_quiz(self, quiz_id: str) -> Quiz:
        return Quiz.from_job(self._servable_job(quiz_id))

    def draw_questions(self, quiz_id: str, limit: int = DEFAULT_QUESTION_COUNT) -> List[QuizQuestion]:
        """
        Draw up to ``limit`` approved questions in random order.

        Each served question has its ``usageCount`` incremented.

        Raises:
            InvalidRequestError: limit outside 1..50
            NotFoundError: quiz not servable, or it has no approved questions left
        """
        if limit < 1 or limit > MAX_QUESTION_COUNT:
            raise InvalidRequestError(f"Limit must be between 1 and {MAX_QUESTION_COUNT}")
        self._servable_job(quiz_id)

        questions = self.bank.list_approved_by_job(quiz_id)
        if not questions:
            raise NotFoundError("No questions found for this quiz")

        drawn = self.rng.sample(questions, min(limit, len(questions)))
        for question in drawn:
            self._record_usage(question)

        logger.info("quiz_questions_served", quiz_id=quiz_id, requested=limit, served=len(drawn))
        return [QuizQuestion(q.question_id, q.text, list(q.options)) for q in drawn]

    def submit_answers(self, quiz_id: str, answers: Sequence[Any]) -> QuizScore:
        """
        Grade submitted answers against the quiz's questions.

        Answers for unknown questions, or for questions owned by another job,
        are skipped and do not count towards the total.
        """
        if not isinstance(answers, (list, tuple)):
            raise InvalidRequestError("answers array is required")
        try:
            parsed = [
                a if isinstance(a, SubmittedAnswer) else SubmittedAnswer.model_validate(a)
                for a in answers
            ]
        except ValidationError as e:
            raise InvalidRequestError(f"Invalid answer: {e.errors()[0]['msg']}") from None

        job = self.jobs.find(quiz_id)
        if job is None or not job.published:
            raise NotFoundError("Quiz not found")

        score = QuizScore(quiz_id=quiz_id)
        for answer in parsed:
            question = self.bank.get(answer.question_id)
            if question is None or question.job_id != quiz_id:
                logger.warning("quiz_answer_skipped", quiz_id=quiz_id, question_id=answer.question_id,
                               reason="not_found" if question is None else "other_quiz")
                score.skipped.append(answer.question_id)
                continue
            score.results.append(self._grade(question, answer))

        log_quiz_scored(
            logger,
            quiz_id=quiz_id,
            submitted=len(parsed),
            scored=score.total,
            correct=score.correct,
            percentage=score.percentage,
        )
        return score

    def _servable_job(self, quiz_id: str) -> ExtractionJob:
        job = self.jobs.find(quiz_id)
        if job is None or not job.published or job.approved_count == 0:
            raise NotFoundError("Quiz not found")
        return job

    def _record_usage(self, question: BankQuestion) -> None:
        try:
            self.bank.record_usage(question.question_id)
        except LotgError as e:
            # usage counts are advisory; the draw still stands
            logger.warning("usage_not_recorded", question_id=question.question_id, error=str(e))

    @staticmethod
    def _grade(question: BankQuestion, answer: SubmittedAnswer) -> AnsweredQuestion:
        return AnsweredQuestion(
            question_id=question.question_id,
            text=question.text,
            options=list(question.options),
            selected_option=answer.selected_option,
            correct_option=question.correct_answer,
            is_correct=answer.selected_option == question.correct_answer,
            explanation=question.explanation or NO_EXPLANATION,
            law_reference=question.law_reference or question.law or "N/A",
        )
