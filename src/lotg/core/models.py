"""Records for extraction jobs and bank questions."""

import re
from enum import Enum
from typing import List, Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

LAWS: List[str] = [f"Law {n}" for n in range(1, 18)]
DEFAULT_LAW = "Law 1"
DEFAULT_CATEGORY = "Laws of the Game"
DEFAULT_REVIEWER = "admin"

JOB_TYPE = "ExtractionJob"
QUESTION_TYPE = "BankQuestion"
METADATA_SK = "METADATA"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QuestionStatus(str, Enum):
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"


class QuestionSource(str, Enum):
    EXTRACTION = "extraction"
    MANUAL = "manual"
    SEED = "seed"


class JobSource(str, Enum):
    UPLOAD = "upload"
    MANUAL = "manual"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


# Job counter attribute for each question status
STATUS_COUNTERS: Dict[QuestionStatus, str] = {
    QuestionStatus.PENDING_REVIEW: "pending_count",
    QuestionStatus.APPROVED: "approved_count",
    QuestionStatus.REJECTED: "rejected_count",
}


def normalize_law(value: Optional[str]) -> Optional[str]:
    """Map free text such as 'law12', 'LAW 12.1' to 'Law 12'; None if not 1..17."""
    if not value:
        return None
    match = re.search(r"Law\s*(\d+)", str(value).strip(), re.IGNORECASE)
    if match:
        law_num = int(match.group(1))
        if 1 <= law_num <= 17:
            return f"Law {law_num}"
    return None


def job_key(job_id: str) -> str:
    return f"JOB#{job_id}"


def question_key(question_id: str) -> str:
    return f"QUESTION#{question_id}"


class _Record(BaseModel):
    """Base for persisted records: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)

    def to_item(self) -> Dict[str, Any]:
        """Serialize to the document shape written to the store."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    @classmethod
    def from_item(cls, item: Dict[str, Any]):
        """Build a record from a stored document, ignoring store key fields."""
        return cls.model_validate(item)


class ExtractionJob(_Record):
    """One document-ingestion attempt and its aggregate outcome."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    job_id: str = Field(alias="jobId")
    source_key: str = Field("", alias="sourceKey")
    display_name: str = Field("", alias="displayName")
    status: JobStatus = JobStatus.PENDING
    source: JobSource = JobSource.UPLOAD
    description: str = ""
    category: str = DEFAULT_CATEGORY
    published: bool = False
    published_at: Optional[str] = Field(None, alias="publishedAt")
    total_questions: int = Field(0, alias="totalQuestions", ge=0)
    approved_count: int = Field(0, alias="approvedCount", ge=0)
    pending_count: int = Field(0, alias="pendingCount", ge=0)
    rejected_count: int = Field(0, alias="rejectedCount", ge=0)
    duplicate_count: int = Field(0, alias="duplicateCount", ge=0)
    error_message: Optional[str] = Field(None, alias="errorMessage")
    created_at: str = Field(alias="createdAt")
    updated_at: str = Field(alias="updatedAt")
    completed_at: Optional[str] = Field(None, alias="completedAt")

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def counters_consistent(self) -> bool:
        return (
            self.approved_count + self.pending_count + self.rejected_count
            == self.total_questions
        )

    def to_item(self) -> Dict[str, Any]:
        item = super().to_item()
        item.update({"PK": job_key(self.job_id), "SK": METADATA_SK, "Type": JOB_TYPE})
        return item


class BankQuestion(_Record):
    """One curated quiz question."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    question_id: str = Field(alias="questionId")
    text: str
    options: List[str]
    correct_answer: int = Field(alias="correctAnswer", ge=0, le=3)
    explanation: str = ""
    law: str = DEFAULT_LAW
    law_reference: str = Field("", alias="lawReference")
    confidence: float = Field(ge=0.0, le=1.0)
    status: QuestionStatus = QuestionStatus.PENDING_REVIEW
    source_file: str = Field("", alias="sourceFile")
    job_id: str = Field(alias="jobId")
    hash: str
    source: QuestionSource = QuestionSource.EXTRACTION
    difficulty: Optional[Difficulty] = None
    tags: Optional[List[str]] = None
    usage_count: int = Field(0, alias="usageCount", ge=0)
    created_at: str = Field(alias="createdAt")
    updated_at: str = Field(alias="updatedAt")
    reviewed_at: Optional[str] = Field(None, alias="reviewedAt")
    reviewed_by: Optional[str] = Field(None, alias="reviewedBy")

    @field_validator("options")
    @classmethod
    def _four_options(cls, value: List[str]) -> List[str]:
        if len(value) != 4:
            raise ValueError("options must contain exactly 4 entries")
        if any(not opt.strip() for opt in value):
            raise ValueError("options must be non-empty")
        return value

    @field_validator("law")
    @classmethod
    def _known_law(cls, value: str) -> str:
        if value not in LAWS:
            raise ValueError(f"law must be one of Law 1 through Law 17, got {value!r}")
        return value

    def to_item(self) -> Dict[str, Any]:
        item = super().to_item()
        item.update({
            "PK": question_key(self.question_id),
            "SK": METADATA_SK,
            "Type": QUESTION_TYPE,
        })
        return item


class CandidateQuestion(BaseModel):
    """A well-formed question candidate returned by the extraction model."""

    text: str
    options: List[str]
    correct_answer: int = Field(ge=0, le=3)
    explanation: str = ""
    law: str = DEFAULT_LAW
    law_reference: str = ""
    confidence: float = Field(0.5, ge=0.0, le=1.0)


class ManualQuestionRequest(BaseModel):
    """Reviewer-entered question for a manual job."""

    model_config = ConfigDict(populate_by_name=True)

    text: str
    options: List[str]
    correct_answer: int = Field(alias="correctAnswer")
    explanation: str
    law: str
    law_reference: str = Field(alias="lawReference")
    difficulty: Optional[Difficulty] = None
    tags: Optional[List[str]] = None

    @model_validator(mode="after")
    def _validate(self) -> "ManualQuestionRequest":
        if not self.text.strip():
            raise ValueError("text is required")
        if len(self.options) != 4:
            raise ValueError("options must be an array of exactly 4 strings")
        if any(not opt.strip() for opt in self.options):
            raise ValueError("All options must be non-empty strings")
        if not 0 <= self.correct_answer <= 3:
            raise ValueError("correctAnswer must be a number between 0 and 3")
        if not self.explanation.strip():
            raise ValueError("explanation is required")
        if self.law not in LAWS:
            raise ValueError("law must be a valid law (Law 1 through Law 17)")
        if not self.law_reference.strip():
            raise ValueError("lawReference is required")
        return self


class SubmittedAnswer(BaseModel):
    """One answer in a quiz submission."""

    model_config = ConfigDict(populate_by_name=True)

    question_id: str = Field(alias="questionId")
    selected_option: int = Field(alias="selectedOption")
