"""Question extraction from exam PDFs through an OpenAI vision model."""

import base64
import json
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, List, Optional, Union

import openai
from dotenv import load_dotenv
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import ExtractionError
from .logging_config import get_audit_logger
from .models import CandidateQuestion, DEFAULT_LAW, normalize_law

load_dotenv()

logger = get_audit_logger("extraction")

DEFAULT_MODEL = "gpt-4o"
DEFAULT_TIMEOUT = 120.0
DEFAULT_CONFIDENCE = 0.5

EXTRACTION_PROMPT = """You are analyzing a Laws of the Game exam PDF.

Extract ALL quiz questions from this document. Each question has:
- A question number and text
- 4 answer options (A, B, C, D)
- One option marked with a checkmark or similar indicator as correct

For each question, determine:
1. The IFAB Law it relates to (Law 1 through Law 17)
2. A specific law reference if identifiable (e.g., "Law 12.1" for fouls)
3. Your confidence in the extraction (0-1)

IMPORTANT:
- The correct answer is indicated by a checkmark, tick mark, or highlighting
- Carefully identify which option (0=A, 1=B, 2=C, 3=D) is marked correct
- If no clear correct answer indicator, set confidence below 0.5
- Generate a brief explanation for why the answer is correct based on the Laws of the Game

Return a JSON array with this structure:
[
  {
    "text": "Question text here",
    "options": ["Option A", "Option B", "Option C", "Option D"],
    "correctAnswer": 0,
    "explanation": "Brief explanation referencing the relevant law",
    "law": "Law 12",
    "lawReference": "Law 12.1",
    "confidence": 0.95
  }
]

If no questions are found, return an empty array: []

Respond ONLY with the JSON array, no other text."""

FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
BARE_ARRAY = re.compile(r"\[[\s\S]*\]")


@dataclass
class DiscardedCandidate:
    """A model item that could not be turned into a candidate question."""
    index: int
    reason: str
    raw: Any = None


@dataclass
class ExtractionOutcome:
    """Well-formed candidates plus the items dropped while parsing."""
    candidates: List[CandidateQuestion] = field(default_factory=list)
    discarded: List[DiscardedCandidate] = field(default_factory=list)
    raw_response: Optional[str] = None
    model: str = "unknown"

    @property
    def discarded_count(self) -> int:
        return len(self.discarded)


def _extract_json_array(response_text: str) -> Optional[List[Any]]:
    """Pull a JSON array out of the model's answer, fenced or bare."""
    text = (response_text or "").strip()
    if not text:
        return None

    attempts = []
    fenced = FENCED_BLOCK.search(text)
    if fenced:
        attempts.append(fenced.group(1).strip())
    attempts.append(text)
    bare = BARE_ARRAY.search(text)
    if bare:
        attempts.append(bare.group(0))

    for attempt in attempts:
        try:
            data = json.loads(attempt)
        except json.JSONDecodeError:
            continue
        if isinstance(data, list):
            return data
    return None


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_candidate(index: int, raw: Any) -> Union[CandidateQuestion, DiscardedCandidate]:
    """Validate one model item, returning either a candidate or a discard record."""
    if not isinstance(raw, dict):
        return DiscardedCandidate(index, "not_an_object", raw)

    text = raw.get("text")
    if not isinstance(text, str) or not text.strip():
        return DiscardedCandidate(index, "missing_text", raw)

    options = raw.get("options")
    if (
        not isinstance(options, list)
        or len(options) != 4
        or any(not isinstance(opt, str) or not opt.strip() for opt in options)
    ):
        return DiscardedCandidate(index, "invalid_options", raw)

    correct_answer = raw.get("correctAnswer")
    if not _is_int(correct_answer) or not 0 <= correct_answer <= 3:
        return DiscardedCandidate(index, "invalid_correct_answer", raw)

    raw_law = raw.get("law")
    raw_reference = raw.get("lawReference")
    reference = raw_reference.strip() if isinstance(raw_reference, str) else ""
    law = normalize_law(raw_law) if isinstance(raw_law, str) else None
    if law is None:
        law = DEFAULT_LAW
        # keep what the model said so a reviewer can fix the category
        if isinstance(raw_law, str) and raw_law.strip():
            reference = raw_law.strip()
    law_reference = reference or law

    confidence = raw.get("confidence")
    if _is_number(confidence):
        confidence = min(1.0, max(0.0, float(confidence)))
    else:
        confidence = DEFAULT_CONFIDENCE

    explanation = raw.get("explanation")

    return CandidateQuestion(
        text=text.strip(),
        options=[opt.strip() for opt in options],
        correct_answer=correct_answer,
        explanation=explanation.strip() if isinstance(explanation, str) else "",
        law=law,
        law_reference=law_reference,
        confidence=confidence,
    )


def parse_extraction_response(response_text: str, model: str = "unknown") -> ExtractionOutcome:
    """
    Turn the model's raw answer into an ExtractionOutcome.

    A response without a parseable JSON array yields zero candidates rather
    than an error. Malformed items are discarded individually.
    """
    outcome = ExtractionOutcome(raw_response=response_text, model=model)
    items = _extract_json_array(response_text)

    if items is None:
        logger.warning("no_json_array_in_response", model=model, response_chars=len(response_text or ""))
        return outcome

    for index, raw in enumerate(items):
        parsed = parse_candidate(index, raw)
        if isinstance(parsed, DiscardedCandidate):
            outcome.discarded.append(parsed)
        else:
            outcome.candidates.append(parsed)

    if outcome.discarded:
        logger.warning(
            "candidates_discarded",
            model=model,
            discarded=outcome.discarded_count,
            reasons=sorted({d.reason for d in outcome.discarded}),
        )

    return outcome


class ExtractionAdapter(ABC):
    """Turns raw document bytes into candidate questions."""

    @abstractmethod
    def extract(self, document_bytes: bytes) -> ExtractionOutcome:
        """Extract candidates; raise ExtractionError when the model call fails."""


class OpenAIExtractionAdapter(ExtractionAdapter):
    """
    Send the whole PDF to an OpenAI vision model in one request.

    Usage:
        adapter = OpenAIExtractionAdapter(api_key="...")
        outcome = adapter.extract(pdf_bytes)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        timeout: float = DEFAULT_TIMEOUT,
        max_tokens: int = 8192,
        client: Optional[openai.OpenAI] = None,
    ):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self._client = client

    @property
    def client(self) -> openai.OpenAI:
        """Lazy load the OpenAI client."""
        if self._client is None:
            if not self.api_key:
                raise ExtractionError("OpenAI API key not found")
            self._client = openai.OpenAI(api_key=self.api_key, timeout=self.timeout, max_retries=0)
        return self._client

    @retry(
        retry=retry_if_exception_type((
            openai.APIConnectionError,
            openai.APITimeoutError,
            openai.RateLimitError,
        )),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        reraise=True,
    )
    def _request(self, document_bytes: bytes) -> str:
        encoded = base64.b64encode(document_bytes).decode("ascii")
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "file",
                            "file": {
                                "filename": "exam.pdf",
                                "file_data": f"data:application/pdf;base64,{encoded}",
                            },
                        },
                        {"type": "text", "text": EXTRACTION_PROMPT},
                    ],
                }
            ],
            temperature=0.1,
            max_tokens=self.max_tokens,
            timeout=self.timeout,
        )
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    def extract(self, document_bytes: bytes) -> ExtractionOutcome:
        try:
            response_text = self._request(document_bytes)
        except openai.OpenAIError as e:
            logger.error("extraction_call_failed", model=self.model, error=str(e))
            raise ExtractionError(f"Extraction model call failed: {e}") from e

        outcome = parse_extraction_response(response_text, model=self.model)
        logger.info(
            "extraction_completed",
            model=self.model,
            document_bytes=len(document_bytes),
            candidates=len(outcome.candidates),
            discarded=outcome.discarded_count,
        )
        return outcome
