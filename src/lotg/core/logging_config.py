"""Structured logging configuration for the question bank."""

import logging
from typing import Dict, Any, Optional

import structlog
from structlog.stdlib import LoggerFactory


def configure_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structured logging with audit-friendly output."""

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]

    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.extend([
            structlog.dev.ConsoleRenderer(colors=True),
        ])

    structlog.configure(
        processors=processors,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_audit_logger(component: str) -> structlog.BoundLogger:
    """Get a logger with audit context for a specific component."""
    logger = structlog.get_logger(component)
    return logger.bind(component=component, audit=True)


def log_ingestion_event(
    logger: structlog.BoundLogger,
    job_id: str,
    source_key: str,
    status: str,
    total_questions: int,
    approved_count: int,
    pending_count: int,
    duplicate_count: int,
    discarded_count: int,
    processing_time_ms: float,
    failed_chunks: Optional[list] = None,
) -> None:
    """Log the outcome of one document ingestion run."""
    logger.info(
        "document_ingested",
        job_id=job_id,
        source_key=source_key,
        status=status,
        total_questions=total_questions,
        approved_count=approved_count,
        pending_count=pending_count,
        duplicate_count=duplicate_count,
        discarded_count=discarded_count,
        failed_chunks=failed_chunks or [],
        processing_time_ms=processing_time_ms,
        event_type="document_ingestion"
    )


def log_job_transition(
    logger: structlog.BoundLogger,
    job_id: str,
    previous_status: str,
    new_status: str,
    changes: Dict[str, Any],
) -> None:
    """Log a job lifecycle transition."""
    logger.info(
        "job_transition",
        job_id=job_id,
        previous_status=previous_status,
        new_status=new_status,
        changes=changes,
        event_type="job_lifecycle"
    )


def log_review_event(
    logger: structlog.BoundLogger,
    question_id: str,
    job_id: str,
    previous_status: str,
    new_status: str,
    reviewed_by: str,
) -> None:
    """Log a single reviewer decision."""
    logger.info(
        "question_reviewed",
        question_id=question_id,
        job_id=job_id,
        previous_status=previous_status,
        new_status=new_status,
        reviewed_by=reviewed_by,
        event_type="review"
    )


def log_bulk_review_event(
    logger: structlog.BoundLogger,
    target_status: str,
    total: int,
    successful: int,
    failed: int,
    job_deltas: Dict[str, Dict[str, int]],
    reviewed_by: str,
) -> None:
    """Log a bulk review batch and the consolidated job counter deltas."""
    logger.info(
        "bulk_review_completed",
        target_status=target_status,
        total=total,
        successful=successful,
        failed=failed,
        job_deltas=job_deltas,
        reviewed_by=reviewed_by,
        event_type="bulk_review"
    )


def log_quiz_scored(
    logger: structlog.BoundLogger,
    quiz_id: str,
    submitted: int,
    scored: int,
    correct: int,
    percentage: int,
) -> None:
    """Log one scored quiz attempt."""
    logger.info(
        "quiz_scored",
        quiz_id=quiz_id,
        submitted=submitted,
        scored=scored,
        correct=correct,
        percentage=percentage,
        event_type="quiz"
    )
