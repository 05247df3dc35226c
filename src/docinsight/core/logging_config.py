"""Structured logging configuration for docinsight."""

import logging
from typing import Any, Dict, Optional

import structlog
from structlog.stdlib import LoggerFactory


def configure_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structured logging with audit capabilities."""

    # Set log level
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
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

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


def log_document_processed(
    logger: structlog.BoundLogger,
    document_id: str,
    pages: int,
    chunks_created: int,
    batches_written: int,
    processing_time_ms: float
) -> None:
    """Log a successful processing run for the audit trail."""
    logger.info(
        "document_processed",
        document_id=document_id,
        pages=pages,
        chunks_created=chunks_created,
        batches_written=batches_written,
        processing_time_ms=processing_time_ms,
        event_type="document_processing"
    )


def log_processing_failed(
    logger: structlog.BoundLogger,
    document_id: str,
    stage: str,
    error: str
) -> None:
    """Log a terminal processing failure."""
    logger.warning(
        "document_processing_failed",
        document_id=document_id,
        stage=stage,
        error=error,
        event_type="document_processing"
    )


def log_insight_group(
    logger: structlog.BoundLogger,
    document_id: str,
    group_index: int,
    total_groups: int,
    insights_extracted: int,
    error: Optional[str] = None
) -> None:
    """Log the outcome of one group extraction call."""
    logger.info(
        "insight_group_extracted",
        document_id=document_id,
        group_index=group_index,
        total_groups=total_groups,
        insights_extracted=insights_extracted,
        error=error,
        event_type="insight_extraction"
    )


def log_insight_merge(
    logger: structlog.BoundLogger,
    document_id: str,
    candidates: int,
    final_count: int,
    outcome: str,
    reason: Optional[str] = None
) -> None:
    """Log the merge step and whether it degraded to the unmerged set."""
    logger.info(
        "insight_merge_completed",
        document_id=document_id,
        candidates=candidates,
        final_count=final_count,
        outcome=outcome,
        reason=reason,
        event_type="insight_merge"
    )


def log_chunk_search(
    logger: structlog.BoundLogger,
    document_id: str,
    query: str,
    top_k: int,
    threshold: float,
    result_count: int,
    execution_time_ms: float,
    filters_applied: Dict[str, Any] = None
) -> None:
    """Log a similarity search with its parameters."""
    logger.info(
        "chunk_search_completed",
        document_id=document_id,
        query=query,
        top_k=top_k,
        threshold=threshold,
        result_count=result_count,
        execution_time_ms=execution_time_ms,
        filters_applied=filters_applied or {},
        event_type="chunk_search"
    )
