"""Pipeline orchestration: document processing and the insight flows."""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Set

from .chunking import chunk_pages
from .config import PipelineConfig, get_pipeline_config
from .documents import update_document_status
from .embed import EmbeddingClient
from .errors import (
    EmbeddingServiceError,
    ExtractionError,
    InsightParseError,
    InsightSchemaError,
    StorageError,
    StoreError,
)
from .extract import extract_pages
from .insights import CHUNKS_PER_GROUP, InsightExtractor
from .llm import GenerativeModel
from .logging_config import (
    get_audit_logger,
    log_document_processed,
    log_insight_group,
    log_insight_merge,
    log_processing_failed,
)
from .merge import Fallback, InsightMerger, MergeOutcome
from .models import ChunkMatch, Insight, InsightPlan
from .retrieve import search_chunks
from .storage import LocalObjectStorage, ObjectStorage
from .store import (
    DEFAULT_MATCH_COUNT,
    DEFAULT_MATCH_THRESHOLD,
    INSERT_BATCH_SIZE,
    InMemoryStore,
    PostgresStore,
    Store,
    persist_chunks,
)

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    success: bool
    error: Optional[str] = None


class DocumentProcessor:
    """Download -> extract -> chunk -> embed -> persist, driving Document.status."""

    def __init__(
        self,
        store: Store,
        storage: ObjectStorage,
        embedder: EmbeddingClient,
        insert_batch_size: int = INSERT_BATCH_SIZE
    ):
        self.store = store
        self.storage = storage
        self.embedder = embedder
        self.insert_batch_size = insert_batch_size

    def _fail(self, document_id: str, stage: str, message: str) -> ProcessResult:
        logger.error(f"Processing {document_id} failed at {stage}: {message}")
        log_processing_failed(get_audit_logger("pipeline"), document_id=document_id, stage=stage, error=message)
        update_document_status(self.store, document_id, "failed")
        return ProcessResult(success=False, error=message)

    def process_document(self, document_id: str) -> ProcessResult:
        """
        Run the full processing flow for one document.

        Every failure is terminal for the run and leaves the document
        ``failed``; a retry re-runs everything from the download.

        Args:
            document_id: Document to process (status ``processing``)

        Returns:
            ProcessResult with ``success`` and, on failure, a single message
        """
        start_time = time.time()
        logger.info(f"Starting processing for document: {document_id}")

        try:
            document = self.store.get_document(document_id)
        except StoreError as e:
            logger.error(f"Document lookup failed for {document_id}: {e}")
            return ProcessResult(success=False, error="Document not found.")
        if document is None:
            logger.error(f"Document not found: {document_id}")
            return ProcessResult(success=False, error="Document not found.")

        stage = "download"
        try:
            try:
                pdf_bytes = self.storage.download(document.file_url)
            except StorageError as e:
                return self._fail(document_id, stage, f"Failed to download PDF: {e}")

            stage = "extract"
            try:
                extracted = extract_pages(pdf_bytes)
            except ExtractionError as e:
                return self._fail(document_id, stage, str(e))

            self.store.update_document(document_id, status="processing", total_pages=extracted.total_pages)

            stage = "chunk"
            chunks = chunk_pages(extracted.pages)
            logger.info(f"Generated {len(chunks)} chunks for {document_id}")
            if not chunks:
                return self._fail(document_id, stage, "No text chunks could be generated.")

            stage = "embed"
            try:
                embeddings = self.embedder.embed([chunk.content for chunk in chunks], mode="document")
            except EmbeddingServiceError as e:
                return self._fail(document_id, stage, str(e))

            stage = "persist"
            try:
                # a fresh run re-derives the chunk set rather than appending to it
                self.store.delete_chunks(document_id)
                batches = persist_chunks(
                    self.store, document_id, chunks, embeddings, batch_size=self.insert_batch_size
                )
            except StoreError as e:
                return self._fail(document_id, stage, str(e))

            self.store.update_document(document_id, status="ready")
        except Exception as e:
            logger.exception(f"Unexpected error while processing {document_id}")
            return self._fail(document_id, stage, str(e) or "Unknown processing error.")

        log_document_processed(
            get_audit_logger("pipeline"),
            document_id=document_id,
            pages=extracted.total_pages,
            chunks_created=len(chunks),
            batches_written=batches,
            processing_time_ms=(time.time() - start_time) * 1000,
        )
        return ProcessResult(success=True)


class InsightService:
    """Cache-checked, re-entrant insight generation for one document at a time."""

    def __init__(
        self,
        store: Store,
        extractor: InsightExtractor,
        merger: InsightMerger,
        max_workers: int = 8
    ):
        self.store = store
        self.extractor = extractor
        self.merger = merger
        self.max_workers = max_workers
        # document id -> [lock, number of threads holding or waiting on it]
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _document_lock(self, document_id: str):
        # single-flight per document within this process
        with self._locks_guard:
            entry = self._locks.setdefault(document_id, [threading.RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[document_id]

    def get_cached_document_insights(self, document_id: str) -> Optional[List[Insight]]:
        """Non-empty cached set, or None on a miss."""
        try:
            return self.store.get_cached_insights(document_id)
        except StoreError as e:
            logger.error(f"Insight cache read failed for {document_id}: {e}")
            return None

    def get_insight_plan(self, document_id: str) -> Optional[InsightPlan]:
        """Chunk count and number of groups; None when there is nothing to extract."""
        try:
            count = self.store.count_chunks(document_id)
        except StoreError as e:
            logger.error(f"Could not count chunks for {document_id}: {e}")
            return None
        if count == 0:
            return None
        groups_of = self.extractor.chunks_per_group
        return InsightPlan(total_chunks=count, total_groups=(count + groups_of - 1) // groups_of)

    def extract_group_insights(self, document_id: str, group_index: int, total_groups: int) -> List[Insight]:
        """
        Extract one group; malformed model output degrades to zero insights.

        Raises:
            GenerationError: if the model service call fails
        """
        try:
            insights = self.extractor.extract_group(document_id, group_index, total_groups)
        except (InsightParseError, InsightSchemaError) as e:
            logger.error(f"Group {group_index + 1}/{total_groups} of {document_id} returned malformed output: {e}")
            log_insight_group(get_audit_logger("pipeline"), document_id, group_index, total_groups, 0, error=str(e))
            return []

        log_insight_group(get_audit_logger("pipeline"), document_id, group_index, total_groups, len(insights))
        return insights

    def merge_and_cache(self, document_id: str, candidates: Sequence[Insight]) -> MergeOutcome:
        """Merge candidates and write the result to the cache as one replace."""
        outcome = self.merger.merge(document_id, candidates)

        with self._document_lock(document_id):
            try:
                self.store.upsert_insights(document_id, outcome.insights)
            except StoreError as e:
                logger.error(f"Failed to cache insights for {document_id}: {e}")

        log_insight_merge(
            get_audit_logger("pipeline"),
            document_id=document_id,
            candidates=len(candidates),
            final_count=len(outcome.insights),
            outcome="fallback" if isinstance(outcome, Fallback) else "merged",
            reason=outcome.reason if isinstance(outcome, Fallback) else None,
        )
        return outcome

    def merge_and_cache_insights(self, document_id: str, candidates: Sequence[Insight]) -> List[Insight]:
        if not candidates:
            return []
        return self.merge_and_cache(document_id, candidates).insights

    def generate_insights(self, document_id: str) -> List[Insight]:
        """Single-shot flow: cache, plan, all groups concurrently, merge, cache."""
        with self._document_lock(document_id):
            cached = self.get_cached_document_insights(document_id)
            if cached:
                return cached

            plan = self.get_insight_plan(document_id)
            if plan is None:
                return []

            workers = max(1, min(self.max_workers, plan.total_groups))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                group_results = list(
                    pool.map(
                        lambda group_index: self.extract_group_insights(
                            document_id, group_index, plan.total_groups
                        ),
                        range(plan.total_groups),
                    )
                )

            all_insights = [insight for group in group_results for insight in group]
            if not all_insights:
                return []
            return self.merge_and_cache_insights(document_id, all_insights)

    def regenerate_insights(self, document_id: str) -> List[Insight]:
        """Drop the cached set and recompute everything."""
        with self._document_lock(document_id):
            self.store.delete_insights(document_id)
            return self.generate_insights(document_id)

    def start_progressive_run(self, document_id: str) -> "ProgressiveInsightRun":
        cached = self.get_cached_document_insights(document_id)
        if cached:
            return ProgressiveInsightRun(self, document_id, plan=None, cached=cached)
        return ProgressiveInsightRun(self, document_id, plan=self.get_insight_plan(document_id))


@dataclass
class ProgressiveInsightRun:
    """
    Sequential, cancellable group-by-group extraction.

    Each ``step()`` extracts the next group and returns only insights whose
    IDs have not been surfaced yet. ``cancel()`` takes effect at the next
    checkpoint: between groups or before the merge.
    """
    service: InsightService
    document_id: str
    plan: Optional[InsightPlan]
    cached: Optional[List[Insight]] = None
    group_index: int = 0
    accumulated: List[Insight] = field(default_factory=list)
    surfaced_ids: Set[str] = field(default_factory=set)
    cancelled: bool = False
    outcome: Optional[MergeOutcome] = None

    @property
    def total_groups(self) -> int:
        return self.plan.total_groups if self.plan else 0

    @property
    def done(self) -> bool:
        return self.cached is not None or self.group_index >= self.total_groups

    @property
    def insights(self) -> List[Insight]:
        """Best current view: cached, merged, or what has been accumulated so far."""
        if self.cached is not None:
            return list(self.cached)
        if self.outcome is not None:
            return list(self.outcome.insights)
        return list(self.accumulated)

    def cancel(self) -> None:
        self.cancelled = True

    def step(self) -> List[Insight]:
        if self.cancelled or self.done:
            return []

        group_index = self.group_index
        batch = self.service.extract_group_insights(self.document_id, group_index, self.total_groups)
        self.group_index += 1
        if self.cancelled:
            return []

        self.accumulated.extend(batch)
        fresh = [insight for insight in batch if insight.id not in self.surfaced_ids]
        self.surfaced_ids.update(insight.id for insight in fresh)
        return fresh

    def run(self) -> Iterator[List[Insight]]:
        """Yield each group's newly surfaced insights (the cached set on a hit)."""
        if self.cached is not None:
            yield list(self.cached)
            return
        while not self.done and not self.cancelled:
            yield self.step()

    def finish(self) -> Optional[MergeOutcome]:
        """Merge and cache; None when cancelled, served from cache, or empty."""
        if self.cancelled or self.cached is not None:
            return None
        if not self.done:
            raise RuntimeError(f"{self.total_groups - self.group_index} groups still pending")
        if not self.accumulated:
            return None
        self.outcome = self.service.merge_and_cache(self.document_id, self.accumulated)
        return self.outcome


def create_store(config: PipelineConfig) -> Store:
    if config.store_backend == "memory":
        return InMemoryStore()
    if config.store_backend == "postgres":
        return PostgresStore(config.database_url)
    raise ValueError(f"Unknown store backend: {config.store_backend}")


class DocInsight:
    """Facade exposing the pipeline operations over one set of collaborators."""

    def __init__(
        self,
        store: Store,
        storage: ObjectStorage,
        embedder: EmbeddingClient,
        model: GenerativeModel,
        config: Optional[PipelineConfig] = None
    ):
        self.config = config or PipelineConfig()
        self.store = store
        self.storage = storage
        self.embedder = embedder
        self.processor = DocumentProcessor(
            store, storage, embedder, insert_batch_size=self.config.chunk_insert_batch_size
        )
        self.insights = InsightService(
            store,
            InsightExtractor(store, model, chunks_per_group=CHUNKS_PER_GROUP),
            InsightMerger(model),
            max_workers=self.config.insight_workers,
        )

    @classmethod
    def from_env(cls) -> "DocInsight":
        config = get_pipeline_config()
        return cls(
            store=create_store(config),
            storage=LocalObjectStorage(Path(config.object_store_dir)),
            embedder=EmbeddingClient(),
            model=GenerativeModel(),
            config=config,
        )

    def process_document(self, document_id: str) -> ProcessResult:
        return self.processor.process_document(document_id)

    def get_insight_plan(self, document_id: str) -> Optional[InsightPlan]:
        return self.insights.get_insight_plan(document_id)

    def extract_group_insights(self, document_id: str, group_index: int, total_groups: int) -> List[Insight]:
        return self.insights.extract_group_insights(document_id, group_index, total_groups)

    def merge_and_cache_insights(self, document_id: str, candidates: Sequence[Insight]) -> List[Insight]:
        return self.insights.merge_and_cache_insights(document_id, candidates)

    def get_cached_document_insights(self, document_id: str) -> Optional[List[Insight]]:
        return self.insights.get_cached_document_insights(document_id)

    def generate_insights(self, document_id: str) -> List[Insight]:
        return self.insights.generate_insights(document_id)

    def regenerate_insights(self, document_id: str) -> List[Insight]:
        return self.insights.regenerate_insights(document_id)

    def start_progressive_run(self, document_id: str) -> ProgressiveInsightRun:
        return self.insights.start_progressive_run(document_id)

    def search_chunks(
        self,
        document_id: str,
        query: str,
        top_k: int = DEFAULT_MATCH_COUNT,
        threshold: float = DEFAULT_MATCH_THRESHOLD
    ) -> List[ChunkMatch]:
        return search_chunks(self.store, self.embedder, document_id, query, top_k=top_k, threshold=threshold)
