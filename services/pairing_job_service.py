"""
Pairing job orchestrator.

Drives classification and pairing as a resumable background job. Each
invocation of process_job handles a bounded slice of work and returns:

1. Claim up to `parallel_chunks` unfinished chunks via chunk locks
   (a chunk someone else holds is skipped)
2. Fetch and classify each claimed chunk concurrently, within the
   invocation time budget
3. Merge finished chunks into the freshest job record
4. Once every chunk is done, run the pairing engine, store the result,
   clear the access credential and mark the job completed

The caller keeps invoking while `needs_next_invocation` is True.
"""

import asyncio
import time
from datetime import datetime
from typing import Callable, Optional
from uuid import uuid4

import structlog

from config.pairing import PairingConfig, get_pairing_config
from config.settings import settings
from exceptions import (
    AppError,
    ChunkProcessingError,
    ClassificationError,
    ImageFetchError,
    JobStoreError,
    PairingJobNotFoundError,
)
from integrations.image_source import ImageSource
from models.image_insight import ImageInsight
from models.pairing_job import (
    ChunkOutcome,
    ChunkRange,
    InvocationResult,
    JobStatus,
    PairingJob,
    PairingJobCreate,
    UploadMethod,
)
from services.classifier_service import ClaudeVisionClassifier, ImageClassifier
from services.insight_cache import InsightCache
from services.job_store_service import JobStore, get_job_store
from services.pairing_service import PairingService
from services.tiebreak_service import ClaudeTieBreakJudge, TieBreakJudge

logger = structlog.get_logger(__name__)

RECORD_LOCK_TTL_SECONDS = 10
RECORD_LOCK_ATTEMPTS = 50
RECORD_LOCK_POLL_SECONDS = 0.05


def job_key(job_id: str) -> str:
    return f"pairing-job:{job_id}"


def chunk_lock_key(job_id: str, start: int) -> str:
    return f"pairing-job:{job_id}:lock:{start}"


def record_lock_key(job_id: str) -> str:
    return f"pairing-job:{job_id}:lock:record"


def plan_chunks(job: PairingJob) -> list[ChunkRange]:
    """Chunks of the job not yet completed, in offset order."""
    done = set(job.completed_chunks)
    chunks = []
    for start in range(0, job.total_images, job.chunk_size):
        if start in done:
            continue
        end = min(start + job.chunk_size, job.total_images)
        chunks.append(ChunkRange(start=start, end=end, keys=job.image_keys[start:end]))
    return chunks


def processed_count_for(job: PairingJob) -> int:
    """Images covered by completed chunks."""
    total = 0
    for start in set(job.completed_chunks):
        total += max(0, min(start + job.chunk_size, job.total_images) - start)
    return min(total, job.total_images)


class PairingJobService:
    """
    Orchestrates pairing jobs.

    Collaborators are injectable; by default the job store comes from
    settings and the classifier and tie-break judge are Claude-backed,
    created on first use.
    """

    def __init__(
        self,
        store: Optional[JobStore] = None,
        classifier: Optional[ImageClassifier] = None,
        judge: Optional[TieBreakJudge] = None,
        source_factory: Optional[Callable[[PairingJob], ImageSource]] = None,
        config: Optional[PairingConfig] = None,
        cache: Optional[InsightCache] = None,
        chunk_size: Optional[int] = None,
        parallel_chunks: Optional[int] = None,
        lock_ttl_seconds: Optional[int] = None,
        max_chunk_attempts: Optional[int] = None,
        invocation_budget_seconds: Optional[float] = None,
        job_ttl_seconds: Optional[int] = None,
    ):
        self.store = store or get_job_store()
        self._classifier = classifier
        self._judge = judge
        self.source_factory = source_factory or (
            lambda job: ImageSource(job.upload_method, access_token=job.access_token)
        )
        self.config = config or get_pairing_config()
        self.cache = cache or InsightCache(ttl_seconds=settings.insight_cache_ttl_seconds)

        self.chunk_size = chunk_size or settings.chunk_size
        self.parallel_chunks = parallel_chunks or settings.parallel_chunks
        self.lock_ttl_seconds = lock_ttl_seconds or settings.chunk_lock_ttl_seconds
        self.max_chunk_attempts = max_chunk_attempts or settings.max_chunk_attempts
        self.invocation_budget_seconds = invocation_budget_seconds or settings.invocation_budget_seconds
        self.job_ttl_seconds = job_ttl_seconds or settings.job_ttl_seconds

    @property
    def classifier(self) -> ImageClassifier:
        if self._classifier is None:
            self._classifier = ClaudeVisionClassifier()
        return self._classifier

    @property
    def judge(self) -> Optional[TieBreakJudge]:
        if self._judge is None and self.config.tiebreak_enabled and settings.anthropic_configured:
            self._judge = ClaudeTieBreakJudge.from_config(self.config)
        return self._judge

    # ===================
    # JOB RECORDS
    # ===================

    def _ttl_for(self, job: PairingJob) -> int:
        """Seconds left in the job's retention window (fixed from creation)."""
        age = (datetime.utcnow() - job.created_at).total_seconds()
        return max(1, int(self.job_ttl_seconds - age))

    def _save(self, job: PairingJob) -> None:
        job.updated_at = datetime.utcnow()
        self.store.set(job_key(job.id), job.model_dump(mode="json"), self._ttl_for(job))

    def get_job(self, job_id: str) -> PairingJob:
        """
        Load a job record.

        Raises:
            PairingJobNotFoundError: Unknown or expired job
        """
        payload = self.store.get(job_key(job_id))
        if payload is None:
            raise PairingJobNotFoundError(job_id)
        return PairingJob.model_validate(payload)

    def create_job(self, data: PairingJobCreate) -> PairingJob:
        """
        Create a pending job.

        Upload method is dropbox when an access token is given, otherwise
        the keys are treated as staged URLs.
        """
        job = PairingJob(
            id=str(uuid4()),
            owner=data.owner,
            folder=data.folder,
            upload_method=UploadMethod.DROPBOX if data.access_token else UploadMethod.STAGED,
            image_keys=data.image_keys,
            access_token=data.access_token,
            total_images=len(data.image_keys),
            chunk_size=self.chunk_size,
        )
        self._save(job)

        logger.info(
            "pairing_job_created",
            job_id=job.id,
            owner=job.owner,
            total_images=job.total_images,
            upload_method=job.upload_method.value,
            chunks=len(plan_chunks(job))
        )
        return job

    async def _update_job(self, job_id: str, mutate: Callable[[PairingJob], None]) -> PairingJob:
        """
        Read-modify-write the job record under a short record lock.

        The freshest copy is re-read inside the lock so concurrent
        invocations never overwrite each other's progress.

        Raises:
            JobStoreError: Record lock could not be taken
        """
        lock_key = record_lock_key(job_id)
        for _ in range(RECORD_LOCK_ATTEMPTS):
            if await asyncio.to_thread(self.store.acquire_lock, lock_key, RECORD_LOCK_TTL_SECONDS):
                break
            await asyncio.sleep(RECORD_LOCK_POLL_SECONDS)
        else:
            raise JobStoreError("update_job", "Timed out waiting for job record lock", key=lock_key)

        try:
            job = await asyncio.to_thread(self.get_job, job_id)
            mutate(job)
            await asyncio.to_thread(self._save, job)
            return job
        finally:
            self.store.release_lock(lock_key)

    # ===================
    # INVOCATION
    # ===================

    def _result(self, job: PairingJob, outcomes: Optional[list[ChunkOutcome]] = None) -> InvocationResult:
        outcomes = outcomes or []
        return InvocationResult(
            job_id=job.id,
            status=job.status,
            processed_count=job.processed_count,
            total_images=job.total_images,
            chunks_processed=sum(1 for o in outcomes if o.status == "done"),
            chunks_skipped=sum(1 for o in outcomes if o.status == "skipped"),
            needs_next_invocation=job.status in (JobStatus.PENDING, JobStatus.PROCESSING),
        )

    async def process_job(self, job_id: str) -> InvocationResult:
        """
        Run one bounded invocation of a job.

        Args:
            job_id: Job to advance

        Returns:
            InvocationResult with progress and whether to invoke again

        Raises:
            PairingJobNotFoundError: Unknown or expired job
            ChunkProcessingError: A chunk failed but can be retried; other
                chunks' progress is already saved
            JobStoreError: Job record or lock storage failed; the job stays
                processing and a later invocation can finish it
        """
        job = self.get_job(job_id)
        if job.is_terminal:
            return self._result(job)

        if job.status == JobStatus.PENDING:
            job = await self._update_job(job_id, lambda j: j.transition_to(JobStatus.PROCESSING))
            logger.info("pairing_job_started", job_id=job_id, total_images=job.total_images)

        try:
            outcomes: list[ChunkOutcome] = []
            chunks = plan_chunks(job)
            if chunks:
                outcomes = await self._run_chunks(job, chunks[: self.parallel_chunks])
                # Each chunk merged itself; re-read for the combined progress
                job = await asyncio.to_thread(self.get_job, job_id)
                self._check_failures(job, outcomes)

            if not job.is_terminal and job.processed_count >= job.total_images:
                job = await self._complete(job)

            logger.info(
                "pairing_job_invocation_finished",
                job_id=job_id,
                status=job.status.value,
                processed_count=job.processed_count,
                total_images=job.total_images
            )
            return self._result(job, outcomes)

        except (ChunkProcessingError, JobStoreError):
            raise

        except AppError as e:
            job = await self._fail(job_id, e.message)
            return self._result(job)

        except Exception as e:
            logger.error(
                "pairing_job_unexpected_error",
                job_id=job_id,
                error=str(e),
                error_type=type(e).__name__
            )
            job = await self._fail(job_id, f"{type(e).__name__}: {e}")
            return self._result(job)

    async def _run_chunks(self, job: PairingJob, chunks: list[ChunkRange]) -> list[ChunkOutcome]:
        """
        Process chunks concurrently within the invocation budget.

        Chunks still running when the budget ends are cancelled and
        reported as timeouts; their locks are released on the way out or
        expire on their own.
        """
        source = self.source_factory(job)
        tasks = {
            asyncio.create_task(self._process_chunk(job, chunk, source)): chunk
            for chunk in chunks
        }
        done, pending = await asyncio.wait(tasks, timeout=self.invocation_budget_seconds)

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                "invocation_budget_exhausted",
                job_id=job.id,
                budget_seconds=self.invocation_budget_seconds,
                cancelled_chunks=[tasks[t].start for t in pending]
            )

        outcomes = []
        for task, chunk in tasks.items():
            if task in pending:
                outcomes.append(ChunkOutcome(start=chunk.start, status="timeout"))
            else:
                # Store failures propagate from here and fail the invocation
                outcomes.append(task.result())
        return sorted(outcomes, key=lambda o: o.start)

    async def _process_chunk(
        self,
        job: PairingJob,
        chunk: ChunkRange,
        source: ImageSource,
    ) -> ChunkOutcome:
        """
        Claim, fetch and classify one chunk.

        The chunk is merged into the job record before its lock is
        released, and a chunk another invocation already recorded is
        skipped, so each chunk is classified once.
        """
        lock_key = chunk_lock_key(job.id, chunk.start)
        acquired = await asyncio.to_thread(self.store.acquire_lock, lock_key, self.lock_ttl_seconds)
        if not acquired:
            logger.info("chunk_locked_skipped", job_id=job.id, chunk_start=chunk.start)
            return ChunkOutcome(start=chunk.start, status="skipped")

        logger.info("chunk_lock_acquired", job_id=job.id, chunk_start=chunk.start, images=chunk.size)
        try:
            fresh = await asyncio.to_thread(self.get_job, job.id)
            if fresh.is_terminal or chunk.start in fresh.completed_chunks:
                logger.info("chunk_already_completed", job_id=job.id, chunk_start=chunk.start)
                return ChunkOutcome(start=chunk.start, status="skipped")

            outcome = await self._classify_chunk(job, chunk, source)
            await self._update_job(job.id, lambda j: self._merge_outcomes(j, [outcome]))
            return outcome

        finally:
            try:
                self.store.release_lock(lock_key)
            except JobStoreError as e:
                # Lock expiry frees the chunk later
                logger.warning("chunk_lock_release_failed", lock_key=lock_key, error=e.message)

    async def _classify_chunk(
        self,
        job: PairingJob,
        chunk: ChunkRange,
        source: ImageSource,
    ) -> ChunkOutcome:
        """Fetch and classify a claimed chunk; fetch/classify errors become a failed outcome."""
        started = time.monotonic()
        try:
            insights, misses = self.cache.split(chunk.keys)

            if misses:
                fetched, failures = await asyncio.to_thread(source.fetch_many, misses)
                if fetched:
                    classified = await asyncio.to_thread(self.classifier.classify, fetched)
                    for insight in classified:
                        self.cache.put(insight)
                        insights[insight.key] = insight
                if failures:
                    first_key = next(iter(failures))
                    raise ImageFetchError(first_key, failures[first_key])

            ordered = [insights[k] for k in chunk.keys]
            logger.info(
                "chunk_classified",
                job_id=job.id,
                chunk_start=chunk.start,
                images=len(ordered),
                cache_hits=len(chunk.keys) - len(misses),
                duration_ms=int((time.monotonic() - started) * 1000)
            )
            return ChunkOutcome(start=chunk.start, status="done", insights=ordered)

        except (ImageFetchError, ClassificationError) as e:
            logger.error(
                "chunk_failed",
                job_id=job.id,
                chunk_start=chunk.start,
                error=e.message
            )
            return ChunkOutcome(start=chunk.start, status="failed", error=e.message)

    def _merge_outcomes(self, job: PairingJob, outcomes: list[ChunkOutcome]) -> None:
        """Fold chunk outcomes into the freshest job record."""
        if job.is_terminal:
            return

        by_key: dict[str, ImageInsight] = {i.key: i for i in job.classifications}
        completed = set(job.completed_chunks)

        for outcome in outcomes:
            if outcome.status == "done" and outcome.start not in completed:
                completed.add(outcome.start)
                for insight in outcome.insights:
                    by_key[insight.key] = insight
            elif outcome.status == "failed":
                slot = str(outcome.start)
                job.chunk_failures[slot] = job.chunk_failures.get(slot, 0) + 1

        job.completed_chunks = sorted(completed)
        job.classifications = [by_key[k] for k in job.image_keys if k in by_key]
        job.processed_count = max(job.processed_count, processed_count_for(job))

    def _check_failures(self, job: PairingJob, outcomes: list[ChunkOutcome]) -> None:
        """
        Raise for failed chunks.

        Raises:
            ClassificationError: A chunk used up its attempts (job fails)
            ChunkProcessingError: Failed chunks can still be retried
        """
        failed = [o for o in outcomes if o.status == "failed"]
        if not failed:
            return

        exhausted = [
            o for o in failed
            if job.chunk_failures.get(str(o.start), 0) >= self.max_chunk_attempts
        ]
        if exhausted:
            first = exhausted[0]
            raise ClassificationError(
                f"Chunk {first.start} failed {self.max_chunk_attempts} times: {first.error}",
            )

        raise ChunkProcessingError(
            job_id=job.id,
            failed_chunks=[o.start for o in failed],
            message=f"{len(failed)} chunk(s) failed; retry the invocation"
        )

    # ===================
    # TERMINAL STATES
    # ===================

    async def _complete(self, job: PairingJob) -> PairingJob:
        """Run the pairing engine over every classification and finish the job."""
        engine = PairingService(self.config, judge=self.judge)
        result = await asyncio.to_thread(engine.run, job.classifications)

        def finish(fresh: PairingJob) -> None:
            if fresh.is_terminal:
                return
            fresh.result = result
            fresh.clear_credentials()
            fresh.transition_to(JobStatus.COMPLETED)

        job = await self._update_job(job.id, finish)
        logger.info(
            "pairing_job_completed",
            job_id=job.id,
            pairs=len(result.pairs),
            singletons=len(result.singletons),
            pair_rate=result.metrics.pair_rate
        )
        return job

    async def _fail(self, job_id: str, message: str) -> PairingJob:
        """Mark the job failed with a credential-free message."""

        def fail(fresh: PairingJob) -> None:
            if fresh.is_terminal:
                return
            error = message
            if fresh.access_token:
                error = error.replace(fresh.access_token, "***")
            fresh.error = error
            fresh.clear_credentials()
            fresh.transition_to(JobStatus.FAILED)

        job = await self._update_job(job_id, fail)
        logger.error("pairing_job_failed", job_id=job_id, error=job.error)
        return job


_pairing_job_service: Optional[PairingJobService] = None


def get_pairing_job_service() -> PairingJobService:
    """Get or create the orchestrator singleton."""
    global _pairing_job_service
    if _pairing_job_service is None:
        _pairing_job_service = PairingJobService()
    return _pairing_job_service
