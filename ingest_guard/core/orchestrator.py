"""
End-to-end ingestion pipeline with admission control.

State machine for one request:

    VALIDATING -> PERMISSION_CHECKING -> LOCK_ACQUIRING -> CACHE_LOOKUP
        -> CACHE_HIT -> DONE
        -> CACHE_MISS -> EXTRACTING -> ANALYZING -> PERSISTING
           -> QUOTA_COMMITTING -> DONE

Any state may move to FAILED. Invalid input fails in VALIDATING before any
lock, quota or cache work. Entering DONE or FAILED releases the source lock
exactly once. Quota is charged only after the result is saved, so failed,
timed out or cancelled jobs never consume a user's allowance; cache hits
are not charged at all.
"""

import asyncio
import inspect
import logging
import math
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

from ingest_guard.config.loader import IngestConfig
from ingest_guard.storage.models import ProcessedRecord
from ingest_guard.storage.repository import RecordRepository, initialize_schema, log_error

from .cache import ContentCache
from .errors import (
    AlreadyProcessingError,
    AnalysisError,
    ExtractionError,
    IngestError,
    PersistenceError,
    ProcessingTimeoutError,
    QuotaExceededError,
    UnknownIngestError,
    ValidationError,
)
from .locking import ProcessingLock, create_lock
from .permissions import PermissionGate
from .pipeline import Analyzer, AuxiliaryStep, ExtractedContent, Extractor
from .progress import ProgressEstimator
from .quota import QuotaLedger
from .sources import Source, SourceKind, normalize_source

logger = logging.getLogger(__name__)


class JobState(Enum):
    VALIDATING = "validating"
    PERMISSION_CHECKING = "permission_checking"
    LOCK_ACQUIRING = "lock_acquiring"
    CACHE_LOOKUP = "cache_lookup"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    EXTRACTING = "extracting"
    ANALYZING = "analyzing"
    PERSISTING = "persisting"
    QUOTA_COMMITTING = "quota_committing"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = frozenset({JobState.DONE, JobState.FAILED})

# Real progress milestones; sub-progress is mapped into the bands between them
MILESTONES = {
    JobState.VALIDATING: (0.05, "Validating source..."),
    JobState.CACHE_LOOKUP: (0.1, "Checking cache..."),
    JobState.EXTRACTING: (0.2, "Extracting content..."),
    JobState.ANALYZING: (0.6, "Analyzing content..."),
    JobState.PERSISTING: (0.9, "Saving results..."),
}

StateListener = Callable[[JobState], None]


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of a successful ``process`` call."""
    result_payload: Dict[str, Any]
    from_cache: bool
    record_id: str
    source_key: str

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "data": {
                **self.result_payload,
                "recordId": self.record_id,
                "fromCache": self.from_cache,
            },
        }


class _JobRun:
    """Mutable bookkeeping for one ``process`` call.

    Owns the lock release and the progress shutdown so both happen exactly
    once whichever way the run ends.
    """

    def __init__(
        self,
        owner: str,
        lock: ProcessingLock,
        progress: Optional[ProgressEstimator],
        on_state: Optional[StateListener],
    ):
        self.owner = owner
        self.lock = lock
        self.progress = progress
        self.on_state = on_state
        self.state: Optional[JobState] = None
        self.lock_key: Optional[str] = None

    def transition(self, state: JobState) -> None:
        if self.state in TERMINAL_STATES:
            return
        logger.debug("Job %s: %s -> %s", self.owner, self.state.value if self.state else None, state.value)
        self.state = state
        if state in TERMINAL_STATES:
            self._release()
        elif self.lock_key is not None:
            self.lock.set_state(self.lock_key, state.value)
        if state in MILESTONES:
            self.tick(*MILESTONES[state])
        if self.on_state is not None:
            self.on_state(state)

    def tick(self, fraction: float, message: str) -> None:
        if self.progress is not None:
            self.progress.tick(fraction, message)

    def band(self, low: float, high: float, fallback: str) -> Callable[[float, str], None]:
        """Progress callback mapping [0, 1] into [low, high]."""
        def report(fraction: float, message: str = "") -> None:
            if not math.isfinite(fraction):
                logger.debug("Ignoring non-finite progress report %r", fraction)
                return
            fraction = max(0.0, min(1.0, fraction))
            self.tick(low + (high - low) * fraction, message or fallback)
        return report

    def succeed(self, message: str) -> None:
        self.transition(JobState.DONE)
        self.tick(1.0, message)

    def fail(self) -> None:
        self.transition(JobState.FAILED)
        self.close()

    def close(self) -> None:
        self._release()
        if self.progress is not None:
            self.progress.stop()

    def _release(self) -> None:
        key, self.lock_key = self.lock_key, None
        if key is not None:
            self.lock.release(key, self.owner)


class IngestionOrchestrator:
    """Drives source ingestion: gate, lock, cache, extract, analyze, persist, charge.

    Args:
        config: Engine configuration
        ledger: Usage ledger charged on success
        gate: Permission gate consulted before any work
        lock: Per-source job registry
        cache: Result cache keyed by source key
        records: Repository for processed records
        extractors: Extractor per source kind
        analyzer: Analyzer producing the result payload
        clock: Callable returning the current time
        auxiliary_steps: Best-effort follow-ups run after success
    """

    def __init__(
        self,
        config: IngestConfig,
        ledger: QuotaLedger,
        gate: PermissionGate,
        lock: ProcessingLock,
        cache: ContentCache,
        records: RecordRepository,
        extractors: Dict[SourceKind, Extractor],
        analyzer: Analyzer,
        clock: Optional[Callable[[], datetime]] = None,
        auxiliary_steps: Iterable[AuxiliaryStep] = (),
    ):
        self.config = config
        self.ledger = ledger
        self.gate = gate
        self.lock = lock
        self.cache = cache
        self.records = records
        self.extractors = dict(extractors)
        self.analyzer = analyzer
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.auxiliary_steps = list(auxiliary_steps)

    def check_feature_usage(self, user_id: str, feature: str):
        """Read-only permission check for rendering quota UI."""
        return self.gate.check_feature_usage(user_id, feature)

    async def process(
        self,
        source_ref: str,
        user_id: str,
        progress: Optional[ProgressEstimator] = None,
        on_state: Optional[StateListener] = None,
    ) -> ProcessResult:
        """Ingest a source for a user.

        Args:
            source_ref: Raw YouTube URL/video id or local file reference
            user_id: User the work is admitted and charged for
            progress: Estimator receiving real progress ticks; stopped when
                the call ends, however it ends
            on_state: Called with every state transition

        Returns:
            ProcessResult with ``from_cache`` telling hits from fresh work

        Raises:
            ValidationError: Malformed source or missing user
            QuotaExceededError: Daily allowance used up
            AlreadyProcessingError: The same source is in flight
            ExtractionError: Extraction or analysis failed
            ProcessingTimeoutError: Extraction and analysis ran too long
            PersistenceError: Result computed but not saved
            UnknownIngestError: Anything unexpected
            asyncio.CancelledError: Caller cancelled; nothing was charged
        """
        run = _JobRun(uuid.uuid4().hex, self.lock, progress, on_state)
        source: Optional[Source] = None
        try:
            run.transition(JobState.VALIDATING)
            if not user_id:
                raise ValidationError("user_id is required")
            source = normalize_source(source_ref, self.config.processing.max_file_size_mb)
            extractor = self.extractors.get(source.kind)
            if extractor is None:
                raise ValidationError(f"No extractor configured for {source.kind.value} sources",
                                      details={"source_ref": source_ref})

            run.transition(JobState.PERMISSION_CHECKING)
            self.gate.ensure_allowed(user_id, source.feature)

            run.transition(JobState.LOCK_ACQUIRING)
            if not self.lock.acquire(source.key, run.owner):
                raise AlreadyProcessingError(source.key)
            run.lock_key = source.key

            run.transition(JobState.CACHE_LOOKUP)
            entry = self.cache.lookup(source.key)
            if entry is not None:
                run.transition(JobState.CACHE_HIT)
                logger.info("Cache hit for %s (user %s)", source.key, user_id)
                run.succeed("Found in cache!")
                return ProcessResult(entry.result_payload, True, entry.record_id, source.key)

            run.transition(JobState.CACHE_MISS)
            logger.info("Processing %s for user %s", source.key, user_id)
            payload = await self._compute(run, source, extractor)

            run.transition(JobState.PERSISTING)
            record = ProcessedRecord(
                record_id=str(uuid.uuid4()),
                user_id=user_id,
                source_key=source.key,
                source_ref=source.location,
                kind=source.kind.value,
                payload=payload,
                created_at=self._clock(),
            )
            try:
                self.records.save_record(record)
            except Exception as e:
                raise PersistenceError(
                    "Processing completed but the result could not be saved",
                    details={"source_key": source.key},
                ) from e

            run.transition(JobState.QUOTA_COMMITTING)
            self._commit_quota(user_id, source, record.record_id)
            self._cache_result(source, payload, record.record_id)

            run.succeed("Processing complete!")
            logger.info("Processed %s for user %s as record %s", source.key, user_id, record.record_id)
        except asyncio.CancelledError:
            logger.info("Processing of %s cancelled", source.key if source else source_ref)
            run.fail()
            raise
        except IngestError as e:
            run.fail()
            self._log_failure(user_id, e, source, source_ref)
            raise
        except Exception as e:
            run.fail()
            wrapped = UnknownIngestError(f"Unexpected processing failure: {e}")
            self._log_failure(user_id, wrapped, source, source_ref)
            raise wrapped from e
        finally:
            run.close()

        await self._run_auxiliary_steps(user_id, source, record.record_id, payload)
        return ProcessResult(payload, False, record.record_id, source.key)

    async def _compute(self, run: _JobRun, source: Source, extractor: Extractor) -> Dict[str, Any]:
        """Run extraction then analysis under the processing timeout."""
        timeout = self.config.processing.timeout_seconds
        try:
            return await asyncio.wait_for(self._extract_and_analyze(run, source, extractor), timeout)
        except asyncio.TimeoutError:
            logger.warning("Processing of %s timed out after %ss", source.key, timeout)
            raise ProcessingTimeoutError(source.key, timeout)

    async def _extract_and_analyze(self, run: _JobRun, source: Source, extractor: Extractor) -> Dict[str, Any]:
        run.transition(JobState.EXTRACTING)
        try:
            content = await extractor.extract(source, run.band(0.2, 0.6, "Extracting content..."))
        except IngestError:
            raise
        except Exception as e:
            raise ExtractionError(f"Extraction failed: {e}", details={"source_key": source.key}) from e
        if not isinstance(content, ExtractedContent) or not content.text.strip():
            raise ExtractionError("No text could be extracted from the source",
                                  details={"source_key": source.key})

        run.transition(JobState.ANALYZING)
        try:
            payload = await self.analyzer.analyze(content, run.band(0.6, 0.9, "Analyzing content..."))
        except IngestError:
            raise
        except Exception as e:
            raise AnalysisError(f"Analysis failed: {e}", details={"source_key": source.key}) from e
        if not isinstance(payload, dict):
            raise AnalysisError("Analyzer returned no result", details={"source_key": source.key})
        return payload

    def _commit_quota(self, user_id: str, source: Source, record_id: str) -> None:
        """Charge the user, undoing the saved record unless the charge went through."""
        try:
            admission = self.ledger.increment_if_allowed(user_id, source.feature)
        except Exception:
            self._discard_record(record_id)
            raise
        if admission.admitted:
            return
        self._discard_record(record_id)
        usage = self.gate.check_feature_usage(user_id, source.feature)
        raise QuotaExceededError(source.feature, usage.current, usage.limit, usage.upgrade_message)

    def _discard_record(self, record_id: str) -> None:
        try:
            self.records.delete_record(record_id)
        except sqlite3.Error:
            logger.warning("Could not remove uncharged record %s", record_id, exc_info=True)

    def _cache_result(self, source: Source, payload: Dict[str, Any], record_id: str) -> None:
        # The record is already durable; a cache write failure only costs a recompute later
        try:
            self.cache.store(source.key, payload, record_id)
        except sqlite3.Error:
            logger.warning("Could not cache result for %s", source.key, exc_info=True)

    async def _run_auxiliary_steps(
        self, user_id: str, source: Source, record_id: str, payload: Dict[str, Any]
    ) -> None:
        for step in self.auxiliary_steps:
            try:
                result = step(user_id, source, record_id, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.warning("Auxiliary step %r failed for %s", step, source.key, exc_info=True)

    def _log_failure(
        self, user_id: str, error: IngestError, source: Optional[Source], source_ref: str
    ) -> None:
        details = dict(error.details)
        details.setdefault("source_ref", source_ref)
        if source is not None:
            details.setdefault("source_key", source.key)
        logger.warning("Processing failed for user %s: %s %s", user_id, error.code.value, error.message)
        try:
            log_error(error.code.value, error.message, user_id=user_id or None, details=details,
                      db_path=self.records.db_path)
        except sqlite3.Error:
            logger.warning("Could not write error log entry", exc_info=True)


def create_orchestrator(
    config: IngestConfig,
    extractors: Dict[SourceKind, Extractor],
    analyzer: Analyzer,
    auxiliary_steps: Iterable[AuxiliaryStep] = (),
    clock: Optional[Callable[[], datetime]] = None,
) -> IngestionOrchestrator:
    """Create the schema and wire every component from configuration."""
    db_path = config.database.path
    initialize_schema(db_path)
    ledger = QuotaLedger(db_path, config, clock=clock)
    return IngestionOrchestrator(
        config=config,
        ledger=ledger,
        gate=PermissionGate(ledger, config),
        lock=create_lock(config, clock=clock),
        cache=ContentCache(db_path, ttl_seconds=config.cache.ttl_seconds, clock=clock),
        records=RecordRepository(db_path),
        extractors=extractors,
        analyzer=analyzer,
        clock=clock,
        auxiliary_steps=auxiliary_steps,
    )
