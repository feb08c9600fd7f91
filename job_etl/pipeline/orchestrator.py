"""
Pipeline orchestrator.

Drives acquisition -> enrichment -> persistence (-> migration) batch by
batch. Each batch passes through every active stage before the next batch
starts. The orchestrator is the only writer of run state and metrics:
per-item workers return outcomes and the orchestrator applies them.
"""

import asyncio
import inspect
import math
import uuid
from dataclasses import dataclass
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)

from job_etl.extraction.retry import compact_error, describe_error
from job_etl.models import (
    EnrichedRecord,
    FailedItem,
    ListingDetail,
    ListingReference,
    PipelineError,
    PipelineMetrics,
    PipelineResult,
    PipelineRunOptions,
    PipelineStage,
    PipelineState,
    PipelineStatus,
    StageOutcome,
)
from job_etl.pipeline.control import RunControl
from job_etl.pipeline.filters import ListingFilters
from job_etl.pipeline.interfaces import (
    AcquisitionSource,
    BatchSink,
    Enricher,
    LiveMigrator,
    SupportsClose,
)
from job_etl.utils.errors import (
    STAGE_ERRORS,
    AcquisitionError,
    ConfigurationError,
    PipelineConfigurationError,
    PipelineStateError,
    StageError,
)
from job_etl.utils.logging import LogContext, get_logger, log_performance

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# (failed item, the exception behind it)
Failure = Tuple[FailedItem, BaseException]


@dataclass(frozen=True)
class OrchestratorConfig:
    """Orchestrator tuning that does not change between runs."""

    batch_size: int = 10
    max_concurrency: int = 5
    batch_delay: float = 0.0
    default_max_records: int = 0

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise PipelineConfigurationError("batch_size must be at least 1", {"batch_size": self.batch_size})
        if self.max_concurrency < 1:
            raise PipelineConfigurationError(
                "max_concurrency must be at least 1", {"max_concurrency": self.max_concurrency}
            )
        if self.batch_delay < 0:
            raise PipelineConfigurationError("batch_delay must not be negative", {"batch_delay": self.batch_delay})


def _as_stage_error(stage: PipelineStage, error: BaseException, item_id: Optional[str]) -> BaseException:
    """Tag a collaborator error with the stage that observed it."""
    if isinstance(error, (StageError, ConfigurationError)):
        return error
    wrapped = STAGE_ERRORS[stage.value](describe_error(error), item_id=item_id)
    wrapped.__cause__ = error
    return wrapped


class PipelineOrchestrator:
    """
    Runs the ETL pipeline in batches with pause/resume/stop control.

    Example:
        orchestrator = PipelineOrchestrator(config, source, enricher=stage, sink=store, migrator=store)
        result = await orchestrator.run(PipelineRunOptions(max_records=100, continue_on_error=True))
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        source: AcquisitionSource,
        enricher: Optional[Enricher] = None,
        sink: Optional[BatchSink] = None,
        migrator: Optional[LiveMigrator] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.source = source
        self.enricher = enricher
        self.sink = sink
        self.migrator = migrator
        self._sleep = sleep

        self._state = PipelineState()
        self._control = RunControl()
        self._result: Optional[PipelineResult] = None

    # -------------------------------------------------------------------------
    # Status & control
    # -------------------------------------------------------------------------

    @property
    def status(self) -> PipelineStatus:
        return self._state.status

    @property
    def state(self) -> PipelineState:
        """Copy of the current run state."""
        return self._state.model_copy(deep=True)

    @property
    def last_result(self) -> Optional[PipelineResult]:
        """Result of the most recent run, partial when that run failed."""
        return self._result

    def get_metrics(self) -> PipelineMetrics:
        return self._state.metrics.snapshot()

    def _is_active(self) -> bool:
        return self._state.status in (PipelineStatus.RUNNING, PipelineStatus.PAUSED)

    def stop(self) -> None:
        """Request a stop; the run halts before its next batch."""
        if not self._is_active():
            logger.info(f"Stop ignored, pipeline is {self._state.status.value}")
            return
        if not self._control.stop_requested:
            logger.info("Stop requested, finishing in-flight batch")
        self._control.request_stop()

    def pause(self) -> None:
        """Request a pause; the run blocks before its next batch."""
        if self._control.stop_requested and self._is_active():
            raise PipelineStateError("pause", "stopping")
        if self._state.status == PipelineStatus.PAUSED:
            return
        if self._state.status != PipelineStatus.RUNNING:
            raise PipelineStateError("pause", self._state.status.value)
        self._control.request_pause()
        self._state.status = PipelineStatus.PAUSED
        logger.info("Pipeline paused")

    def resume(self) -> None:
        """Resume a paused run."""
        if self._control.stop_requested or self._state.status == PipelineStatus.STOPPED:
            raise PipelineStateError("resume", "stopped")
        if self._state.status == PipelineStatus.RUNNING:
            return
        if self._state.status != PipelineStatus.PAUSED:
            raise PipelineStateError("resume", self._state.status.value)
        self._state.status = PipelineStatus.RUNNING
        self._control.release()
        logger.info("Pipeline resumed")

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def _validate(self, options: PipelineRunOptions) -> None:
        if self._is_active():
            raise PipelineStateError("run", self._state.status.value)

        options.validate_combination()

        if not (options.skip_processing or options.scrape_only) and self.enricher is None:
            raise PipelineConfigurationError("Enrichment requires an enricher")
        if not options.skip_storage and self.sink is None:
            raise PipelineConfigurationError("Storage requires a batch sink")
        if options.migrate_to_live and self.migrator is None:
            raise PipelineConfigurationError("migrate_to_live requires a live migrator")

    @log_performance
    async def run(self, options: PipelineRunOptions) -> PipelineResult:
        """
        Run the pipeline once.

        Args:
            options: Options for this run

        Returns:
            Final metrics and per-stage succeeded/failed items

        Raises:
            PipelineConfigurationError: Options or collaborators are invalid; nothing ran
            PipelineStateError: A run is already active
            StageError: An item failed with ``continue_on_error`` off
        """
        self._validate(options)

        cap = options.record_cap or max(self.config.default_max_records, 0)
        filters = ListingFilters.from_options(options)
        batch_size = self.config.batch_size

        self._control = RunControl()
        self._state = PipelineState(
            run_id=uuid.uuid4().hex[:8],
            status=PipelineStatus.RUNNING,
            total_batches=math.ceil(cap / batch_size) if cap else None,
            options=options,
        )
        self._result = PipelineResult(status=PipelineStatus.RUNNING, metrics=self._state.metrics)
        semaphore = asyncio.Semaphore(self.config.max_concurrency)

        logger.info(
            f"Starting pipeline run {self._state.run_id}",
            extra={
                "max_records": cap or None,
                "batch_size": batch_size,
                "skip_processing": options.skip_processing,
                "skip_storage": options.skip_storage,
                "migrate_to_live": options.migrate_to_live,
                "scrape_only": options.scrape_only,
                "filters_active": filters.active,
            },
        )

        references = selected = batches = None
        try:
            references = self._open_references(None if filters.active else (cap or None))
            selected = self._select(references, filters, cap)
            batches = self._chunk(selected, batch_size)

            batch_number = 0
            async for batch in batches:
                if batch_number and self.config.batch_delay:
                    await self._sleep(self.config.batch_delay)
                if self._control.stop_requested:
                    break
                await self._control.wait_if_paused()
                if self._control.stop_requested:
                    break

                batch_number += 1
                self._state.current_batch = batch_number
                with LogContext(run_id=self._state.run_id, batch=batch_number):
                    await self._process_batch(batch_number, batch, options, semaphore)
                self._state.metrics.batches_completed += 1

            self._state.status = (
                PipelineStatus.STOPPED if self._control.stop_requested else PipelineStatus.COMPLETED
            )
            if self._state.status == PipelineStatus.COMPLETED:
                self._state.total_batches = batch_number
        except Exception as e:
            self._state.status = PipelineStatus.FAILED
            logger.error(f"Pipeline run {self._state.run_id} failed: {compact_error(e)}")
            raise
        finally:
            await self._aclose(batches)
            await self._aclose(selected)
            await self._aclose(references)
            self._state.metrics.finish()
            self._result.status = self._state.status
            await self._cleanup()

        metrics = self._state.metrics
        logger.info(
            f"Pipeline run {self._state.run_id} {self._state.status.value}: "
            f"scraped={metrics.scraped} processed={metrics.processed} stored={metrics.stored} "
            f"errors={len(metrics.errors)}"
        )
        return self._result.model_copy(update={"metrics": metrics.model_copy(deep=True)})

    def _open_references(self, limit: Optional[int]) -> AsyncIterator[ListingReference]:
        try:
            return self.source.list_references(limit)
        except StageError as e:
            self._record_error(PipelineStage.ACQUISITION, e, e.item_id)
            raise
        except Exception as e:
            error = AcquisitionError(f"Listing references unavailable: {describe_error(e)}")
            self._record_error(PipelineStage.ACQUISITION, error, None)
            raise error from e

    async def _select(
        self,
        references: AsyncIterator[ListingReference],
        filters: ListingFilters,
        cap: int,
    ) -> AsyncIterator[ListingReference]:
        """Filter references and stop after ``cap`` have been consumed."""
        consumed = 0
        skipped = 0
        try:
            async for reference in references:
                if filters.active and not filters.matches(reference):
                    skipped += 1
                    continue
                yield reference
                consumed += 1
                if cap and consumed >= cap:
                    break
        except StageError:
            raise
        except Exception as e:
            error = AcquisitionError(f"Listing references unavailable: {describe_error(e)}")
            self._record_error(PipelineStage.ACQUISITION, error, None)
            raise error from e
        finally:
            if skipped:
                logger.info(f"Skipped {skipped} references not matching filters")

    @staticmethod
    async def _chunk(
        references: AsyncIterator[ListingReference], size: int
    ) -> AsyncIterator[List[ListingReference]]:
        batch: List[ListingReference] = []
        async for reference in references:
            batch.append(reference)
            if len(batch) == size:
                yield batch
                batch = []
        if batch:
            yield batch

    # -------------------------------------------------------------------------
    # Batch processing
    # -------------------------------------------------------------------------

    async def _process_batch(
        self,
        batch_number: int,
        references: List[ListingReference],
        options: PipelineRunOptions,
        semaphore: asyncio.Semaphore,
    ) -> None:
        label = f"Batch {batch_number}" + (
            f"/{self._state.total_batches}" if self._state.total_batches else ""
        )

        # Step 1: acquisition
        self._state.current_stage = PipelineStage.ACQUISITION
        details, failures = await self._acquire(references, semaphore)
        self._apply(PipelineStage.ACQUISITION, details, failures)
        logger.info(f"{label}: acquired {len(details)}/{len(references)} listings")
        self._check_abort(failures, options)

        if options.skip_processing:
            return

        # Step 2: enrichment
        self._state.current_stage = PipelineStage.ENRICHMENT
        if options.scrape_only:
            records, failures = [EnrichedRecord.raw(detail) for detail in details], []
        else:
            records, failures = await self._enrich(details, semaphore)
        self._apply(PipelineStage.ENRICHMENT, records, failures)
        logger.info(f"{label}: processed {len(records)}/{len(details)} listings")
        self._check_abort(failures, options)

        if options.skip_storage:
            return

        # Step 3: persistence
        self._state.current_stage = PipelineStage.PERSISTENCE
        stored, failures = await self._store(records)
        self._apply(PipelineStage.PERSISTENCE, stored, failures)
        logger.info(f"{label}: stored {len(stored)}/{len(records)} records")
        self._check_abort(failures, options)

        if not options.migrate_to_live:
            return

        # Step 4: migration; failures never abort and never touch storage counts
        self._state.current_stage = PipelineStage.MIGRATION
        migrated, failures = await self._migrate(stored)
        self._apply(PipelineStage.MIGRATION, migrated, failures)
        logger.info(f"{label}: migrated {len(migrated)}/{len(stored)} records to live")

    @staticmethod
    async def _gather(
        items: Sequence[T],
        worker: Callable[[T], Awaitable[R]],
        semaphore: asyncio.Semaphore,
    ) -> List[Any]:
        """Run ``worker`` over every item; each slot holds a result or an exception."""

        async def guarded(item: T) -> R:
            async with semaphore:
                return await worker(item)

        results = await asyncio.gather(*(guarded(item) for item in items), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
        return results

    async def _acquire(
        self, references: List[ListingReference], semaphore: asyncio.Semaphore
    ) -> Tuple[List[ListingDetail], List[Failure]]:
        results = await self._gather(references, self.source.fetch_detail, semaphore)

        details: List[ListingDetail] = []
        failures: List[Failure] = []
        for reference, result in zip(references, results):
            if not isinstance(result, Exception) and result.error:
                result = AcquisitionError(result.error, item_id=reference.id)
            if isinstance(result, Exception):
                error = _as_stage_error(PipelineStage.ACQUISITION, result, reference.id)
                message = describe_error(error)
                item = FailedItem(
                    item_id=reference.id,
                    stage=PipelineStage.ACQUISITION,
                    error=message,
                    reference=reference,
                    detail=ListingDetail.placeholder(reference, message),
                )
                failures.append((item, error))
            else:
                details.append(result)
        return details, failures

    async def _enrich(
        self, details: List[ListingDetail], semaphore: asyncio.Semaphore
    ) -> Tuple[List[EnrichedRecord], List[Failure]]:
        results = await self._gather(details, self.enricher.enrich, semaphore)

        records: List[EnrichedRecord] = []
        failures: List[Failure] = []
        for detail, result in zip(details, results):
            if isinstance(result, Exception):
                error = _as_stage_error(PipelineStage.ENRICHMENT, result, detail.id)
                item = FailedItem(
                    item_id=detail.id,
                    stage=PipelineStage.ENRICHMENT,
                    error=describe_error(error),
                    reference=detail.to_reference(),
                    detail=detail,
                )
                failures.append((item, error))
            else:
                records.append(result)
        return records, failures

    async def _store(self, records: List[EnrichedRecord]) -> Tuple[List[EnrichedRecord], List[Failure]]:
        if not records:
            return [], []
        try:
            await self.sink.store_batch(records)
        except Exception as e:
            return [], self._batch_failures(PipelineStage.PERSISTENCE, records, e)
        return list(records), []

    async def _migrate(self, records: List[EnrichedRecord]) -> Tuple[List[EnrichedRecord], List[Failure]]:
        if not records:
            return [], []
        try:
            await self.migrator.migrate_batch_to_live(records)
        except Exception as e:
            return [], self._batch_failures(PipelineStage.MIGRATION, records, e)
        return list(records), []

    @staticmethod
    def _batch_failures(
        stage: PipelineStage, records: List[EnrichedRecord], error: Exception
    ) -> List[Failure]:
        failures = []
        for record in records:
            item_error = _as_stage_error(stage, error, record.id)
            item = FailedItem(
                item_id=record.id,
                stage=stage,
                error=describe_error(item_error),
                reference=record.detail.to_reference(),
                detail=record.detail,
                record=record,
            )
            failures.append((item, item_error))
        return failures

    # -------------------------------------------------------------------------
    # State mutation (orchestrator only)
    # -------------------------------------------------------------------------

    def _record_error(self, stage: PipelineStage, error: BaseException, item_id: Optional[str]) -> None:
        entry = PipelineError(stage=stage, error=describe_error(error), item_id=item_id)
        self._state.metrics.errors.append(entry)
        self._state.last_error = entry

    def _apply(self, stage: PipelineStage, succeeded: List[Any], failures: List[Failure]) -> None:
        metrics = self._state.metrics
        outcome: StageOutcome = getattr(self._result, stage.value)
        outcome.succeeded.extend(succeeded)

        for item, error in failures:
            outcome.failed.append(item)
            self._record_error(stage, error, item.item_id)
            logger.warning(f"{stage.value} failed for {item.item_id}: {item.error}")

        if stage == PipelineStage.ACQUISITION:
            metrics.scraped += len(succeeded)
            metrics.failed_scrapes += len(failures)
            metrics.acquisition.add(len(succeeded), len(failures))
        elif stage == PipelineStage.ENRICHMENT:
            metrics.processed += len(succeeded)
            metrics.failed_processes += len(failures)
            metrics.enrichment.add(len(succeeded), len(failures))
        elif stage == PipelineStage.PERSISTENCE:
            metrics.stored += len(succeeded)
            metrics.failed_storage += len(failures)
            metrics.persistence.add(len(succeeded), len(failures))
        else:
            metrics.migrated_to_live += len(succeeded)
            metrics.failed_migrations += len(failures)
            metrics.migration.add(len(succeeded), len(failures))

    @staticmethod
    def _check_abort(failures: List[Failure], options: PipelineRunOptions) -> None:
        for _, error in failures:
            if isinstance(error, ConfigurationError):
                raise error
        if failures and not options.continue_on_error:
            raise failures[0][1]

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    @staticmethod
    async def _aclose(iterator: Any) -> None:
        aclose = getattr(iterator, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.warning(f"Failed to close reference iterator: {compact_error(e)}")

    async def _cleanup(self) -> None:
        seen = set()
        for name, collaborator in (
            ("source", self.source),
            ("enricher", self.enricher),
            ("sink", self.sink),
            ("migrator", self.migrator),
        ):
            if collaborator is None or id(collaborator) in seen:
                continue
            seen.add(id(collaborator))
            if not isinstance(collaborator, SupportsClose):
                continue
            try:
                result = collaborator.close()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Failed to close {name}: {compact_error(e)}")
