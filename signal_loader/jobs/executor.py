# signal_loader/jobs/executor.py
import logging
import traceback
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from signal_loader.jobs.common.config_provider import ConfigPlanProvider, Tunables
from signal_loader.jobs.common.query_parameters import substitute_with_offset
from signal_loader.jobs.common.signal_sink import DatabaseSignalSink, SignalSink
from signal_loader.jobs.common.time_window import (TimeWindow, calculate_window, from_epoch_seconds,
                                                   utcnow)
from signal_loader.jobs.common.transformer import SignalData, SignalTransformer
from signal_loader.jobs.exceptions import (DuplicateDataError, ExecutionTimeoutError, IngestionError,
                                           InvalidArgument, JobNotFoundError, ValidationError)
from signal_loader.jobs.utils.logging_config import truncate_for_log
from signal_loader.models import (EmptyReason, ExecutionOutcome, ExecutionRecord, Job, JobStatus,
                                  PurgeStrategy)

logger = logging.getLogger(__name__)


class ExecutionStatus:
    SUCCESS = 'SUCCESS'
    FAILED = 'FAILED'
    NOTHING_DUE = 'NOTHING_DUE'


@dataclass
class ExecutionResult:
    job_code: str
    status: str
    execution_record_id: Optional[int] = None
    window: Optional[TimeWindow] = None
    rows_fetched: int = 0
    rows_ingested: int = 0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status != ExecutionStatus.FAILED


@dataclass
class LoadOutcome:
    """What loading one window did; local_window is the range the source was queried for"""
    rows_fetched: int
    rows_ingested: int
    rows_purged: int
    rows_skipped: int
    stored: List[SignalData]
    local_window: TimeWindow
    timestamp_format: str
    strategy: str


class LoadExecutor:
    """Performs one bounded extraction run for a job"""

    def __init__(self, session, source_manager, sink: Optional[SignalSink] = None,
                 transformer: Optional[SignalTransformer] = None, holder: str = 'unknown-replica',
                 clock: Callable[[], datetime] = utcnow, tunables_provider=None, lock_manager=None):
        self.session = session
        self.source_manager = source_manager
        self.tunables_provider = tunables_provider or ConfigPlanProvider(Tunables(), session=session)
        self.sink = sink
        self.transformer = transformer or SignalTransformer()
        self.holder = holder
        self.clock = clock
        self.lock_manager = lock_manager

    def run_by_code(self, code: str, lease=None) -> ExecutionResult:
        job = self.session.query(Job).filter_by(code=code).first()
        if job is None:
            raise JobNotFoundError(code)
        return self.run(job, lease=lease)

    def run(self, job: Job, lease=None) -> ExecutionResult:
        """
        Run one window for a job.

        Failures are never raised: they are written to the job (FAILED,
        failed_since) and to a FAILED execution record, and the watermark is
        left where it was so the same window is retried after recovery.

        Args:
            job: Job to run
            lease: Lease held for this run, linked to the execution record

        Returns:
            ExecutionResult with status SUCCESS, FAILED or NOTHING_DUE
        """
        code = job.code
        try:
            job.validate()
        except ValidationError as e:
            logger.error(f"Refusing to run invalid job {code}: {e}")
            return ExecutionResult(job_code=code, status=ExecutionStatus.FAILED, error=str(e))

        tunables = self.tunables_provider.tunables()
        start_time = self.clock()
        window = calculate_window(job, start_time, tunables.default_lookback_seconds)

        if window.is_empty:
            logger.debug(f"Nothing due for job {code}: window {window} is empty")
            return ExecutionResult(job_code=code, status=ExecutionStatus.NOTHING_DUE, window=window)

        logger.info(f"Starting job execution | job={code} | holder={self.holder} | "
                    f"lastWatermark={job.last_watermark} | window={window}")

        record = self._start_record(job, lease, window, start_time)
        record_id = record.id

        try:
            outcome = self._execute(job, window, record, tunables, start_time)
        except Exception as e:
            logger.error(f"Job execution failed | job={code} | error={e}")
            self.session.rollback()
            self._finish_failure(job, record_id, e, start_time)
            return ExecutionResult(job_code=code, status=ExecutionStatus.FAILED,
                                   execution_record_id=record_id, window=window,
                                   error=str(e) or type(e).__name__)

        logger.info(f"Job execution completed | job={code} | fetched={outcome.rows_fetched} | "
                    f"ingested={outcome.rows_ingested} | purged={outcome.rows_purged} | "
                    f"skipped={outcome.rows_skipped}")
        return ExecutionResult(job_code=code, status=ExecutionStatus.SUCCESS,
                               execution_record_id=record_id, window=window,
                               rows_fetched=outcome.rows_fetched, rows_ingested=outcome.rows_ingested)

    def _start_record(self, job: Job, lease, window: TimeWindow, start_time: datetime) -> ExecutionRecord:
        record = ExecutionRecord(
            job_code=job.code,
            outcome=ExecutionOutcome.RUNNING,
            holder=self.holder,
            lease_id=lease.id if lease is not None else None,
            start_time=start_time,
            requested_from=window.from_time,
            requested_to=window.to_time,
        )
        try:
            self.session.add(record)
            job.status = JobStatus.RUNNING
            self.session.flush()
            if lease is not None and self.lock_manager is not None:
                self.lock_manager.attach_execution(lease.id, record.id)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return record

    def _check_timeout(self, code: str, start_time: datetime, timeout: int):
        elapsed = (self.clock() - start_time).total_seconds()
        if elapsed > timeout:
            raise ExecutionTimeoutError(code, elapsed, timeout)

    def run_backfill(self, job: Job, window: TimeWindow, purge_strategy: Optional[str] = None) -> LoadOutcome:
        """
        Load an explicit historical window for a job.

        The job's watermark, status and empty-run counter are left alone and
        no execution record is written, so regular scheduling is unaffected.
        Unlike run(), errors are raised after the transaction is rolled back.

        Args:
            job: Job whose query and source are used
            window: Window to reload, in UTC
            purge_strategy: Overrides the job's strategy; PURGE_AND_RELOAD when omitted

        Returns:
            LoadOutcome of the window
        """
        code = job.code
        job.validate()
        if window.is_empty:
            raise InvalidArgument(f"Backfill window {window} for {code} is empty")
        strategy = purge_strategy or PurgeStrategy.PURGE_AND_RELOAD
        if strategy not in PurgeStrategy.ALL:
            raise InvalidArgument(f"Unknown purge strategy: {strategy}")

        tunables = self.tunables_provider.tunables()
        start_time = self.clock()
        logger.info(f"Starting backfill | job={code} | holder={self.holder} | window={window} | "
                    f"strategy={strategy}")

        try:
            outcome = self._load_window(job, window, strategy, tunables, start_time)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(f"Backfill completed | job={code} | window={window} | fetched={outcome.rows_fetched} | "
                    f"ingested={outcome.rows_ingested} | purged={outcome.rows_purged}")
        return outcome

    def _execute(self, job: Job, window: TimeWindow, record: ExecutionRecord,
                 tunables: Tunables, start_time: datetime) -> LoadOutcome:
        strategy = job.purge_strategy or PurgeStrategy.FAIL_ON_DUPLICATE
        outcome = self._load_window(job, window, strategy, tunables, start_time, record.id)
        self._finish_success(job, record, window, tunables, start_time, outcome)
        return outcome

    def _load_window(self, job: Job, window: TimeWindow, strategy: str, tunables: Tunables,
                     start_time: datetime, record_id: Optional[int] = None) -> LoadOutcome:
        """Query, transform, apply the purge strategy and ingest; nothing is committed here"""
        code = job.code
        offset = job.source_tz_offset_hours or 0

        sql, local_window, fmt = substitute_with_offset(job.query_text, window, offset)
        logger.info(f"Built executable SQL for {code} (offset {offset}h, {fmt.value}): {truncate_for_log(sql)}")

        rows = self.source_manager.execute_query(job.source_ref, sql)
        logger.info(f"Query executed for {code}: {len(rows)} rows returned from source '{job.source_ref}'")
        self._check_timeout(code, start_time, tunables.execution_timeout_seconds)

        signals = self.transformer.transform(code, rows, offset)
        self._check_timeout(code, start_time, tunables.execution_timeout_seconds)

        # The range the source actually saw, back in UTC
        from_epoch, to_epoch = local_window.shifted(offset).epoch_bounds()
        sink = self.sink or DatabaseSignalSink(self.session, batch_size=tunables.ingest_batch_size)

        purged = 0
        to_store = signals
        if strategy == PurgeStrategy.FAIL_ON_DUPLICATE:
            existing = sink.count_in_window(code, from_epoch, to_epoch)
            if existing > 0:
                raise DuplicateDataError(code, existing, from_epoch, to_epoch)
        elif strategy == PurgeStrategy.PURGE_AND_RELOAD:
            purged = sink.purge_window(code, from_epoch, to_epoch)
            if purged:
                logger.info(f"Purged {purged} existing records for {code} in [{from_epoch}, {to_epoch})")
        elif strategy == PurgeStrategy.SKIP_DUPLICATES:
            seen = sink.existing_keys(code, from_epoch, to_epoch)
            to_store = []
            for signal in signals:
                if signal.natural_key in seen:
                    continue
                seen.add(signal.natural_key)
                to_store.append(signal)
        skipped = len(signals) - len(to_store)

        result = sink.ingest(code, to_store, record_id)
        if not result.success:
            raise IngestionError(f"Signal ingestion failed for {code}: {result.error}")

        return LoadOutcome(rows_fetched=len(rows), rows_ingested=result.ingested, rows_purged=purged,
                           rows_skipped=skipped, stored=to_store, local_window=local_window,
                           timestamp_format=fmt.value, strategy=strategy)

    def _finish_success(self, job: Job, record: ExecutionRecord, window: TimeWindow, tunables: Tunables,
                        start_time: datetime, outcome: LoadOutcome):
        code = job.code
        ingested = outcome.rows_ingested
        stored = outcome.stored
        local_window = outcome.local_window
        end_time = self.clock()

        # Serialize the final write with other runs of the same job
        self.session.refresh(job, with_for_update=True)

        if job.last_watermark is None or window.to_time > job.last_watermark:
            job.last_watermark = window.to_time
        job.status = JobStatus.IDLE
        job.failed_since = None

        if ingested == 0:
            job.consecutive_empty_runs = (job.consecutive_empty_runs or 0) + 1
            if job.consecutive_empty_runs > tunables.max_empty_runs:
                logger.warning(
                    f"Job {code} has {job.consecutive_empty_runs} consecutive runs with 0 records "
                    f"(threshold: {tunables.max_empty_runs}) - possible source downtime. Window: {window}"
                )
            else:
                logger.info(f"Job {code} advanced past empty window {window} "
                            f"(run {job.consecutive_empty_runs}/{tunables.max_empty_runs})")
        else:
            if job.consecutive_empty_runs:
                logger.info(f"Job {code} recovered from {job.consecutive_empty_runs} consecutive empty runs")
            job.consecutive_empty_runs = 0

        record.outcome = ExecutionOutcome.SUCCESS
        record.end_time = end_time
        record.duration_seconds = (end_time - start_time).total_seconds()
        record.rows_fetched = outcome.rows_fetched
        record.rows_ingested = ingested
        record.rows_purged = outcome.rows_purged
        record.rows_skipped = outcome.rows_skipped
        if stored:
            timestamps = [signal.load_timestamp for signal in stored]
            record.actual_from = from_epoch_seconds(min(timestamps))
            record.actual_to = from_epoch_seconds(max(timestamps))
        else:
            record.empty_reason = EmptyReason.NO_SOURCE_ROWS if not outcome.rows_fetched else EmptyReason.ALL_DUPLICATES
        record.execution_metadata = {
            'timestamp_format': outcome.timestamp_format,
            'source_from': local_window.from_time.isoformat(),
            'source_to': local_window.to_time.isoformat(),
            'tz_offset_hours': job.source_tz_offset_hours or 0,
            'purge_strategy': outcome.strategy,
        }

        self.session.commit()

    def _finish_failure(self, job: Job, record_id: int, error: Exception, start_time: datetime):
        end_time = self.clock()
        try:
            record = self.session.get(ExecutionRecord, record_id)
            record.outcome = ExecutionOutcome.FAILED
            record.end_time = end_time
            record.duration_seconds = (end_time - start_time).total_seconds()
            record.error_message = str(error) or type(error).__name__
            record.error_detail = ''.join(traceback.format_exception(type(error), error, error.__traceback__))

            job.status = JobStatus.FAILED
            job.failed_since = end_time
            self.session.commit()
        except Exception as e:
            logger.error(f"Failed to persist failure of job {job.code}: {e}")
            self.session.rollback()
            raise
