# signal_loader/jobs/scheduler.py
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from apscheduler.jobstores.base import JobLookupError
from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from signal_loader import db
from signal_loader.jobs.backfill import BackfillService
from signal_loader.jobs.common.config_provider import ConfigPlanProvider, Tunables
from signal_loader.jobs.common.lock_manager import LockManager
from signal_loader.jobs.common.time_window import utcnow
from signal_loader.jobs.exceptions import ValidationError
from signal_loader.jobs.executor import ExecutionResult, ExecutionStatus, LoadExecutor
from signal_loader.jobs.gap_scanner import GapScanner, GapScanSummary
from signal_loader.models import BackfillStatus, ExecutionOutcome, ExecutionRecord, Job, JobStatus, Lease

logger = logging.getLogger(__name__)

TICK_JOB_ID = 'loader_tick'
MAINTENANCE_JOB_ID = 'loader_maintenance'
BACKFILL_JOB_ID = 'loader_backfills'
GAP_SCAN_JOB_ID = 'loader_gap_scan'

# Lower runs first; healthy jobs are not held up by jobs coming out of failure
STATUS_PRIORITY = {JobStatus.IDLE: 0, JobStatus.FAILED: 1}


def is_due(job: Job, now: datetime) -> bool:
    """Enabled, IDLE or FAILED, and past its end-to-start cooldown"""
    if not job.enabled or job.status not in STATUS_PRIORITY:
        return False
    if job.last_watermark is None:
        return True
    return now >= job.last_watermark + timedelta(seconds=job.min_interval_seconds or 0)


def _warn_if_behind(job: Job, now: datetime):
    # max_interval_seconds is a target cadence only; nothing is forced
    if job.last_watermark is None or not job.max_interval_seconds:
        return
    lag = (now - job.last_watermark).total_seconds()
    if lag > job.max_interval_seconds:
        logger.warning(f"Job {job.code} is behind its target cadence: watermark {job.last_watermark} "
                       f"is {int(lag)}s old (max_interval_seconds={job.max_interval_seconds})")


@dataclass
class TickSummary:
    recovered: int = 0
    reaped: int = 0
    due: int = 0
    executed: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self):
        return asdict(self)


class LoaderScheduler:
    """
    Drives the tick loop of one replica.

    Nothing is kept between ticks: due jobs are recomputed from the
    datastore every time because any replica may have changed them.
    """

    def __init__(self, app, source_manager, holder: str,
                 tunables_provider: Optional[ConfigPlanProvider] = None,
                 clock: Callable[[], datetime] = utcnow,
                 lock_manager_factory: Optional[Callable] = None,
                 executor_factory: Optional[Callable] = None):
        self.app = app
        self.source_manager = source_manager
        self.holder = holder
        self.tunables_provider = tunables_provider or ConfigPlanProvider(Tunables())
        self.clock = clock
        self.lock_manager_factory = lock_manager_factory or self._default_lock_manager
        self.executor_factory = executor_factory or self._default_executor

        self._background = None
        self._tick_interval = None

    def _default_lock_manager(self, session) -> LockManager:
        return LockManager(session, self.holder, self.clock)

    def _default_executor(self, session, lock_manager) -> LoadExecutor:
        return LoadExecutor(
            session,
            self.source_manager,
            holder=self.holder,
            clock=self.clock,
            tunables_provider=self.tunables_provider,
            lock_manager=lock_manager,
        )

    def tunables(self) -> Tunables:
        with self.app.app_context():
            return self.tunables_provider.tunables()

    # Tick

    def tick(self) -> TickSummary:
        """
        One scheduling cycle: reap, recover, pick due jobs, run them.

        A datastore error while selecting due jobs aborts the tick and is
        raised; errors of individual runs never leave their task.
        """
        summary = TickSummary()

        with self.app.app_context():
            tunables = self.tunables_provider.tunables()
            self.reschedule_if_changed(tunables)

            summary.reaped = self.cleanup_stale_leases(tunables.stale_lease_threshold_seconds)
            self.fail_abandoned_runs(tunables.stale_lease_threshold_seconds)
            summary.recovered = self.recover_failed_jobs(threshold_seconds=tunables.recovery_threshold_seconds)

            try:
                due_codes = [job.code for job in self.due_jobs(self.clock())]
            except SQLAlchemyError as e:
                logger.error(f"Tick aborted, could not load due jobs: {e}")
                db.session.rollback()
                raise

        summary.due = len(due_codes)
        if not due_codes:
            logger.debug(f"Tick complete, nothing due | reaped={summary.reaped} | recovered={summary.recovered}")
            return summary

        with ThreadPoolExecutor(max_workers=max(1, tunables.worker_pool_size),
                                thread_name_prefix='loader-worker') as pool:
            futures = {pool.submit(self._run_job, code, tunables): code for code in due_codes}
            for future in as_completed(futures):
                code = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    logger.error(f"Job {code} task raised: {e}", exc_info=True)
                    summary.failed += 1
                    continue

                if result is None or result.status == ExecutionStatus.NOTHING_DUE:
                    summary.skipped += 1
                elif result.status == ExecutionStatus.FAILED:
                    summary.failed += 1
                else:
                    summary.executed += 1

        logger.info(f"Scheduling cycle complete | due={summary.due} | executed={summary.executed} | "
                    f"skipped={summary.skipped} | failed={summary.failed} | recovered={summary.recovered} | "
                    f"reaped={summary.reaped}")
        return summary

    def _run_job(self, code: str, tunables: Tunables) -> Optional[ExecutionResult]:
        """Acquire, run and release one job inside its own app context"""
        with self.app.app_context():
            session = db.session
            job = session.query(Job).filter_by(code=code).first()
            if job is None or not job.enabled:
                return None

            lock_manager = self.lock_manager_factory(session)
            lease = lock_manager.try_acquire(job, max_global=tunables.max_global_leases)
            if lease is None:
                return None

            # The due set is as old as the tick; another replica may have run the job since
            session.refresh(job)
            if not is_due(job, self.clock()):
                logger.info(f"Job {code} no longer due after acquiring lease | status={job.status} | "
                            f"lastWatermark={job.last_watermark}, releasing")
                lock_manager.release(lease)
                return None

            try:
                executor = self.executor_factory(session, lock_manager)
                return executor.run(job, lease=lease)
            finally:
                lock_manager.release(lease)

    def due_jobs(self, now: Optional[datetime] = None) -> List[Job]:
        """Enabled IDLE/FAILED jobs past their cooldown, IDLE first then by code"""
        now = now or self.clock()
        candidates = Job.query.filter(
            Job.enabled.is_(True),
            Job.status.in_([JobStatus.IDLE, JobStatus.FAILED]),
        ).all()

        due = []
        for job in candidates:
            try:
                job.validate()
            except ValidationError as e:
                logger.error(f"Skipping invalid job {job.code}: {e}")
                continue
            if not is_due(job, now):
                continue
            _warn_if_behind(job, now)
            due.append(job)

        due.sort(key=lambda j: (STATUS_PRIORITY.get(j.status, len(STATUS_PRIORITY)), j.code))
        return due

    # Recovery and maintenance

    def recover_failed_jobs(self, threshold_seconds: Optional[int] = None) -> int:
        """
        Reset FAILED jobs that have been failed for at least the threshold.

        This is the only way a job leaves FAILED without running.
        """
        with self.app.app_context():
            if threshold_seconds is None:
                threshold_seconds = self.tunables_provider.tunables().recovery_threshold_seconds
            now = self.clock()
            cutoff = now - timedelta(seconds=threshold_seconds)

            jobs = Job.query.filter(
                Job.enabled.is_(True),
                Job.status == JobStatus.FAILED,
                or_(Job.failed_since.is_(None), Job.failed_since <= cutoff),
            ).all()

            for job in jobs:
                failed_minutes = int((now - job.failed_since).total_seconds() // 60) if job.failed_since else None
                logger.info(f"Auto-recovering FAILED job {job.code} (failed for {failed_minutes} minutes)")
                job.status = JobStatus.IDLE
                job.failed_since = None

            if jobs:
                db.session.commit()
            return len(jobs)

    def cleanup_stale_leases(self, threshold_seconds: Optional[int] = None) -> int:
        """Best effort: never raises"""
        try:
            with self.app.app_context():
                if threshold_seconds is None:
                    threshold_seconds = self.tunables_provider.tunables().stale_lease_threshold_seconds
                return self.lock_manager_factory(db.session).cleanup_stale_leases(threshold_seconds)
        except Exception as e:
            logger.error(f"Error during stale lease cleanup: {e}", exc_info=True)
            return 0

    def fail_abandoned_runs(self, threshold_seconds: int) -> int:
        """
        Close RUNNING execution records whose holder is presumed dead.

        A replica that crashed mid-run leaves its job RUNNING, which would
        never be due again; such jobs are moved to FAILED so recovery picks
        them up. Best effort: never raises.
        """
        try:
            with self.app.app_context():
                now = self.clock()
                cutoff = now - timedelta(seconds=threshold_seconds)
                active_lease_ids = select(Lease.id).where(Lease.released_at.is_(None))
                records = ExecutionRecord.query.filter(
                    ExecutionRecord.outcome == ExecutionOutcome.RUNNING,
                    ExecutionRecord.start_time < cutoff,
                    or_(ExecutionRecord.lease_id.is_(None), ExecutionRecord.lease_id.not_in(active_lease_ids)),
                ).all()

                for record in records:
                    record.outcome = ExecutionOutcome.FAILED
                    record.end_time = now
                    record.error_message = f"Run abandoned: holder {record.holder} presumed dead"
                    job = Job.query.filter_by(code=record.job_code).first()
                    if job is not None and job.status == JobStatus.RUNNING:
                        job.status = JobStatus.FAILED
                        job.failed_since = now
                    logger.warning(f"Marked abandoned run {record.id} of job {record.job_code} as FAILED")

                if records:
                    db.session.commit()
                return len(records)
        except Exception as e:
            logger.error(f"Error while failing abandoned runs: {e}", exc_info=True)
            return 0

    def purge_released_leases(self, retention_days: Optional[int] = None) -> int:
        try:
            with self.app.app_context():
                if retention_days is None:
                    retention_days = self.tunables_provider.tunables().released_lease_retention_days
                return self.lock_manager_factory(db.session).purge_released_leases(retention_days)
        except Exception as e:
            logger.error(f"Error during released lease purge: {e}", exc_info=True)
            return 0

    def purge_execution_history(self, retention_days: Optional[int] = None) -> int:
        """Delete terminal execution records older than the retention period"""
        try:
            with self.app.app_context():
                if retention_days is None:
                    retention_days = self.tunables_provider.tunables().history_retention_days
                cutoff = self.clock() - timedelta(days=retention_days)

                expired_ids = select(ExecutionRecord.id).where(
                    ExecutionRecord.start_time < cutoff,
                    ExecutionRecord.outcome != ExecutionOutcome.RUNNING,
                )
                db.session.execute(
                    update(Lease)
                    .where(Lease.execution_record_id.in_(expired_ids))
                    .values(execution_record_id=None)
                    .execution_options(synchronize_session=False)
                )
                result = db.session.execute(
                    delete(ExecutionRecord)
                    .where(ExecutionRecord.start_time < cutoff,
                           ExecutionRecord.outcome != ExecutionOutcome.RUNNING)
                    .execution_options(synchronize_session=False)
                )
                db.session.commit()

                deleted = result.rowcount or 0
                if deleted:
                    logger.info(f"Cleaned up {deleted} execution record(s) older than {retention_days} days")
                return deleted
        except Exception as e:
            logger.error(f"Error during execution history cleanup: {e}", exc_info=True)
            return 0

    def run_maintenance(self):
        leases = self.purge_released_leases()
        history = self.purge_execution_history()
        return {'released_leases_purged': leases, 'execution_records_purged': history}

    # Backfills and gap scanning

    def backfill_service(self, session) -> BackfillService:
        return BackfillService(session, self.executor_factory(session, None), holder=self.holder, clock=self.clock)

    def run_pending_backfills(self) -> dict:
        """
        Run queued backfills, oldest first, up to backfill_batch_size per call.

        Backfills stuck in RUNNING longer than the stale lease threshold are
        failed first. Best effort: never raises.
        """
        summary = {'abandoned': 0, 'executed': 0, 'succeeded': 0, 'failed': 0}
        try:
            with self.app.app_context():
                tunables = self.tunables_provider.tunables()
                service = self.backfill_service(db.session)
                summary['abandoned'] = service.fail_abandoned(tunables.stale_lease_threshold_seconds)
                for backfill in service.execute_pending(limit=tunables.backfill_batch_size):
                    summary['executed'] += 1
                    if backfill.status == BackfillStatus.SUCCESS:
                        summary['succeeded'] += 1
                    else:
                        summary['failed'] += 1
        except Exception as e:
            logger.error(f"Error while running pending backfills: {e}", exc_info=True)
        if summary['executed']:
            logger.info(f"Backfill cycle complete | executed={summary['executed']} | "
                        f"succeeded={summary['succeeded']} | failed={summary['failed']}")
        return summary

    def run_gap_scan(self) -> GapScanSummary:
        """Scan recent execution history for gaps and queue backfills; never raises"""
        try:
            with self.app.app_context():
                tunables = self.tunables_provider.tunables()
                scanner = GapScanner(
                    db.session,
                    self.backfill_service(db.session),
                    clock=self.clock,
                    min_gap_seconds=tunables.gap_min_seconds,
                    lookback_days=tunables.gap_scan_lookback_days,
                    max_active_backfills=tunables.max_active_backfills,
                )
                return scanner.scan()
        except Exception as e:
            logger.error(f"Gap scan failed: {e}", exc_info=True)
            return GapScanSummary()

    # Operator triggers

    def force_recovery(self) -> int:
        """Reset every enabled FAILED job now, ignoring the recovery threshold"""
        recovered = self.recover_failed_jobs(threshold_seconds=0)
        logger.info(f"Forced recovery reset {recovered} job(s)")
        return recovered

    def force_lease_cleanup(self) -> int:
        reaped = self.cleanup_stale_leases()
        logger.info(f"Forced lease cleanup reaped {reaped} lease(s)")
        return reaped

    # APScheduler wiring

    def start(self, background_scheduler):
        """Register the tick, maintenance, backfill and gap scan jobs on an APScheduler scheduler"""
        self._background = background_scheduler
        tunables = self.tunables()
        self._tick_interval = tunables.tick_interval_seconds

        background_scheduler.add_job(
            func=self._scheduled_tick,
            trigger='interval',
            seconds=self._tick_interval,
            id=TICK_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        background_scheduler.add_job(
            func=self.run_maintenance,
            trigger='interval',
            hours=1,
            id=MAINTENANCE_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        background_scheduler.add_job(
            func=self.run_pending_backfills,
            trigger='interval',
            seconds=tunables.backfill_poll_seconds,
            id=BACKFILL_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        background_scheduler.add_job(
            func=self.run_gap_scan,
            trigger='interval',
            hours=tunables.gap_scan_interval_hours,
            id=GAP_SCAN_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info(f"Loader scheduler started | holder={self.holder} | tick={self._tick_interval}s")

    def _scheduled_tick(self):
        try:
            self.tick()
        except Exception as e:
            # The next tick is independent and retries
            logger.error(f"Scheduling cycle failed: {e}", exc_info=True)

    def reschedule_if_changed(self, tunables: Tunables) -> bool:
        """Apply a new tick interval from a switched config plan"""
        if self._background is None or tunables.tick_interval_seconds == self._tick_interval:
            return False

        try:
            self._background.reschedule_job(TICK_JOB_ID, trigger='interval',
                                            seconds=tunables.tick_interval_seconds)
        except JobLookupError:
            logger.warning(f"Tick job {TICK_JOB_ID} not found, cannot reschedule")
            return False

        logger.info(f"Tick interval changed {self._tick_interval}s -> {tunables.tick_interval_seconds}s")
        self._tick_interval = tunables.tick_interval_seconds
        return True
