# signal_loader/jobs/backfill.py
import logging
import traceback
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import update

from signal_loader.jobs.common.time_window import TimeWindow, utcnow
from signal_loader.jobs.exceptions import (BackfillNotFoundError, BackfillStateError, InvalidArgument,
                                           JobNotFoundError)
from signal_loader.jobs.executor import LoadExecutor, LoadOutcome
from signal_loader.models import BackfillJob, BackfillStatus, Job, PurgeStrategy

logger = logging.getLogger(__name__)


class BackfillService:
    """
    Queue of reloads over explicit historical windows.

    Backfills never move a job's watermark. Every replica may work the
    queue: a PENDING row is claimed with one conditional UPDATE, so only
    one replica ever runs it.
    """

    def __init__(self, session, executor: LoadExecutor, holder: str = 'unknown-replica',
                 clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.executor = executor
        self.holder = holder
        self.clock = clock

    def submit(self, job_code: str, from_time: datetime, to_time: datetime,
               purge_strategy: Optional[str] = None, requested_by: Optional[str] = None) -> BackfillJob:
        """
        Queue a backfill as PENDING.

        Args:
            job_code: Job whose query is replayed
            from_time: Inclusive start, naive UTC
            to_time: Exclusive end, naive UTC; not in the future
            purge_strategy: PURGE_AND_RELOAD when omitted
            requested_by: Operator or system component asking for it

        Raises:
            InvalidArgument: missing code, bad range or unknown strategy
            JobNotFoundError: no such job
        """
        if not job_code or not job_code.strip():
            raise InvalidArgument('Job code is required')
        job = self.session.query(Job).filter_by(code=job_code).first()
        if job is None:
            raise JobNotFoundError(job_code)

        if from_time is None or to_time is None:
            raise InvalidArgument('From time and to time are required')
        if to_time <= from_time:
            raise InvalidArgument(f"To time must be after from time: [{from_time}, {to_time})")
        now = self.clock()
        if to_time > now:
            raise InvalidArgument(f"Backfill cannot reach into the future: to_time={to_time} now={now}")

        strategy = purge_strategy or PurgeStrategy.PURGE_AND_RELOAD
        if strategy not in PurgeStrategy.ALL:
            raise InvalidArgument(f"Unknown purge strategy: {strategy}")

        backfill = BackfillJob(
            job_code=job_code,
            from_time=from_time,
            to_time=to_time,
            purge_strategy=strategy,
            status=BackfillStatus.PENDING,
            requested_by=requested_by,
            requested_at=now,
        )
        self.session.add(backfill)
        self.session.commit()

        logger.info(f"Backfill submitted | id={backfill.id} | job={job_code} | window=[{from_time}, {to_time}) | "
                    f"strategy={strategy} | requestedBy={requested_by}")
        return backfill

    def execute(self, backfill_id: int) -> BackfillJob:
        """
        Claim and run one PENDING backfill.

        A failed run is recorded on the backfill (FAILED with the error)
        rather than raised.

        Raises:
            BackfillNotFoundError: no such backfill
            BackfillStateError: it is no longer PENDING (run elsewhere or cancelled)
        """
        backfill = self.get_or_raise(backfill_id)
        start_time = self.clock()

        claimed = self.session.execute(
            update(BackfillJob)
            .where(BackfillJob.id == backfill_id, BackfillJob.status == BackfillStatus.PENDING)
            .values(status=BackfillStatus.RUNNING, start_time=start_time, holder=self.holder)
            .execution_options(synchronize_session=False)
        ).rowcount == 1
        self.session.commit()
        self.session.refresh(backfill)
        if not claimed:
            raise BackfillStateError(backfill_id, backfill.status)

        window = TimeWindow(backfill.from_time, backfill.to_time)
        logger.info(f"Executing backfill | id={backfill_id} | job={backfill.job_code} | holder={self.holder} | "
                    f"window={window}")

        try:
            job = self.session.query(Job).filter_by(code=backfill.job_code).first()
            if job is None:
                raise JobNotFoundError(backfill.job_code)
            outcome = self.executor.run_backfill(job, window, backfill.purge_strategy)
        except Exception as e:
            logger.error(f"Backfill {backfill_id} of job {backfill.job_code} failed: {e}")
            self.session.rollback()
            self._finish(backfill, start_time, error=e)
            return backfill

        self._finish(backfill, start_time, outcome=outcome)
        return backfill

    def _finish(self, backfill: BackfillJob, start_time: datetime, outcome: Optional[LoadOutcome] = None,
                error: Optional[Exception] = None):
        end_time = self.clock()
        backfill.end_time = end_time
        backfill.duration_seconds = (end_time - start_time).total_seconds()
        if error is None:
            backfill.status = BackfillStatus.SUCCESS
            backfill.rows_fetched = outcome.rows_fetched
            backfill.rows_ingested = outcome.rows_ingested
            backfill.rows_purged = outcome.rows_purged
        else:
            backfill.status = BackfillStatus.FAILED
            backfill.error_message = str(error) or type(error).__name__
            backfill.error_detail = ''.join(traceback.format_exception(type(error), error, error.__traceback__))
        self.session.commit()

        logger.info(f"Backfill {backfill.id} finished | status={backfill.status} | "
                    f"duration={backfill.duration_seconds:.1f}s | fetched={backfill.rows_fetched} | "
                    f"ingested={backfill.rows_ingested} | purged={backfill.rows_purged}")

    def execute_pending(self, limit: Optional[int] = None) -> List[BackfillJob]:
        """Run PENDING backfills oldest first; ones claimed by another replica meanwhile are skipped"""
        query = self.session.query(BackfillJob.id) \
            .filter(BackfillJob.status == BackfillStatus.PENDING) \
            .order_by(BackfillJob.requested_at, BackfillJob.id)
        if limit:
            query = query.limit(limit)
        pending_ids = [row.id for row in query.all()]

        executed = []
        for backfill_id in pending_ids:
            try:
                executed.append(self.execute(backfill_id))
            except BackfillStateError as e:
                logger.debug(f"Skipping backfill: {e}")
        return executed

    def cancel(self, backfill_id: int) -> BackfillJob:
        """
        Cancel a PENDING backfill.

        Raises:
            BackfillNotFoundError: no such backfill
            BackfillStateError: it already started or finished
        """
        backfill = self.get_or_raise(backfill_id)
        cancelled = self.session.execute(
            update(BackfillJob)
            .where(BackfillJob.id == backfill_id, BackfillJob.status == BackfillStatus.PENDING)
            .values(status=BackfillStatus.CANCELLED, end_time=self.clock())
            .execution_options(synchronize_session=False)
        ).rowcount == 1
        self.session.commit()
        self.session.refresh(backfill)
        if not cancelled:
            raise BackfillStateError(backfill_id, backfill.status)

        logger.info(f"Backfill cancelled | id={backfill_id} | job={backfill.job_code}")
        return backfill

    def fail_abandoned(self, threshold_seconds: int) -> int:
        """Move RUNNING backfills older than the threshold to FAILED; their holder is presumed dead"""
        now = self.clock()
        cutoff = now - timedelta(seconds=threshold_seconds)
        stuck = self.session.query(BackfillJob).filter(
            BackfillJob.status == BackfillStatus.RUNNING,
            BackfillJob.start_time < cutoff,
        ).all()

        for backfill in stuck:
            backfill.status = BackfillStatus.FAILED
            backfill.end_time = now
            backfill.error_message = f"Backfill abandoned: holder {backfill.holder} presumed dead"
            logger.warning(f"Marked abandoned backfill {backfill.id} of job {backfill.job_code} as FAILED")

        if stuck:
            self.session.commit()
        return len(stuck)

    def get(self, backfill_id: int) -> Optional[BackfillJob]:
        return self.session.get(BackfillJob, backfill_id)

    def get_or_raise(self, backfill_id: int) -> BackfillJob:
        backfill = self.get(backfill_id)
        if backfill is None:
            raise BackfillNotFoundError(backfill_id)
        return backfill

    def list_backfills(self, job_code: Optional[str] = None, status: Optional[str] = None,
                       limit: int = 50) -> List[BackfillJob]:
        """Newest first"""
        query = self.session.query(BackfillJob)
        if job_code:
            query = query.filter(BackfillJob.job_code == job_code)
        if status:
            query = query.filter(BackfillJob.status == status)
        return query.order_by(BackfillJob.requested_at.desc(), BackfillJob.id.desc()).limit(limit).all()

    def count_active(self, job_code: Optional[str] = None) -> int:
        query = self.session.query(BackfillJob).filter(BackfillJob.status.in_(BackfillStatus.ACTIVE))
        if job_code:
            query = query.filter(BackfillJob.job_code == job_code)
        return query.count()

    def exists_for_window(self, job_code: str, from_time: datetime, to_time: datetime) -> bool:
        """True when the same window is queued, running or already reloaded"""
        return self.session.query(BackfillJob.id).filter(
            BackfillJob.job_code == job_code,
            BackfillJob.from_time == from_time,
            BackfillJob.to_time == to_time,
            BackfillJob.status.in_((BackfillStatus.PENDING, BackfillStatus.RUNNING, BackfillStatus.SUCCESS)),
        ).first() is not None
