import logging
import uuid
from datetime import timedelta
from typing import Callable, List, Optional, Union

from sqlalchemy import DateTime, String, delete, func, insert, literal, select, update
from sqlalchemy.exc import SQLAlchemyError

from signal_loader.jobs.common.time_window import utcnow
from signal_loader.models import Job, Lease

logger = logging.getLogger(__name__)


class LockManager:
    """
    Lease-based mutual exclusion backed by the shared datastore.

    Several replicas may call try_acquire for the same job at once; the
    per-job ceiling is enforced by one conditional INSERT so no replica can
    pass the count check on a stale read.
    """

    def __init__(self, session, holder: str, clock: Callable = utcnow):
        self.session = session
        self.holder = holder
        self.clock = clock

    def _active_count_query(self, job_code: Optional[str] = None):
        query = select(func.count(Lease.id)).where(Lease.released_at.is_(None))
        if job_code is not None:
            query = query.where(Lease.job_code == job_code)
        return query.correlate(None).scalar_subquery()

    def try_acquire(self, job: Job, max_global: Optional[int] = None) -> Optional[Lease]:
        """
        Try to take one execution slot for a job.

        Args:
            job: Job to lease; its ceiling is re-read from the job row
            max_global: Optional cap on active leases across all jobs

        Returns:
            The new Lease, or None when the job is at its ceiling (or on a datastore error)
        """
        code = job.code
        lease_id = str(uuid.uuid4())
        now = self.clock()

        conditions = [
            Job.code == code,
            self._active_count_query(code) < Job.max_parallel_executions,
        ]
        if max_global:
            conditions.append(self._active_count_query() < max_global)

        candidate = select(
            literal(lease_id, String),
            Job.code,
            literal(self.holder, String),
            literal(now, DateTime),
        ).where(*conditions)

        stmt = insert(Lease).from_select(['id', 'job_code', 'holder', 'acquired_at'], candidate)

        try:
            # Row lock serializes acquirers of the same job on backends that support it
            locked = self.session.execute(
                select(Job.id).where(Job.code == code).with_for_update()
            ).first()
            if locked is None:
                logger.warning(f"Cannot acquire lease, job not found: job={code}")
                self.session.rollback()
                return None

            result = self.session.execute(stmt)
            acquired = result.rowcount == 1
            self.session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error acquiring lease: job={code} holder={self.holder}: {e}")
            self.session.rollback()
            return None

        if not acquired:
            logger.debug(f"Lease contention: job={code} holder={self.holder}")
            return None

        lease = self.session.get(Lease, lease_id)
        logger.info(f"Acquired lease: job={code} lease={lease_id} holder={self.holder}")
        return lease

    def release(self, lease: Union[Lease, str, None]) -> bool:
        """
        Mark a lease released. Unknown or already released ids are a no-op.

        Returns:
            True only if this call released the lease
        """
        if lease is None:
            return False
        lease_id = lease if isinstance(lease, str) else lease.id

        try:
            result = self.session.execute(
                update(Lease)
                .where(Lease.id == lease_id, Lease.released_at.is_(None))
                .values(released_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error releasing lease {lease_id}, it will be reaped as stale: {e}")
            self.session.rollback()
            return False

        if result.rowcount == 0:
            logger.debug(f"Lease already released or unknown: lease={lease_id}")
            return False

        logger.info(f"Released lease: lease={lease_id} holder={self.holder}")
        return True

    def attach_execution(self, lease_id: str, execution_record_id: int):
        """Link a lease to the history record it backs (flushed, committed by the caller)"""
        self.session.execute(
            update(Lease)
            .where(Lease.id == lease_id)
            .values(execution_record_id=execution_record_id)
            .execution_options(synchronize_session=False)
        )

    def cleanup_stale_leases(self, threshold_seconds: int) -> int:
        """
        Release leases whose holder is presumed dead.

        Best effort: errors are logged and 0 is returned.
        """
        cutoff = self.clock() - timedelta(seconds=threshold_seconds)
        try:
            result = self.session.execute(
                update(Lease)
                .where(Lease.released_at.is_(None), Lease.acquired_at < cutoff)
                .values(released_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Stale lease cleanup failed: {e}")
            self.session.rollback()
            return 0

        count = result.rowcount or 0
        if count:
            logger.warning(f"Reaped {count} stale leases acquired before {cutoff}")
        return count

    def purge_released_leases(self, retention_days: int) -> int:
        """Delete released leases older than the retention period"""
        cutoff = self.clock() - timedelta(days=retention_days)
        try:
            result = self.session.execute(
                delete(Lease)
                .where(Lease.released_at.is_not(None), Lease.released_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Released lease purge failed: {e}")
            self.session.rollback()
            return 0

        count = result.rowcount or 0
        if count:
            logger.info(f"Purged {count} released leases older than {retention_days} days")
        return count

    def count_active(self, job_code: Optional[str] = None) -> int:
        query = select(func.count(Lease.id)).where(Lease.released_at.is_(None))
        if job_code is not None:
            query = query.where(Lease.job_code == job_code)
        return self.session.execute(query).scalar() or 0

    def active_leases(self, job_code: Optional[str] = None) -> List[Lease]:
        query = select(Lease).where(Lease.released_at.is_(None)).order_by(Lease.acquired_at)
        if job_code is not None:
            query = query.where(Lease.job_code == job_code)
        return list(self.session.execute(query).scalars())
