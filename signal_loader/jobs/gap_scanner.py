# signal_loader/jobs/gap_scanner.py
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Sequence

from signal_loader.jobs.backfill import BackfillService
from signal_loader.jobs.common.time_window import utcnow
from signal_loader.models import ExecutionOutcome, ExecutionRecord, Job, PurgeStrategy

logger = logging.getLogger(__name__)

GAP_SCANNER_REQUESTER = 'gap-scanner'


class GapKind:
    START = 'START_GAP'
    END = 'END_GAP'
    TIMELINE = 'TIMELINE_GAP'


@dataclass(frozen=True)
class Gap:
    job_code: str
    kind: str
    from_time: datetime
    to_time: datetime

    @property
    def seconds(self) -> int:
        return int((self.to_time - self.from_time).total_seconds())


@dataclass
class GapScanSummary:
    jobs_scanned: int = 0
    empty_loads: int = 0
    gaps_detected: int = 0
    backfills_submitted: int = 0

    def to_dict(self):
        return asdict(self)


def find_gaps(records: Sequence[ExecutionRecord], min_gap: timedelta) -> List[Gap]:
    """
    Detect missing data in a job's execution history.

    Records must be ordered by start time. Only successful runs are
    inspected; failed runs are retried by the scheduler anyway.

    - START / END: the stored signals cover less than the requested window
      at its start or its end.
    - TIMELINE: two consecutive successful runs leave a hole between the
      last signal of the first and the first signal of the second.

    Gaps of min_gap or less are ignored.
    """
    gaps = []
    previous = None

    for record in records:
        if record.outcome != ExecutionOutcome.SUCCESS:
            previous = record
            continue

        code = record.job_code
        if record.actual_from is not None and record.actual_to is not None:
            if record.actual_from - record.requested_from > min_gap:
                gaps.append(Gap(code, GapKind.START, record.requested_from, record.actual_from))
            if record.requested_to - record.actual_to > min_gap:
                gaps.append(Gap(code, GapKind.END, record.actual_to, record.requested_to))

        if (previous is not None
                and previous.outcome == ExecutionOutcome.SUCCESS
                and previous.actual_to is not None
                and record.actual_from is not None
                and record.actual_from - previous.actual_to > min_gap):
            gaps.append(Gap(code, GapKind.TIMELINE, previous.actual_to, record.actual_from))

        previous = record

    return gaps


class GapScanner:
    """Periodic sweep that turns gaps in recent history into backfills"""

    def __init__(self, session, backfills: BackfillService, clock: Callable[[], datetime] = utcnow,
                 min_gap_seconds: int = 300, lookback_days: int = 7, max_active_backfills: int = 5):
        self.session = session
        self.backfills = backfills
        self.clock = clock
        self.min_gap = timedelta(seconds=min_gap_seconds)
        self.lookback = timedelta(days=lookback_days)
        self.max_active_backfills = max_active_backfills

    def scan(self) -> GapScanSummary:
        """Scan every enabled job; an error on one job never stops the others"""
        summary = GapScanSummary()
        since = self.clock() - self.lookback
        jobs = self.session.query(Job.code).filter(Job.enabled.is_(True)).order_by(Job.code).all()
        logger.info(f"Gap scan started | jobs={len(jobs)} | since={since}")

        for (code,) in jobs:
            summary.jobs_scanned += 1
            try:
                self._scan_job(code, since, summary)
            except Exception as e:
                logger.error(f"Gap scan of job {code} failed: {e}", exc_info=True)
                self.session.rollback()

        if summary.gaps_detected:
            logger.warning(f"Gap scan detected {summary.gaps_detected} gap(s) across {summary.jobs_scanned} "
                           f"job(s), submitted {summary.backfills_submitted} backfill(s)")
        else:
            logger.info(f"Gap scan found no gaps | jobs={summary.jobs_scanned}")
        return summary

    def _scan_job(self, code: str, since: datetime, summary: GapScanSummary):
        records = self.session.query(ExecutionRecord).filter(
            ExecutionRecord.job_code == code,
            ExecutionRecord.start_time >= since,
        ).order_by(ExecutionRecord.start_time, ExecutionRecord.id).all()
        if not records:
            return

        for record in records:
            if record.outcome == ExecutionOutcome.SUCCESS and record.actual_from is None \
                    and not record.rows_ingested:
                # Most likely source downtime; the window is not backfilled
                summary.empty_loads += 1
                logger.debug(f"Job {code} had a zero-record load for [{record.requested_from}, "
                             f"{record.requested_to})")

        gaps = find_gaps(records, self.min_gap)
        summary.gaps_detected += len(gaps)
        for gap in gaps:
            logger.warning(f"Detected {gap.kind} for {code} | window=[{gap.from_time}, {gap.to_time}) | "
                           f"gap={gap.seconds // 60} minutes")
            if self._submit(gap):
                summary.backfills_submitted += 1

    def _submit(self, gap: Gap) -> bool:
        active = self.backfills.count_active(gap.job_code)
        if active >= self.max_active_backfills:
            logger.warning(f"Skipping backfill for {gap.job_code}: already {active} active backfill(s)")
            return False
        if self.backfills.exists_for_window(gap.job_code, gap.from_time, gap.to_time):
            logger.debug(f"Backfill for {gap.job_code} [{gap.from_time}, {gap.to_time}) already requested")
            return False

        self.backfills.submit(gap.job_code, gap.from_time, gap.to_time,
                              purge_strategy=PurgeStrategy.PURGE_AND_RELOAD,
                              requested_by=f'{GAP_SCANNER_REQUESTER}:{gap.kind}')
        return True
