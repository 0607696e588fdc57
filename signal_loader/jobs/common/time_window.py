import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the datastore convention)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_epoch_seconds(value: datetime) -> int:
    """Epoch seconds of a naive UTC datetime"""
    return int(value.replace(tzinfo=timezone.utc).timestamp())


def from_epoch_seconds(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class TimeWindow:
    """Half-open [from_time, to_time) range queried in one run, naive UTC"""
    from_time: datetime
    to_time: datetime

    @property
    def is_empty(self) -> bool:
        return self.from_time >= self.to_time

    @property
    def duration_seconds(self) -> int:
        return int((self.to_time - self.from_time).total_seconds())

    def shifted(self, hours: int) -> 'TimeWindow':
        """Window moved by a whole number of hours (negative moves it back)"""
        delta = timedelta(hours=hours or 0)
        return TimeWindow(self.from_time + delta, self.to_time + delta)

    def epoch_bounds(self):
        return to_epoch_seconds(self.from_time), to_epoch_seconds(self.to_time)

    def __str__(self):
        return f"[{self.from_time.isoformat()}, {self.to_time.isoformat()})"


def calculate_window(job, now: datetime, default_lookback_seconds: int) -> TimeWindow:
    """
    Compute the next window for a job.

    from_time is the job's watermark, or now minus the default lookback when
    the job never ran or its watermark lies in the future (clock skew).
    to_time is capped both by max_query_period_seconds and by now.

    Args:
        job: Job row (code, last_watermark, max_query_period_seconds)
        now: Current naive UTC time
        default_lookback_seconds: Lookback used when there is no usable watermark

    Returns:
        TimeWindow, possibly empty when nothing is due yet
    """
    if default_lookback_seconds <= 0:
        raise ValueError(f"Default lookback must be positive, got: {default_lookback_seconds}")
    if not job.max_query_period_seconds or job.max_query_period_seconds <= 0:
        raise ValueError(
            f"Job {job.code} max_query_period_seconds must be positive, "
            f"got: {job.max_query_period_seconds}"
        )

    watermark = job.last_watermark
    if watermark is None:
        from_time = now - timedelta(seconds=default_lookback_seconds)
        logger.debug(f"First run for job {job.code}, using default lookback from {from_time}")
    elif watermark > now:
        from_time = now - timedelta(seconds=default_lookback_seconds)
        logger.warning(
            f"Clock skew detected for job {job.code}: watermark={watermark} is after now={now}, "
            f"using default lookback from {from_time}"
        )
    else:
        from_time = watermark

    to_time = min(now, from_time + timedelta(seconds=job.max_query_period_seconds))
    return TimeWindow(from_time, to_time)
