# signal_loader/models.py
import re

from signal_loader import db
from signal_loader.jobs.common.query_parameters import FROM_TIME_PLACEHOLDER, TO_TIME_PLACEHOLDER
from signal_loader.jobs.common.time_window import utcnow
from signal_loader.jobs.exceptions import ValidationError

_PLACEHOLDER_LIKE = re.compile(r':([A-Za-z_]+)')


class JobStatus:
    IDLE = 'IDLE'
    RUNNING = 'RUNNING'
    FAILED = 'FAILED'
    PAUSED = 'PAUSED'
    ALL = (IDLE, RUNNING, FAILED, PAUSED)


class PurgeStrategy:
    FAIL_ON_DUPLICATE = 'FAIL_ON_DUPLICATE'
    PURGE_AND_RELOAD = 'PURGE_AND_RELOAD'
    SKIP_DUPLICATES = 'SKIP_DUPLICATES'
    ALL = (FAIL_ON_DUPLICATE, PURGE_AND_RELOAD, SKIP_DUPLICATES)


class ExecutionOutcome:
    RUNNING = 'RUNNING'
    SUCCESS = 'SUCCESS'
    FAILED = 'FAILED'


class EmptyReason:
    NO_SOURCE_ROWS = 'NO_SOURCE_ROWS'
    ALL_DUPLICATES = 'ALL_DUPLICATES'


class BackfillStatus:
    PENDING = 'PENDING'
    RUNNING = 'RUNNING'
    SUCCESS = 'SUCCESS'
    FAILED = 'FAILED'
    CANCELLED = 'CANCELLED'
    ALL = (PENDING, RUNNING, SUCCESS, FAILED, CANCELLED)
    ACTIVE = (PENDING, RUNNING)


class Job(db.Model):
    """One extraction task, keyed by its business code"""
    __tablename__ = 'job'

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), unique=True, nullable=False)
    query_text = db.Column(db.Text, nullable=False)
    source_ref = db.Column(db.String(64), nullable=False)

    min_interval_seconds = db.Column(db.Integer, nullable=False, default=60)
    max_interval_seconds = db.Column(db.Integer, nullable=False, default=300)
    max_query_period_seconds = db.Column(db.Integer, nullable=False, default=3600)
    max_parallel_executions = db.Column(db.Integer, nullable=False, default=1)

    status = db.Column(db.String(20), nullable=False, default=JobStatus.IDLE)
    last_watermark = db.Column(db.DateTime)
    failed_since = db.Column(db.DateTime)
    consecutive_empty_runs = db.Column(db.Integer, nullable=False, default=0)
    source_tz_offset_hours = db.Column(db.Integer, nullable=False, default=0)
    purge_strategy = db.Column(db.String(20), nullable=False, default=PurgeStrategy.FAIL_ON_DUPLICATE)
    enabled = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    executions = db.relationship('ExecutionRecord', backref='job', lazy='dynamic')

    def validate(self):
        """Reject a malformed configuration before it is ever scheduled"""
        errors = []
        if not self.code or not self.code.strip():
            errors.append('code is required')
        if not self.query_text or not self.query_text.strip():
            errors.append('query_text is required')
        if not self.source_ref or not self.source_ref.strip():
            errors.append('source_ref is required')
        if self.min_interval_seconds is not None and self.min_interval_seconds < 0:
            errors.append('min_interval_seconds must be >= 0')
        if self.max_interval_seconds is not None and self.max_interval_seconds < 0:
            errors.append('max_interval_seconds must be >= 0')
        if self.max_query_period_seconds is not None and self.max_query_period_seconds <= 0:
            errors.append('max_query_period_seconds must be > 0')
        if self.max_parallel_executions is not None and self.max_parallel_executions < 1:
            errors.append('max_parallel_executions must be >= 1')
        if self.source_tz_offset_hours is not None and not -14 <= self.source_tz_offset_hours <= 14:
            errors.append('source_tz_offset_hours must be between -14 and 14')
        if self.purge_strategy is not None and self.purge_strategy not in PurgeStrategy.ALL:
            errors.append(f'unknown purge_strategy: {self.purge_strategy}')

        for token in _PLACEHOLDER_LIKE.findall(self.query_text or ''):
            normalized = token.replace('_', '').lower()
            if normalized in ('fromtime', 'totime') and f':{token}' not in (FROM_TIME_PLACEHOLDER,
                                                                          TO_TIME_PLACEHOLDER):
                errors.append(f"misspelled placeholder ':{token}' (expected :fromTime / :toTime)")

        if errors:
            raise ValidationError(f"Invalid job {self.code!r}: " + '; '.join(errors))

    def __repr__(self):
        return f"<Job(code={self.code}, status={self.status}, enabled={self.enabled})>"


class Lease(db.Model):
    """An execution slot held by one replica for one job"""
    __tablename__ = 'lease'

    id = db.Column(db.String(36), primary_key=True)
    job_code = db.Column(db.String(64), db.ForeignKey('job.code'), nullable=False)
    holder = db.Column(db.String(128), nullable=False)
    acquired_at = db.Column(db.DateTime, nullable=False, index=True)
    released_at = db.Column(db.DateTime)
    execution_record_id = db.Column(db.Integer, db.ForeignKey('execution_record.id'))

    __table_args__ = (
        db.Index('ix_lease_job_code_released_at', 'job_code', 'released_at'),
    )

    @property
    def active(self) -> bool:
        return self.released_at is None

    def __repr__(self):
        return f"<Lease(id={self.id}, job={self.job_code}, holder={self.holder})>"


class ExecutionRecord(db.Model):
    """Append-only history of run attempts"""
    __tablename__ = 'execution_record'

    id = db.Column(db.Integer, primary_key=True)
    job_code = db.Column(db.String(64), db.ForeignKey('job.code'), nullable=False, index=True)
    outcome = db.Column(db.String(20), nullable=False, default=ExecutionOutcome.RUNNING)
    holder = db.Column(db.String(128))
    lease_id = db.Column(db.String(36))

    start_time = db.Column(db.DateTime, nullable=False, index=True)
    end_time = db.Column(db.DateTime)
    duration_seconds = db.Column(db.Float)

    requested_from = db.Column(db.DateTime, nullable=False)
    requested_to = db.Column(db.DateTime, nullable=False)
    actual_from = db.Column(db.DateTime)
    actual_to = db.Column(db.DateTime)

    rows_fetched = db.Column(db.Integer, default=0)
    rows_ingested = db.Column(db.Integer, default=0)
    rows_purged = db.Column(db.Integer, default=0)
    rows_skipped = db.Column(db.Integer, default=0)
    empty_reason = db.Column(db.String(32))

    error_message = db.Column(db.Text)
    error_detail = db.Column(db.Text)
    execution_metadata = db.Column(db.JSON)

    def __repr__(self):
        return f"<ExecutionRecord(id={self.id}, job={self.job_code}, outcome={self.outcome})>"


class SignalRecord(db.Model):
    """Canonical signal row appended by the loader"""
    __tablename__ = 'signal_history'

    id = db.Column(db.Integer, primary_key=True)
    job_code = db.Column(db.String(64), nullable=False)
    load_timestamp = db.Column(db.BigInteger, nullable=False)
    segment_key = db.Column(db.String(512))
    rec_count = db.Column(db.BigInteger)
    min_val = db.Column(db.Float)
    max_val = db.Column(db.Float)
    avg_val = db.Column(db.Float)
    sum_val = db.Column(db.Float)
    execution_record_id = db.Column(db.Integer, index=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    __table_args__ = (
        db.Index('ix_signal_history_job_code_load_timestamp', 'job_code', 'load_timestamp'),
    )


class BackfillJob(db.Model):
    """A request to reload an explicit historical window of a job"""
    __tablename__ = 'backfill_job'

    id = db.Column(db.Integer, primary_key=True)
    job_code = db.Column(db.String(64), db.ForeignKey('job.code'), nullable=False, index=True)
    from_time = db.Column(db.DateTime, nullable=False)
    to_time = db.Column(db.DateTime, nullable=False)
    purge_strategy = db.Column(db.String(20), nullable=False, default=PurgeStrategy.PURGE_AND_RELOAD)
    status = db.Column(db.String(20), nullable=False, default=BackfillStatus.PENDING, index=True)

    requested_by = db.Column(db.String(128))
    requested_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    holder = db.Column(db.String(128))

    start_time = db.Column(db.DateTime)
    end_time = db.Column(db.DateTime)
    duration_seconds = db.Column(db.Float)
    rows_fetched = db.Column(db.Integer)
    rows_ingested = db.Column(db.Integer)
    rows_purged = db.Column(db.Integer)

    error_message = db.Column(db.Text)
    error_detail = db.Column(db.Text)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<BackfillJob(id={self.id}, job={self.job_code}, status={self.status})>"


class ConfigPlan(db.Model):
    """Named set of tunables; one plan per parent is active"""
    __tablename__ = 'config_plan'

    id = db.Column(db.Integer, primary_key=True)
    parent = db.Column(db.String(64), nullable=False)
    plan_name = db.Column(db.String(64), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=False)
    updated_by = db.Column(db.String(100))
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)
    values = db.relationship('ConfigValue', backref='plan', lazy=True, cascade='all, delete-orphan')

    __table_args__ = (
        db.UniqueConstraint('parent', 'plan_name', name='uq_config_plan_parent_name'),
    )


class ConfigValue(db.Model):
    __tablename__ = 'config_value'

    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(db.Integer, db.ForeignKey('config_plan.id'), nullable=False)
    config_key = db.Column(db.String(128), nullable=False)
    config_value = db.Column(db.String(512), nullable=False)
