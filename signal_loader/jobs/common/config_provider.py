import logging
from dataclasses import dataclass, fields, replace, asdict
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError

from signal_loader.jobs.exceptions import ValidationError

logger = logging.getLogger(__name__)

SCHEDULER_PARENT = 'scheduler'


@dataclass(frozen=True)
class Tunables:
    """Knobs the scheduler re-reads on every tick"""
    tick_interval_seconds: int = 10
    worker_pool_size: int = 4
    recovery_threshold_seconds: int = 1200
    stale_lease_threshold_seconds: int = 7200
    default_lookback_seconds: int = 86400
    execution_timeout_seconds: int = 7200
    max_empty_runs: int = 10
    max_global_leases: int = 100
    released_lease_retention_days: int = 7
    history_retention_days: int = 30
    ingest_batch_size: int = 500
    backfill_poll_seconds: int = 60
    backfill_batch_size: int = 10
    max_active_backfills: int = 5
    gap_scan_interval_hours: int = 6
    gap_scan_lookback_days: int = 7
    gap_min_seconds: int = 300

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> 'Tunables':
        """Build defaults from Flask config keys LOADER_<FIELD_NAME>"""
        values = {}
        for field in fields(cls):
            key = f'LOADER_{field.name.upper()}'
            if config.get(key) is not None:
                values[field.name] = int(config[key])
        return cls(**values)

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class ConfigPlanProvider:
    """
    Reads tunables from the active configuration plan.

    Plans are edited by an external admin tool; this provider only reads
    them (plus activate_plan for operators). Nothing is cached, so a plan
    switch is picked up on the next tick.
    """

    def __init__(self, defaults: Optional[Tunables] = None, session=None, parent: str = SCHEDULER_PARENT):
        self.defaults = defaults or Tunables()
        self._session = session
        self.parent = parent

    @property
    def session(self):
        if self._session is not None:
            return self._session
        from signal_loader import db
        return db.session

    def raw_values(self, parent: Optional[str] = None) -> Dict[str, str]:
        from signal_loader.models import ConfigPlan, ConfigValue

        plan = self.session.query(ConfigPlan).filter_by(parent=parent or self.parent, is_active=True).first()
        if plan is None:
            return {}
        rows = self.session.query(ConfigValue).filter_by(plan_id=plan.id).all()
        return {row.config_key: row.config_value for row in rows}

    def tunables(self) -> Tunables:
        try:
            values = self.raw_values()
        except SQLAlchemyError as e:
            logger.warning(f"Failed to read config plan for {self.parent}, using defaults: {e}")
            self.session.rollback()
            return self.defaults

        overrides = {}
        for field in fields(Tunables):
            raw = values.get(field.name)
            if raw is None:
                continue
            try:
                parsed = int(str(raw).strip())
            except ValueError:
                logger.warning(f"Ignoring unparsable config value {field.name}={raw!r}")
                continue
            if parsed <= 0:
                logger.warning(f"Ignoring non-positive config value {field.name}={parsed}")
                continue
            overrides[field.name] = parsed

        return replace(self.defaults, **overrides) if overrides else self.defaults

    def activate_plan(self, parent: str, plan_name: str, switched_by: Optional[str] = None):
        """
        Make plan_name the active plan for parent.

        Raises:
            ValidationError: blank input or no such plan
        """
        from signal_loader.models import ConfigPlan

        if not parent or not parent.strip():
            raise ValidationError('Parent cannot be blank')
        if not plan_name or not plan_name.strip():
            raise ValidationError('Plan name cannot be blank')

        target = self.session.query(ConfigPlan).filter_by(parent=parent, plan_name=plan_name).first()
        if target is None:
            raise ValidationError(f"Plan not found: {parent}/{plan_name}")

        try:
            for plan in self.session.query(ConfigPlan).filter_by(parent=parent, is_active=True).all():
                if plan.id != target.id:
                    plan.is_active = False
            target.is_active = True
            target.updated_by = switched_by
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

        logger.info(f"Activated config plan {parent}/{plan_name} (by {switched_by or 'unknown'})")
        return target
