import os

from dotenv import load_dotenv

basedir = os.path.abspath(os.path.dirname(__file__))
load_dotenv(os.path.join(basedir, '.env'))


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


class Config:
    # Flask configuration
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key'

    # Loader datastore (jobs, leases, execution records, signals)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
                              'sqlite:///' + os.path.join(basedir, 'loader.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Start the APScheduler tick inside this process
    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', True)

    # Holder identity written on leases; falls back to HOSTNAME / host name
    LOADER_REPLICA_NAME = os.environ.get('LOADER_REPLICA_NAME')

    # Env file holding SOURCE_<REF>_* credentials for external sources
    SOURCE_ENV_FILE = os.environ.get('SOURCE_ENV_FILE')

    # Logging
    LOG_FOLDER = os.environ.get('LOG_FOLDER') or os.path.join(basedir, 'logs')
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'

    # Scheduler tunables (defaults; the active config plan overrides them)
    LOADER_TICK_INTERVAL_SECONDS = _env_int('LOADER_TICK_INTERVAL_SECONDS', 10)
    LOADER_WORKER_POOL_SIZE = _env_int('LOADER_WORKER_POOL_SIZE', 4)
    LOADER_RECOVERY_THRESHOLD_SECONDS = _env_int('LOADER_RECOVERY_THRESHOLD_SECONDS', 20 * 60)
    LOADER_STALE_LEASE_THRESHOLD_SECONDS = _env_int('LOADER_STALE_LEASE_THRESHOLD_SECONDS', 2 * 3600)
    LOADER_DEFAULT_LOOKBACK_SECONDS = _env_int('LOADER_DEFAULT_LOOKBACK_SECONDS', 24 * 3600)
    LOADER_EXECUTION_TIMEOUT_SECONDS = _env_int('LOADER_EXECUTION_TIMEOUT_SECONDS', 2 * 3600)
    LOADER_MAX_EMPTY_RUNS = _env_int('LOADER_MAX_EMPTY_RUNS', 10)
    LOADER_MAX_GLOBAL_LEASES = _env_int('LOADER_MAX_GLOBAL_LEASES', 100)
    LOADER_RELEASED_LEASE_RETENTION_DAYS = _env_int('LOADER_RELEASED_LEASE_RETENTION_DAYS', 7)
    LOADER_HISTORY_RETENTION_DAYS = _env_int('LOADER_HISTORY_RETENTION_DAYS', 30)
    LOADER_INGEST_BATCH_SIZE = _env_int('LOADER_INGEST_BATCH_SIZE', 500)

    # Backfills and gap scanning
    LOADER_BACKFILL_POLL_SECONDS = _env_int('LOADER_BACKFILL_POLL_SECONDS', 60)
    LOADER_BACKFILL_BATCH_SIZE = _env_int('LOADER_BACKFILL_BATCH_SIZE', 10)
    LOADER_MAX_ACTIVE_BACKFILLS = _env_int('LOADER_MAX_ACTIVE_BACKFILLS', 5)
    LOADER_GAP_SCAN_INTERVAL_HOURS = _env_int('LOADER_GAP_SCAN_INTERVAL_HOURS', 6)
    LOADER_GAP_SCAN_LOOKBACK_DAYS = _env_int('LOADER_GAP_SCAN_LOOKBACK_DAYS', 7)
    LOADER_GAP_MIN_SECONDS = _env_int('LOADER_GAP_MIN_SECONDS', 5 * 60)


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SCHEDULER_ENABLED = False
    LOADER_REPLICA_NAME = 'test-replica'
    SOURCE_ENV_FILE = None
    LOG_FOLDER = None
    LOADER_WORKER_POOL_SIZE = 1
