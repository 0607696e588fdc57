import os
import re
import time
import logging
import threading
from contextlib import contextmanager
import pymysql
from typing import Any, Dict, List, Optional
from dotenv import load_dotenv
from pathlib import Path
from pymysql.cursors import DictCursor

from signal_loader.jobs.exceptions import SourceConnectionError, SourceQueryError
from signal_loader.jobs.utils.logging_config import truncate_for_log

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3306
DEFAULT_CONNECT_TIMEOUT = 10
DEFAULT_READ_TIMEOUT = 7200


def env_prefix(source_ref: str) -> str:
    """SOURCE_<REF>_ prefix for a source ref ('sales-db' -> 'SOURCE_SALES_DB_')"""
    return 'SOURCE_' + re.sub(r'[^A-Za-z0-9]', '_', source_ref.strip()).upper() + '_'


class DatabaseManager:
    """Manages connections to the external source databases jobs query"""

    def __init__(self, env_file: Optional[Path] = None, environ: Optional[Dict[str, str]] = None):
        """
        Initialize the database manager

        Args:
            env_file (Optional[Path]): Path to a .env file with SOURCE_* credentials
            environ: Mapping to read credentials from (defaults to os.environ)
        """
        self.db_configs = {}
        self.connections = set()
        self._lock = threading.Lock()

        if env_file:
            env_file = Path(env_file)
            if not env_file.exists():
                raise FileNotFoundError(f"Environment file not found: {env_file}")
            load_dotenv(env_file)

        self.environ = os.environ if environ is None else environ

    def _initialize_config(self, source_ref: str) -> Dict[str, Any]:
        """Build the pymysql settings for a source from SOURCE_<REF>_* variables"""
        prefix = env_prefix(source_ref)
        env = self.environ

        try:
            config = {
                'host': env.get(prefix + 'HOST'),
                'user': env.get(prefix + 'USER'),
                'password': env.get(prefix + 'PASSWORD') or '',
                'database': env.get(prefix + 'NAME'),
                'port': int(env.get(prefix + 'PORT') or DEFAULT_PORT),
                'connect_timeout': int(env.get(prefix + 'CONNECT_TIMEOUT') or DEFAULT_CONNECT_TIMEOUT),
                'read_timeout': int(env.get(prefix + 'READ_TIMEOUT') or DEFAULT_READ_TIMEOUT),
                'cursorclass': DictCursor,
                'charset': 'utf8mb4'
            }
        except ValueError as e:
            raise SourceConnectionError(source_ref, f"invalid numeric setting under {prefix}*: {e}")

        self._validate_config(source_ref, config)
        return config

    def _validate_config(self, source_ref: str, config: Dict[str, Any]):
        """Validate that all required configuration values are present"""
        required_fields = ['host', 'user', 'database', 'port']
        missing_fields = [field for field in required_fields if not config.get(field)]
        if missing_fields:
            raise SourceConnectionError(
                source_ref,
                f"missing required configuration fields: {', '.join(missing_fields)} "
                f"(set {env_prefix(source_ref)}HOST/USER/NAME)"
            )

    def get_config(self, source_ref: str) -> Dict[str, Any]:
        if source_ref not in self.db_configs:
            self.db_configs[source_ref] = self._initialize_config(source_ref)
        return self.db_configs[source_ref]

    def get_connection(self, source_ref: str) -> pymysql.Connection:
        """
        Open a new connection to a source database.

        Connections are not shared between threads; each run opens its own.

        Raises:
            SourceConnectionError: missing configuration or connect failure
        """
        config = self.get_config(source_ref)
        try:
            conn = pymysql.connect(**config)
        except pymysql.Error as e:
            logger.error(f"Failed to connect to source {source_ref}: {e}")
            raise SourceConnectionError(source_ref, str(e)) from e

        with self._lock:
            self.connections.add(conn)
        return conn

    def _close(self, conn):
        with self._lock:
            self.connections.discard(conn)
        if conn.open:
            conn.close()

    @contextmanager
    def get_cursor(self, source_ref: str):
        """Context manager for a read-only source cursor"""
        conn = self.get_connection(source_ref)
        cursor = None
        try:
            cursor = conn.cursor()
            yield cursor
        except pymysql.Error as e:
            logger.error(f"Database operation failed for {source_ref}: {e}")
            raise SourceQueryError(source_ref, str(e)) from e
        finally:
            if cursor:
                cursor.close()
            self._close(conn)

    def execute_query(self, source_ref: str, query: str, params: Optional[tuple] = None) -> List[Dict[str, Any]]:
        """Execute a query and return its rows as dicts"""
        logger.debug(f"Executing on {source_ref}: {truncate_for_log(query)}")
        with self.get_cursor(source_ref) as cursor:
            cursor.execute(query, params)
            return list(cursor.fetchall())

    def ping(self, source_ref: str) -> Dict[str, Any]:
        """Run SELECT 1 against a source and report reachability and latency"""
        started = time.monotonic()
        try:
            self.execute_query(source_ref, 'SELECT 1')
        except (SourceConnectionError, SourceQueryError) as e:
            return {'source_ref': source_ref, 'ok': False, 'error': e.reason,
                    'latency_ms': int((time.monotonic() - started) * 1000)}
        return {'source_ref': source_ref, 'ok': True, 'error': None,
                'latency_ms': int((time.monotonic() - started) * 1000)}

    def close_all_connections(self):
        """Close all database connections"""
        with self._lock:
            connections = list(self.connections)
            self.connections.clear()
        for conn in connections:
            if conn and conn.open:
                conn.close()
