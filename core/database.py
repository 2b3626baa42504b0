"""Postgres connection pool used by the persistent conversation storage"""
import logging
import psycopg2
from psycopg2 import pool
from psycopg2.extras import RealDictCursor
from contextlib import contextmanager
from typing import Optional, Dict, List, Any

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)


class Database:
    """Database connection manager with connection pooling"""

    def __init__(self, dbname: str, user: str, password: Optional[str], host: str,
                 port: int = 5432, minconn: int = 1, maxconn: int = 10):
        self.connection_params = {
            'dbname': dbname,
            'user': user,
            'password': password,
            'host': host,
            'port': port,
            'cursor_factory': RealDictCursor,
            'connect_timeout': 10,
            'options': '-c statement_timeout=30000'
        }
        self.minconn = minconn
        self.maxconn = maxconn
        self.connection_pool = None

    @classmethod
    def from_settings(cls, settings) -> "Database":
        return cls(
            dbname=settings.DB_NAME,
            user=settings.DB_USER,
            password=settings.DB_PASS,
            host=settings.DB_HOST,
            port=settings.DB_PORT,
        )

    def _ensure_pool(self):
        # Pool is opened on first use so that building the runtime never blocks on the network
        if self.connection_pool is not None:
            return
        try:
            self.connection_pool = pool.ThreadedConnectionPool(
                minconn=self.minconn,
                maxconn=self.maxconn,
                **self.connection_params
            )
            logger.info(f"Database connection pool initialized (min={self.minconn}, max={self.maxconn})")
        except Exception as e:
            logger.error(f"Failed to initialize connection pool: {str(e)}")
            raise

    def _is_connection_alive(self, conn) -> bool:
        try:
            with conn.cursor() as cursor:
                cursor.execute("SELECT 1")
            return True
        except psycopg2.Error:
            return False

    @contextmanager
    def get_connection(self):
        """Get a database connection from the pool with stale connection handling"""
        self._ensure_pool()
        conn = None
        conn_is_bad = False
        try:
            conn = self.connection_pool.getconn()

            if not self._is_connection_alive(conn):
                logger.warning("Got stale connection from pool, discarding and getting fresh one")
                self.connection_pool.putconn(conn, close=True)
                conn = self.connection_pool.getconn()

            yield conn
            conn.commit()
        except pool.PoolError as e:
            logger.error(f"Connection pool error: {str(e)}")
            raise
        except RETRYABLE_ERRORS as e:
            conn_is_bad = True
            logger.error(f"Connection error (will discard connection): {str(e)}")
            raise
        except Exception as e:
            if conn:
                try:
                    conn.rollback()
                except psycopg2.Error:
                    conn_is_bad = True
            logger.error(f"Database error: {str(e)}")
            raise
        finally:
            if conn:
                self.connection_pool.putconn(conn, close=conn_is_bad)

    def _with_retry(self, operation: str, work, max_retries: int):
        last_error = None
        for attempt in range(max_retries + 1):
            try:
                with self.get_connection() as conn:
                    with conn.cursor() as cursor:
                        return work(cursor)
            except RETRYABLE_ERRORS as e:
                last_error = e
                if attempt < max_retries:
                    logger.warning(f"{operation} failed (attempt {attempt + 1}/{max_retries + 1}), retrying: {str(e)}")
                    continue
                raise
        raise last_error

    def execute_query(self, query: str, params: Optional[tuple] = None, max_retries: int = 2) -> List[Dict[str, Any]]:
        """Execute a SELECT query and return results with automatic retry on connection errors"""
        def work(cursor):
            cursor.execute(query, params)
            return cursor.fetchall()
        return self._with_retry("Query", work, max_retries)

    def execute_update(self, query: str, params: Optional[tuple] = None, max_retries: int = 2) -> int:
        """Execute an INSERT/UPDATE/DELETE query with automatic retry on connection errors"""
        def work(cursor):
            cursor.execute(query, params)
            return cursor.rowcount
        return self._with_retry("Update", work, max_retries)

    def ping(self) -> bool:
        try:
            self.execute_query("SELECT 1", max_retries=0)
            return True
        except Exception as e:
            logger.warning(f"Database ping failed: {str(e)}")
            return False

    def close_all_connections(self):
        """Close all connections in the pool (call on shutdown)"""
        if self.connection_pool:
            self.connection_pool.closeall()
            self.connection_pool = None
            logger.info("All database connections closed")
