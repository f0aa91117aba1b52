"""
Database Connection Manager

Provides connection pool management, transaction handling and small
query utilities for the source and target databases. One manager is
constructed per database per run and passed to the services that need it.
"""

import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Generator, List, Optional
from urllib.parse import urlparse

from sqlalchemy import MetaData, Table, create_engine, event, inspect, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

logger = logging.getLogger(__name__)

DEFAULT_POOL_SIZE = 10
DEFAULT_MAX_OVERFLOW = 10
DEFAULT_STATEMENT_TIMEOUT = 300  # seconds
DEFAULT_CONNECT_TIMEOUT = 30  # seconds
SLOW_QUERY_SECONDS = 5.0


class DatabaseManager:
    """
    Connection pool and session management for one database

    Enforces a per-statement timeout at the pool level so a single hung
    query cannot block a whole run, and disposes of the pool on close.
    """

    def __init__(
        self,
        database_url: str,
        name: str = "database",
        pool_size: int = DEFAULT_POOL_SIZE,
        max_overflow: int = DEFAULT_MAX_OVERFLOW,
        statement_timeout: int = DEFAULT_STATEMENT_TIMEOUT,
        connect_timeout: int = DEFAULT_CONNECT_TIMEOUT,
        read_only: bool = False,
        echo: bool = False,
    ):
        """
        Initialize database manager

        Args:
            database_url: SQLAlchemy database URL
            name: Label used in log messages ("source", "target")
            pool_size: Connections kept open in the pool
            max_overflow: Extra connections allowed in bursts
            statement_timeout: Per-statement timeout in seconds
            connect_timeout: Connection establishment timeout in seconds
            read_only: Open PostgreSQL sessions in read-only mode
            echo: Log every SQL statement
        """
        if not database_url:
            raise ValueError(f"{name}: database_url cannot be empty")

        self.database_url = database_url
        self.name = name
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.statement_timeout = statement_timeout
        self.connect_timeout = connect_timeout
        self.read_only = read_only
        self.echo = echo
        self.engine: Optional[Engine] = None
        self.SessionLocal: Optional[sessionmaker] = None
        self._metadata = MetaData()
        self._tables: Dict[str, Table] = {}
        self._is_initialized = False

    def initialize(self) -> None:
        """Initialize database engine and session factory"""
        if self._is_initialized:
            return

        try:
            engine_kwargs = self._get_engine_config()
            self.engine = create_engine(self.database_url, **engine_kwargs)

            if self.dialect_name == 'sqlite':
                event.listen(self.engine, "connect", _configure_sqlite_connection)
                event.listen(self.engine, "begin", _begin_sqlite_transaction)

            # Test connection
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))

            self.SessionLocal = sessionmaker(
                bind=self.engine,
                autocommit=False,
                autoflush=False,
                expire_on_commit=False
            )

            self._is_initialized = True
            logger.info(f"{self.name} database initialized: {self._get_db_type()}")

        except Exception as e:
            logger.error(f"Failed to initialize {self.name} database: {e}")
            if self.engine is not None:
                self.engine.dispose()
                self.engine = None
            raise

    def _get_engine_config(self) -> Dict[str, Any]:
        """Get engine configuration based on database type"""
        db_type = self._get_db_type()

        base_config = {
            'echo': self.echo,
            'pool_pre_ping': True,  # Verify connections before use
            'pool_recycle': 3600,   # Recycle connections every hour
        }

        if db_type == 'sqlite':
            base_config.update({
                'connect_args': {
                    'check_same_thread': False,
                    'timeout': self.connect_timeout,
                },
            })
        else:
            options = [f"-c statement_timeout={int(self.statement_timeout * 1000)}"]
            if self.read_only:
                options.append("-c default_transaction_read_only=on")
            base_config.update({
                'poolclass': QueuePool,
                'pool_size': self.pool_size,
                'max_overflow': self.max_overflow,
                'pool_timeout': self.connect_timeout,
                'connect_args': {
                    'connect_timeout': self.connect_timeout,
                    'options': " ".join(options),
                }
            })

        return base_config

    def _get_db_type(self) -> str:
        """Get database type from URL"""
        parsed = urlparse(self.database_url)
        return parsed.scheme.split('+')[0]  # Handle dialects like postgresql+psycopg2

    @property
    def dialect_name(self) -> str:
        if self.engine is not None:
            return self.engine.dialect.name
        return self._get_db_type()

    @contextmanager
    def connect(self) -> Generator[Connection, None, None]:
        """
        Get a pooled connection without an explicit transaction

        Usage:
            with db_manager.connect() as conn:
                conn.execute(...)
        """
        if not self._is_initialized:
            self.initialize()

        with self.engine.connect() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Generator[Connection, None, None]:
        """
        Get a connection inside a transaction

        Commits on success, rolls back on exception.
        """
        if not self._is_initialized:
            self.initialize()

        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Get an ORM session with automatic cleanup

        Yields:
            SQLAlchemy session
        """
        if not self._is_initialized:
            self.initialize()

        session = self.SessionLocal()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def session_transaction(self) -> Generator[Session, None, None]:
        """ORM session that commits on success and rolls back on exception"""
        with self.get_session() as session:
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise

    def execute_query(self, query: str, params: Optional[Dict] = None) -> List[Dict]:
        """
        Execute a raw SQL query and return results

        Args:
            query: SQL query string
            params: Query parameters

        Returns:
            List of result dictionaries
        """
        start_time = time.time()

        try:
            with self.connect() as conn:
                result = conn.execute(text(query), params or {})
                rows = [dict(row) for row in result.mappings()] if result.returns_rows else []

            duration = time.time() - start_time
            if duration > SLOW_QUERY_SECONDS:
                logger.warning(f"Slow query on {self.name} database: {duration:.2f}s")

            return rows

        except SQLAlchemyError as e:
            logger.error(f"Query execution failed on {self.name} database: {e}")
            raise

    def scalar(self, query: str, params: Optional[Dict] = None) -> Any:
        """Execute a query and return the first column of the first row"""
        with self.connect() as conn:
            return conn.execute(text(query), params or {}).scalar()

    def table_exists(self, table_name: str) -> bool:
        """
        Check if a table exists

        Args:
            table_name: Name of the table

        Returns:
            True if table exists, False otherwise
        """
        if not self._is_initialized:
            self.initialize()
        return inspect(self.engine).has_table(table_name)

    def get_columns(self, table_name: str) -> List[str]:
        """Column names of a table, empty when the table does not exist"""
        if not self.table_exists(table_name):
            return []
        return [column['name'] for column in inspect(self.engine).get_columns(table_name)]

    def column_exists(self, table_name: str, column_name: str) -> bool:
        return column_name in self.get_columns(table_name)

    def get_table(self, table_name: str) -> Table:
        """
        Reflect a table once and cache it

        Raises:
            NoSuchTableError: If the table does not exist
        """
        if table_name not in self._tables:
            if not self._is_initialized:
                self.initialize()
            if not self.table_exists(table_name):
                raise NoSuchTableError(table_name)
            self._tables[table_name] = Table(table_name, self._metadata, autoload_with=self.engine)
        return self._tables[table_name]

    def get_table_row_count(self, table_name: str, where_clause: Optional[str] = None) -> int:
        """
        Get row count for a table

        Args:
            table_name: Name of the table
            where_clause: Optional SQL predicate

        Returns:
            Number of rows in the table
        """
        query = f"SELECT COUNT(*) FROM {table_name}"
        if where_clause:
            query += f" WHERE {where_clause}"
        return int(self.scalar(query) or 0)

    def close(self) -> None:
        """Close database connections and cleanup resources"""
        if self.engine:
            self.engine.dispose()
            logger.info(f"{self.name} database connections closed")

        self.engine = None
        self._tables.clear()
        self._metadata = MetaData()
        self._is_initialized = False

    def __enter__(self):
        """Context manager entry"""
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit"""
        self.close()


def _configure_sqlite_connection(dbapi_connection, connection_record) -> None:
    # Let SQLAlchemy emit BEGIN itself so SAVEPOINT works with pysqlite
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _begin_sqlite_transaction(conn) -> None:
    conn.exec_driver_sql("BEGIN")
