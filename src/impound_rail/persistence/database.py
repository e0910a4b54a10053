"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production) with automatic schema migration.

Ledger guarantees that live in the schema itself, not in application code:
- partial unique index on payments.external_reference for external origin
- append-only triggers on payments (no DELETE, no UPDATE of completed rows)
- receipts keyed by payment_id, unique receipt_number
"""

import os
import re
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

logger = structlog.get_logger()

SCHEMA_VERSION = 1
DEFAULT_DATABASE_URL = "sqlite:///impound_rail.db"

SCHEMA_SQL = """
-- Impounded vehicles (intake is owned by the vehicle registry)
CREATE TABLE IF NOT EXISTS vehicles (
    vehicle_id TEXT PRIMARY KEY,
    license_plate TEXT NOT NULL UNIQUE,
    category TEXT NOT NULL,
    impounded_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'impounded'
        CHECK (status IN ('impounded', 'ready_for_release', 'claimed', 'released')),
    make TEXT,
    model TEXT,
    color TEXT,
    owner_name TEXT,
    owner_phone TEXT,
    owner_email TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Payment ledger (append-only)
CREATE TABLE IF NOT EXISTS payments (
    payment_id TEXT PRIMARY KEY,
    vehicle_id TEXT NOT NULL,
    amount INTEGER NOT NULL CHECK (amount >= 0),
    method TEXT NOT NULL,
    origin TEXT NOT NULL CHECK (origin IN ('internal', 'external')),
    external_reference TEXT,
    status TEXT NOT NULL CHECK (status IN ('pending', 'completed', 'failed')),
    recorded_by TEXT,
    notes TEXT,
    created_at TEXT NOT NULL,
    CHECK ((origin = 'external') = (external_reference IS NOT NULL)),
    FOREIGN KEY (vehicle_id) REFERENCES vehicles(vehicle_id)
);

-- Receipts (one per completed payment)
CREATE TABLE IF NOT EXISTS receipts (
    payment_id TEXT PRIMARY KEY,
    receipt_number TEXT NOT NULL UNIQUE,
    artifact_path TEXT NOT NULL,
    verification_code TEXT NOT NULL,
    payload TEXT NOT NULL,  -- canonical JSON that was signed
    content_hash TEXT NOT NULL,
    signature TEXT NOT NULL,
    key_id TEXT NOT NULL,
    issued_at TEXT NOT NULL,
    regenerated_at TEXT,
    issue_count INTEGER NOT NULL DEFAULT 1,
    FOREIGN KEY (payment_id) REFERENCES payments(payment_id)
);

-- Applied migrations
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Gateway idempotency key
CREATE UNIQUE INDEX IF NOT EXISTS idx_payments_external_ref
    ON payments(external_reference) WHERE origin = 'external';

-- Lookups
CREATE INDEX IF NOT EXISTS idx_payments_vehicle ON payments(vehicle_id, status);
CREATE INDEX IF NOT EXISTS idx_payments_created ON payments(created_at);
CREATE INDEX IF NOT EXISTS idx_vehicles_status ON vehicles(status);

CREATE TRIGGER IF NOT EXISTS trg_payments_no_delete
BEFORE DELETE ON payments
BEGIN
    SELECT RAISE(ABORT, 'payments ledger is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_payments_completed_immutable
BEFORE UPDATE ON payments
WHEN OLD.status = 'completed'
BEGIN
    SELECT RAISE(ABORT, 'completed payments are immutable');
END;
"""

POSTGRES_SCHEMA_SQL = """
-- Impounded vehicles
CREATE TABLE IF NOT EXISTS vehicles (
    vehicle_id TEXT PRIMARY KEY,
    license_plate TEXT NOT NULL UNIQUE,
    category TEXT NOT NULL,
    impounded_at TIMESTAMPTZ NOT NULL,
    status TEXT NOT NULL DEFAULT 'impounded'
        CHECK (status IN ('impounded', 'ready_for_release', 'claimed', 'released')),
    make TEXT,
    model TEXT,
    color TEXT,
    owner_name TEXT,
    owner_phone TEXT,
    owner_email TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Payment ledger
CREATE TABLE IF NOT EXISTS payments (
    payment_id TEXT PRIMARY KEY,
    vehicle_id TEXT NOT NULL REFERENCES vehicles(vehicle_id),
    amount BIGINT NOT NULL CHECK (amount >= 0),
    method TEXT NOT NULL,
    origin TEXT NOT NULL CHECK (origin IN ('internal', 'external')),
    external_reference TEXT,
    status TEXT NOT NULL CHECK (status IN ('pending', 'completed', 'failed')),
    recorded_by TEXT,
    notes TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    CHECK ((origin = 'external') = (external_reference IS NOT NULL))
);

-- Receipts (one per completed payment)
CREATE TABLE IF NOT EXISTS receipts (
    payment_id TEXT PRIMARY KEY REFERENCES payments(payment_id),
    receipt_number TEXT NOT NULL UNIQUE,
    artifact_path TEXT NOT NULL,
    verification_code TEXT NOT NULL,
    payload TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    signature TEXT NOT NULL,
    key_id TEXT NOT NULL,
    issued_at TIMESTAMPTZ NOT NULL,
    regenerated_at TIMESTAMPTZ,
    issue_count INTEGER NOT NULL DEFAULT 1
);

-- Applied migrations
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

-- Idempotency key and lookups
CREATE UNIQUE INDEX IF NOT EXISTS idx_payments_external_ref
    ON payments(external_reference) WHERE origin = 'external';
CREATE INDEX IF NOT EXISTS idx_payments_vehicle ON payments(vehicle_id, status);
CREATE INDEX IF NOT EXISTS idx_payments_created ON payments(created_at);
CREATE INDEX IF NOT EXISTS idx_vehicles_status ON vehicles(status);

CREATE OR REPLACE FUNCTION payments_append_only() RETURNS trigger AS $$
BEGIN
    IF TG_OP = 'DELETE' OR OLD.status = 'completed' THEN
        RAISE EXCEPTION 'payments ledger is append-only';
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS trg_payments_append_only ON payments;
CREATE TRIGGER trg_payments_append_only
    BEFORE UPDATE OR DELETE ON payments
    FOR EACH ROW EXECUTE FUNCTION payments_append_only();
"""

_PLACEHOLDER = re.compile(r"\?")


class UniqueViolation(Exception):
    """A unique constraint rejected a write."""
    pass


def _is_unique_violation(exc: Exception) -> bool:
    if isinstance(exc, sqlite3.IntegrityError):
        return "UNIQUE constraint failed" in str(exc)
    # psycopg2 exposes the SQLSTATE on the exception
    return getattr(exc, "pgcode", None) == "23505"


def _rows(cursor: Any) -> List[Dict[str, Any]]:
    return [dict(row) for row in cursor.fetchall()] if cursor.description else []


class Transaction:
    """
    One database transaction pinned to a single connection.

    Obtained from `Database.transaction()`. Queries use `?` placeholders on
    both backends.
    """

    def __init__(self, db: "Database", conn: Any):
        self.db = db
        self.conn = conn

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        return self.db._run(self.conn, query, params)

    def lock_vehicle(self, vehicle_id: str) -> Optional[Dict[str, Any]]:
        """
        Read a vehicle row and hold it until commit.

        PostgreSQL takes a row lock; SQLite already holds the database write
        lock from BEGIN IMMEDIATE.
        """
        suffix = " FOR UPDATE" if self.db.is_postgres else ""
        rows = self.execute("SELECT * FROM vehicles WHERE vehicle_id = ?" + suffix, (vehicle_id,))
        return rows[0] if rows else None


class Database:
    """
    Raw-SQL access to the ledger, on SQLite or PostgreSQL.

    SQLite connections are kept per thread in autocommit mode; PostgreSQL
    opens a connection per unit of work.

        db = Database("sqlite:///impound_rail.db")
        rows = db.execute("SELECT * FROM payments WHERE vehicle_id = ?", (vid,))

        with db.transaction() as tx:
            tx.lock_vehicle(vid)
            tx.execute("INSERT INTO payments ...", (...))
    """

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)
        self.is_postgres = self.database_url.startswith(("postgres://", "postgresql://"))
        self._local = threading.local()
        self._schema_lock = threading.Lock()
        self._schema_ready = False

    @property
    def sqlite_path(self) -> str:
        scheme, _, path = self.database_url.partition(":///")
        return path if scheme == "sqlite" and path else "impound_rail.db"

    def _thread_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            # isolation_level=None: BEGIN/COMMIT are issued by transaction()
            conn = sqlite3.connect(self.sqlite_path, timeout=30.0, isolation_level=None,
                                   check_same_thread=False)
            conn.row_factory = sqlite3.Row
            for pragma in ("journal_mode=WAL", "synchronous=NORMAL", "foreign_keys=ON"):
                conn.execute(f"PRAGMA {pragma}")
            self._local.conn = conn
        return conn

    @contextmanager
    def _pg_unit(self) -> Generator[Any, None, None]:
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("PostgreSQL support needs psycopg2-binary") from None

        conn = psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[Transaction, None, None]:
        """
        Run several statements atomically.

        SQLite starts with BEGIN IMMEDIATE so concurrent writers queue on the
        database lock instead of failing at commit time.
        """
        if self.is_postgres:
            with self._pg_unit() as conn:
                yield Transaction(self, conn)
            return

        conn = self._thread_conn()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield Transaction(self, conn)
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    def _run(self, conn: Any, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute on a given connection and return rows as dicts."""
        try:
            if self.is_postgres:
                cursor = conn.cursor()
                cursor.execute(_PLACEHOLDER.sub("%s", query), params)
            else:
                cursor = conn.execute(query, params)
        except Exception as e:
            if _is_unique_violation(e):
                raise UniqueViolation(str(e)) from e
            raise
        return _rows(cursor)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Run one statement outside any explicit transaction."""
        if self.is_postgres:
            with self._pg_unit() as conn:
                return self._run(conn, query, params)
        return self._run(self._thread_conn(), query, params)

    def initialize(self) -> None:
        """Create tables, indexes and ledger triggers if missing. Safe to call repeatedly."""
        with self._schema_lock:
            if self._schema_ready:
                return
            stamp = (SCHEMA_VERSION, datetime.now(timezone.utc).isoformat())
            if self.is_postgres:
                with self._pg_unit() as conn:
                    cursor = conn.cursor()
                    cursor.execute(POSTGRES_SCHEMA_SQL)
                    cursor.execute(
                        "INSERT INTO schema_version VALUES (%s, %s) ON CONFLICT DO NOTHING", stamp
                    )
            else:
                conn = self._thread_conn()
                conn.executescript(SCHEMA_SQL)
                conn.execute("INSERT OR IGNORE INTO schema_version VALUES (?, ?)", stamp)
            self._schema_ready = True

        logger.info("schema_ready", backend="postgres" if self.is_postgres else "sqlite",
                    version=SCHEMA_VERSION)

    def close(self) -> None:
        """Close this thread's SQLite connection."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None


_shared: Optional[Database] = None
_shared_lock = threading.Lock()


def get_database(database_url: Optional[str] = None) -> Database:
    """Process-wide Database, initialized on first use."""
    global _shared
    with _shared_lock:
        if _shared is None:
            _shared = Database(database_url)
    _shared.initialize()
    return _shared
