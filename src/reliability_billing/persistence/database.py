"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production) with automatic schema creation.

Queries are written once with `?` placeholders and adapted per dialect.
Nested connection() blocks on the same thread join the outer transaction,
so repository methods compose into a single atomic unit.
"""

import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Generator, List, Optional
import structlog

logger = structlog.get_logger()

sqlite3.register_adapter(Decimal, str)

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Plan catalogue
CREATE TABLE IF NOT EXISTS billing_plans (
    id TEXT PRIMARY KEY,
    code TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    base_price TEXT NOT NULL,
    included_assets INTEGER NOT NULL,
    included_credits INTEGER NOT NULL,
    asset_uplift_rate TEXT NOT NULL,
    overage_per_credit_rate TEXT NOT NULL,
    max_sites INTEGER NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

-- Subscriptions
CREATE TABLE IF NOT EXISTS billing_subscriptions (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    plan_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    currency TEXT NOT NULL,
    current_period_start TEXT NOT NULL,
    current_period_end TEXT NOT NULL,
    anchor_day INTEGER NOT NULL,
    stripe_customer_id TEXT,
    stripe_subscription_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (plan_id) REFERENCES billing_plans(id)
);

-- Cached credit balance per subscription
CREATE TABLE IF NOT EXISTS subscription_limits (
    subscription_id TEXT PRIMARY KEY,
    included_assets INTEGER NOT NULL,
    included_credits INTEGER NOT NULL,
    remaining_credits INTEGER NOT NULL,
    last_reset_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (subscription_id) REFERENCES billing_subscriptions(id)
);

-- Usage events (append-only ledger)
CREATE TABLE IF NOT EXISTS usage_events (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    subscription_id TEXT NOT NULL,
    site_id TEXT,
    asset_id TEXT,
    event_type TEXT NOT NULL,
    units REAL NOT NULL,
    credits_consumed INTEGER NOT NULL,
    meta TEXT,  -- JSON object
    occurred_at TEXT NOT NULL,
    FOREIGN KEY (subscription_id) REFERENCES billing_subscriptions(id)
);

-- Asset inventory snapshots
CREATE TABLE IF NOT EXISTS asset_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    asset_count INTEGER NOT NULL,
    captured_at TEXT NOT NULL
);

-- Invoices (one per subscription per period)
CREATE TABLE IF NOT EXISTS billing_invoices (
    id TEXT PRIMARY KEY,
    subscription_id TEXT NOT NULL,
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    base_amount TEXT NOT NULL,
    asset_uplift_amount TEXT NOT NULL,
    usage_overage_amount TEXT NOT NULL,
    subtotal TEXT NOT NULL,
    tax TEXT NOT NULL,
    total TEXT NOT NULL,
    currency TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'open',
    asset_count INTEGER NOT NULL,
    credits_consumed INTEGER NOT NULL,
    meta TEXT,  -- JSON object
    stripe_invoice_id TEXT,
    stripe_hosted_url TEXT,
    processor_sync_status TEXT NOT NULL DEFAULT 'pending',
    processor_sync_error TEXT,
    processor_sync_attempts INTEGER NOT NULL DEFAULT 0,
    paid_at TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (subscription_id, period_start),
    FOREIGN KEY (subscription_id) REFERENCES billing_subscriptions(id)
);

-- KPI baselines (revisions over time)
CREATE TABLE IF NOT EXISTS kpi_baselines (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    metric TEXT NOT NULL,
    baseline_value REAL NOT NULL,
    cost_per_unit TEXT,
    effective_from TEXT NOT NULL,
    effective_to TEXT,
    created_at TEXT NOT NULL
);

-- KPI measurements
CREATE TABLE IF NOT EXISTS kpi_measurements (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    metric TEXT NOT NULL,
    measured_value REAL NOT NULL,
    measured_at TEXT NOT NULL
);

-- Gain-share runs
CREATE TABLE IF NOT EXISTS gainshare_runs (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    method TEXT NOT NULL,
    calculated_savings TEXT NOT NULL,
    share_pct TEXT NOT NULL,
    fee TEXT NOT NULL,
    currency TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending_approval',
    report TEXT,  -- JSON object
    decided_at TEXT,
    decided_by TEXT,
    created_at TEXT NOT NULL
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_subscriptions_tenant ON billing_subscriptions(tenant_id);
CREATE INDEX IF NOT EXISTS idx_subscriptions_stripe ON billing_subscriptions(stripe_subscription_id);
CREATE INDEX IF NOT EXISTS idx_usage_subscription_time ON usage_events(subscription_id, occurred_at);
CREATE INDEX IF NOT EXISTS idx_usage_tenant ON usage_events(tenant_id);
CREATE INDEX IF NOT EXISTS idx_assets_tenant_time ON asset_snapshots(tenant_id, captured_at);
CREATE INDEX IF NOT EXISTS idx_invoices_stripe ON billing_invoices(stripe_invoice_id);
CREATE INDEX IF NOT EXISTS idx_invoices_sync ON billing_invoices(processor_sync_status);
CREATE INDEX IF NOT EXISTS idx_baselines_tenant_metric ON kpi_baselines(tenant_id, metric);
CREATE INDEX IF NOT EXISTS idx_measurements_tenant_metric ON kpi_measurements(tenant_id, metric, measured_at);
CREATE INDEX IF NOT EXISTS idx_gainshare_tenant ON gainshare_runs(tenant_id);
"""

POSTGRES_SCHEMA_SQL = """
-- Plan catalogue
CREATE TABLE IF NOT EXISTS billing_plans (
    id TEXT PRIMARY KEY,
    code TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    base_price NUMERIC(14, 4) NOT NULL,
    included_assets INTEGER NOT NULL,
    included_credits BIGINT NOT NULL,
    asset_uplift_rate NUMERIC(14, 6) NOT NULL,
    overage_per_credit_rate NUMERIC(14, 6) NOT NULL,
    max_sites INTEGER NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TIMESTAMPTZ NOT NULL
);

-- Subscriptions
CREATE TABLE IF NOT EXISTS billing_subscriptions (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    plan_id TEXT NOT NULL REFERENCES billing_plans(id),
    status TEXT NOT NULL DEFAULT 'active',
    currency TEXT NOT NULL,
    current_period_start TIMESTAMPTZ NOT NULL,
    current_period_end TIMESTAMPTZ NOT NULL,
    anchor_day INTEGER NOT NULL,
    stripe_customer_id TEXT,
    stripe_subscription_id TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Cached credit balance
CREATE TABLE IF NOT EXISTS subscription_limits (
    subscription_id TEXT PRIMARY KEY REFERENCES billing_subscriptions(id),
    included_assets INTEGER NOT NULL,
    included_credits BIGINT NOT NULL,
    remaining_credits BIGINT NOT NULL,
    last_reset_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Usage events
CREATE TABLE IF NOT EXISTS usage_events (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    subscription_id TEXT NOT NULL REFERENCES billing_subscriptions(id),
    site_id TEXT,
    asset_id TEXT,
    event_type TEXT NOT NULL,
    units DOUBLE PRECISION NOT NULL,
    credits_consumed BIGINT NOT NULL,
    meta JSONB,
    occurred_at TIMESTAMPTZ NOT NULL
);

-- Asset inventory snapshots
CREATE TABLE IF NOT EXISTS asset_snapshots (
    id SERIAL PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    asset_count INTEGER NOT NULL,
    captured_at TIMESTAMPTZ NOT NULL
);

-- Invoices
CREATE TABLE IF NOT EXISTS billing_invoices (
    id TEXT PRIMARY KEY,
    subscription_id TEXT NOT NULL REFERENCES billing_subscriptions(id),
    period_start TIMESTAMPTZ NOT NULL,
    period_end TIMESTAMPTZ NOT NULL,
    base_amount NUMERIC(14, 2) NOT NULL,
    asset_uplift_amount NUMERIC(14, 2) NOT NULL,
    usage_overage_amount NUMERIC(14, 2) NOT NULL,
    subtotal NUMERIC(14, 2) NOT NULL,
    tax NUMERIC(14, 2) NOT NULL,
    total NUMERIC(14, 2) NOT NULL,
    currency TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'open',
    asset_count INTEGER NOT NULL,
    credits_consumed BIGINT NOT NULL,
    meta JSONB,
    stripe_invoice_id TEXT,
    stripe_hosted_url TEXT,
    processor_sync_status TEXT NOT NULL DEFAULT 'pending',
    processor_sync_error TEXT,
    processor_sync_attempts INTEGER NOT NULL DEFAULT 0,
    paid_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL,
    UNIQUE (subscription_id, period_start)
);

-- KPI baselines
CREATE TABLE IF NOT EXISTS kpi_baselines (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    metric TEXT NOT NULL,
    baseline_value DOUBLE PRECISION NOT NULL,
    cost_per_unit NUMERIC(14, 4),
    effective_from TIMESTAMPTZ NOT NULL,
    effective_to TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL
);

-- KPI measurements
CREATE TABLE IF NOT EXISTS kpi_measurements (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    metric TEXT NOT NULL,
    measured_value DOUBLE PRECISION NOT NULL,
    measured_at TIMESTAMPTZ NOT NULL
);

-- Gain-share runs
CREATE TABLE IF NOT EXISTS gainshare_runs (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    period_start TIMESTAMPTZ NOT NULL,
    period_end TIMESTAMPTZ NOT NULL,
    method TEXT NOT NULL,
    calculated_savings NUMERIC(16, 4) NOT NULL,
    share_pct NUMERIC(6, 3) NOT NULL,
    fee NUMERIC(16, 6) NOT NULL,
    currency TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending_approval',
    report JSONB,
    decided_at TIMESTAMPTZ,
    decided_by TEXT,
    created_at TIMESTAMPTZ NOT NULL
);

-- Schema version
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_subscriptions_tenant ON billing_subscriptions(tenant_id);
CREATE INDEX IF NOT EXISTS idx_subscriptions_stripe ON billing_subscriptions(stripe_subscription_id);
CREATE INDEX IF NOT EXISTS idx_usage_subscription_time ON usage_events(subscription_id, occurred_at);
CREATE INDEX IF NOT EXISTS idx_usage_tenant ON usage_events(tenant_id);
CREATE INDEX IF NOT EXISTS idx_assets_tenant_time ON asset_snapshots(tenant_id, captured_at);
CREATE INDEX IF NOT EXISTS idx_invoices_stripe ON billing_invoices(stripe_invoice_id);
CREATE INDEX IF NOT EXISTS idx_invoices_sync ON billing_invoices(processor_sync_status);
CREATE INDEX IF NOT EXISTS idx_baselines_tenant_metric ON kpi_baselines(tenant_id, metric);
CREATE INDEX IF NOT EXISTS idx_measurements_tenant_metric ON kpi_measurements(tenant_id, metric, measured_at);
CREATE INDEX IF NOT EXISTS idx_gainshare_tenant ON gainshare_runs(tenant_id);
"""


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        with db.connection() as conn:
            db.write(conn, "UPDATE ...", (...))
            rows = db.fetch(conn, "SELECT ...", (...))
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///reliability_billing.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._initialized = False

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "reliability_billing.db"

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """
        Get a database connection (thread-safe).

        The outermost block commits on success and rolls back on error.
        """
        depth = getattr(self._local, "depth", 0)
        if depth:
            self._local.depth = depth + 1
            try:
                yield self._local.active
            finally:
                self._local.depth = depth
            return

        opener = self._postgres_connection if self.is_postgres else self._sqlite_connection
        with opener() as conn:
            self._local.active = conn
            self._local.depth = 1
            try:
                yield conn
            finally:
                self._local.depth = 0
                self._local.active = None

    @contextmanager
    def _sqlite_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """SQLite connection with WAL mode for concurrency."""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            db_path = self._get_sqlite_path()
            self._local.conn = sqlite3.connect(
                db_path,
                check_same_thread=False,
                timeout=30.0,
            )
            self._local.conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn.execute("PRAGMA foreign_keys=ON")

        try:
            yield self._local.conn
            self._local.conn.commit()
        except Exception:
            self._local.conn.rollback()
            raise

    @contextmanager
    def _postgres_connection(self) -> Generator[Any, None, None]:
        """PostgreSQL connection, one per transaction."""
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install reliability-billing[postgres]")

        conn = psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _adapt(self, query: str) -> str:
        """Rewrite `?` placeholders for psycopg2."""
        if self.is_postgres:
            return query.replace("?", "%s")
        return query

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            schema = POSTGRES_SCHEMA_SQL if self.is_postgres else SCHEMA_SQL

            with self.connection() as conn:
                if self.is_postgres:
                    conn.cursor().execute(schema)
                else:
                    conn.executescript(schema)

                # Record schema version
                now = datetime.now(timezone.utc).isoformat()
                self.write(
                    conn,
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?) ON CONFLICT (version) DO NOTHING",
                    (SCHEMA_VERSION, now),
                )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def fetch(self, conn: Any, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Run a query on an open connection and return rows as dicts."""
        if self.is_postgres:
            cursor = conn.cursor()
            cursor.execute(self._adapt(query), params)
        else:
            cursor = conn.execute(query, params)
        if cursor.description:
            return [dict(row) for row in cursor.fetchall()]
        return []

    def write(self, conn: Any, query: str, params: tuple = ()) -> int:
        """Run a statement on an open connection and return the affected row count."""
        if self.is_postgres:
            cursor = conn.cursor()
            cursor.execute(self._adapt(query), params)
        else:
            cursor = conn.execute(query, params)
        return cursor.rowcount

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query in its own transaction and return results as list of dicts."""
        with self.connection() as conn:
            return self.fetch(conn, query, params)

    def close(self) -> None:
        """Close database connections."""
        if hasattr(self._local, 'conn') and self._local.conn:
            self._local.conn.close()
            self._local.conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
