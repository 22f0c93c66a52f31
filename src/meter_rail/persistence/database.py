"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production) with automatic schema migration.

Every natural key is a UNIQUE constraint; writers upsert against it with
INSERT ... ON CONFLICT ... DO UPDATE, which both engines support. Queries
are written with "?" placeholders and translated for psycopg2.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Billable event types
CREATE TABLE IF NOT EXISTS usage_meters (
    id TEXT PRIMARY KEY,
    creator_id TEXT NOT NULL,
    event_name TEXT NOT NULL,
    display_name TEXT NOT NULL,
    description TEXT,
    aggregation_type TEXT NOT NULL,
    unit_name TEXT NOT NULL DEFAULT 'units',
    billing_model TEXT NOT NULL DEFAULT 'metered',
    unique_property TEXT,
    active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (creator_id, event_name)
);

-- Per-plan enforcement policy for a meter
CREATE TABLE IF NOT EXISTS meter_plan_limits (
    id TEXT PRIMARY KEY,
    meter_id TEXT NOT NULL,
    plan_name TEXT NOT NULL,
    limit_value REAL,
    overage_price REAL,
    soft_limit_threshold REAL NOT NULL DEFAULT 0.8,
    hard_cap INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (meter_id, plan_name),
    FOREIGN KEY (meter_id) REFERENCES usage_meters(id)
);

-- Append-only usage events (audit trail)
CREATE TABLE IF NOT EXISTS usage_events (
    id TEXT PRIMARY KEY,
    meter_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    event_value REAL NOT NULL DEFAULT 1,
    properties TEXT,  -- JSON object
    event_timestamp TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (meter_id) REFERENCES usage_meters(id)
);

-- Billing-period rollups
CREATE TABLE IF NOT EXISTS usage_aggregates (
    id TEXT PRIMARY KEY,
    meter_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    billing_period TEXT NOT NULL,
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    aggregate_value REAL NOT NULL DEFAULT 0,
    event_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (meter_id, user_id, billing_period),
    FOREIGN KEY (meter_id) REFERENCES usage_meters(id)
);

-- Subscription tiers
CREATE TABLE IF NOT EXISTS subscription_tiers (
    id TEXT PRIMARY KEY,
    creator_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    price REAL NOT NULL DEFAULT 0,
    currency TEXT NOT NULL DEFAULT 'usd',
    billing_cycle TEXT NOT NULL DEFAULT 'monthly',
    feature_entitlements TEXT NOT NULL DEFAULT '[]',  -- JSON array
    usage_caps TEXT NOT NULL DEFAULT '{}',  -- JSON object
    trial_period_days INTEGER NOT NULL DEFAULT 0,
    is_default INTEGER NOT NULL DEFAULT 0,
    active INTEGER NOT NULL DEFAULT 1,
    sort_order INTEGER NOT NULL DEFAULT 0,
    external_product_ref TEXT,
    external_price_ref TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Customer to tier bindings
CREATE TABLE IF NOT EXISTS customer_tier_assignments (
    id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL,
    creator_id TEXT NOT NULL,
    tier_id TEXT NOT NULL,
    status TEXT NOT NULL,
    current_period_start TEXT NOT NULL,
    current_period_end TEXT NOT NULL,
    trial_start TEXT,
    trial_end TEXT,
    external_subscription_ref TEXT,
    external_customer_ref TEXT,
    subscription_item_refs TEXT NOT NULL DEFAULT '{}',  -- JSON object
    cancel_at_period_end INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (customer_id, creator_id),
    FOREIGN KEY (tier_id) REFERENCES subscription_tiers(id)
);

-- Billable excess usage
CREATE TABLE IF NOT EXISTS tier_usage_overages (
    id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL,
    creator_id TEXT NOT NULL,
    tier_id TEXT NOT NULL,
    meter_id TEXT NOT NULL,
    billing_period TEXT NOT NULL,
    limit_value REAL NOT NULL,
    actual_usage REAL NOT NULL,
    overage_amount REAL NOT NULL,
    overage_price REAL NOT NULL,
    overage_cost REAL NOT NULL,
    currency TEXT NOT NULL DEFAULT 'usd',
    billed INTEGER NOT NULL DEFAULT 0,
    billed_at TEXT,
    external_invoice_item_ref TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (customer_id, creator_id, tier_id, meter_id, billing_period)
);

-- Delivery of usage to the billing provider
CREATE TABLE IF NOT EXISTS usage_billing_sync (
    id TEXT PRIMARY KEY,
    meter_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    billing_period TEXT NOT NULL,
    usage_quantity REAL NOT NULL DEFAULT 0,
    external_usage_record_ref TEXT,
    external_subscription_item_ref TEXT,
    billing_status TEXT NOT NULL DEFAULT 'pending',
    sync_attempts INTEGER NOT NULL DEFAULT 0,
    last_sync_attempt TEXT,
    sync_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (meter_id, user_id, billing_period)
);

-- Soft/hard limit notifications
CREATE TABLE IF NOT EXISTS usage_alerts (
    id TEXT PRIMARY KEY,
    meter_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    plan_name TEXT NOT NULL,
    alert_type TEXT NOT NULL,
    billing_period TEXT NOT NULL,
    threshold_percentage REAL NOT NULL,
    current_usage REAL NOT NULL,
    limit_value REAL,
    triggered_at TEXT NOT NULL,
    acknowledged INTEGER NOT NULL DEFAULT 0,
    acknowledged_at TEXT,
    UNIQUE (meter_id, user_id, plan_name, alert_type, billing_period)
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_meters_creator ON usage_meters(creator_id, active);
CREATE INDEX IF NOT EXISTS idx_events_meter_user_ts ON usage_events(meter_id, user_id, event_timestamp);
CREATE INDEX IF NOT EXISTS idx_events_ts ON usage_events(event_timestamp);
CREATE INDEX IF NOT EXISTS idx_aggregates_period ON usage_aggregates(billing_period);
CREATE INDEX IF NOT EXISTS idx_tiers_creator ON subscription_tiers(creator_id);
CREATE INDEX IF NOT EXISTS idx_assignments_creator_status ON customer_tier_assignments(creator_id, status);
CREATE INDEX IF NOT EXISTS idx_overages_creator_period ON tier_usage_overages(creator_id, billing_period);
CREATE INDEX IF NOT EXISTS idx_sync_status ON usage_billing_sync(billing_status, sync_attempts);
CREATE INDEX IF NOT EXISTS idx_alerts_meter_user ON usage_alerts(meter_id, user_id);
"""

POSTGRES_SCHEMA_SQL = """
-- Billable event types
CREATE TABLE IF NOT EXISTS usage_meters (
    id TEXT PRIMARY KEY,
    creator_id TEXT NOT NULL,
    event_name TEXT NOT NULL,
    display_name TEXT NOT NULL,
    description TEXT,
    aggregation_type TEXT NOT NULL,
    unit_name TEXT NOT NULL DEFAULT 'units',
    billing_model TEXT NOT NULL DEFAULT 'metered',
    unique_property TEXT,
    active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (creator_id, event_name)
);

-- Per-plan enforcement policy for a meter
CREATE TABLE IF NOT EXISTS meter_plan_limits (
    id TEXT PRIMARY KEY,
    meter_id TEXT NOT NULL REFERENCES usage_meters(id),
    plan_name TEXT NOT NULL,
    limit_value DOUBLE PRECISION,
    overage_price DOUBLE PRECISION,
    soft_limit_threshold DOUBLE PRECISION NOT NULL DEFAULT 0.8,
    hard_cap BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (meter_id, plan_name)
);

-- Append-only usage events
CREATE TABLE IF NOT EXISTS usage_events (
    id TEXT PRIMARY KEY,
    meter_id TEXT NOT NULL REFERENCES usage_meters(id),
    user_id TEXT NOT NULL,
    event_value DOUBLE PRECISION NOT NULL DEFAULT 1,
    properties JSONB,
    event_timestamp TEXT NOT NULL,
    created_at TEXT NOT NULL
);

-- Billing-period rollups
CREATE TABLE IF NOT EXISTS usage_aggregates (
    id TEXT PRIMARY KEY,
    meter_id TEXT NOT NULL REFERENCES usage_meters(id),
    user_id TEXT NOT NULL,
    billing_period TEXT NOT NULL,
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    aggregate_value DOUBLE PRECISION NOT NULL DEFAULT 0,
    event_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (meter_id, user_id, billing_period)
);

-- Subscription tiers
CREATE TABLE IF NOT EXISTS subscription_tiers (
    id TEXT PRIMARY KEY,
    creator_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    price DOUBLE PRECISION NOT NULL DEFAULT 0,
    currency TEXT NOT NULL DEFAULT 'usd',
    billing_cycle TEXT NOT NULL DEFAULT 'monthly',
    feature_entitlements JSONB NOT NULL DEFAULT '[]',
    usage_caps JSONB NOT NULL DEFAULT '{}',
    trial_period_days INTEGER NOT NULL DEFAULT 0,
    is_default BOOLEAN NOT NULL DEFAULT FALSE,
    active BOOLEAN NOT NULL DEFAULT TRUE,
    sort_order INTEGER NOT NULL DEFAULT 0,
    external_product_ref TEXT,
    external_price_ref TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Customer to tier bindings
CREATE TABLE IF NOT EXISTS customer_tier_assignments (
    id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL,
    creator_id TEXT NOT NULL,
    tier_id TEXT NOT NULL REFERENCES subscription_tiers(id),
    status TEXT NOT NULL,
    current_period_start TEXT NOT NULL,
    current_period_end TEXT NOT NULL,
    trial_start TEXT,
    trial_end TEXT,
    external_subscription_ref TEXT,
    external_customer_ref TEXT,
    subscription_item_refs JSONB NOT NULL DEFAULT '{}',
    cancel_at_period_end BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (customer_id, creator_id)
);

-- Billable excess usage
CREATE TABLE IF NOT EXISTS tier_usage_overages (
    id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL,
    creator_id TEXT NOT NULL,
    tier_id TEXT NOT NULL,
    meter_id TEXT NOT NULL,
    billing_period TEXT NOT NULL,
    limit_value DOUBLE PRECISION NOT NULL,
    actual_usage DOUBLE PRECISION NOT NULL,
    overage_amount DOUBLE PRECISION NOT NULL,
    overage_price DOUBLE PRECISION NOT NULL,
    overage_cost DOUBLE PRECISION NOT NULL,
    currency TEXT NOT NULL DEFAULT 'usd',
    billed BOOLEAN NOT NULL DEFAULT FALSE,
    billed_at TEXT,
    external_invoice_item_ref TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (customer_id, creator_id, tier_id, meter_id, billing_period)
);

-- Delivery of usage to the billing provider
CREATE TABLE IF NOT EXISTS usage_billing_sync (
    id TEXT PRIMARY KEY,
    meter_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    billing_period TEXT NOT NULL,
    usage_quantity DOUBLE PRECISION NOT NULL DEFAULT 0,
    external_usage_record_ref TEXT,
    external_subscription_item_ref TEXT,
    billing_status TEXT NOT NULL DEFAULT 'pending',
    sync_attempts INTEGER NOT NULL DEFAULT 0,
    last_sync_attempt TEXT,
    sync_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (meter_id, user_id, billing_period)
);

-- Soft/hard limit notifications
CREATE TABLE IF NOT EXISTS usage_alerts (
    id TEXT PRIMARY KEY,
    meter_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    plan_name TEXT NOT NULL,
    alert_type TEXT NOT NULL,
    billing_period TEXT NOT NULL,
    threshold_percentage DOUBLE PRECISION NOT NULL,
    current_usage DOUBLE PRECISION NOT NULL,
    limit_value DOUBLE PRECISION,
    triggered_at TEXT NOT NULL,
    acknowledged BOOLEAN NOT NULL DEFAULT FALSE,
    acknowledged_at TEXT,
    UNIQUE (meter_id, user_id, plan_name, alert_type, billing_period)
);

-- Schema version
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_meters_creator ON usage_meters(creator_id, active);
CREATE INDEX IF NOT EXISTS idx_events_meter_user_ts ON usage_events(meter_id, user_id, event_timestamp);
CREATE INDEX IF NOT EXISTS idx_events_ts ON usage_events(event_timestamp);
CREATE INDEX IF NOT EXISTS idx_aggregates_period ON usage_aggregates(billing_period);
CREATE INDEX IF NOT EXISTS idx_tiers_creator ON subscription_tiers(creator_id);
CREATE INDEX IF NOT EXISTS idx_assignments_creator_status ON customer_tier_assignments(creator_id, status);
CREATE INDEX IF NOT EXISTS idx_overages_creator_period ON tier_usage_overages(creator_id, billing_period);
CREATE INDEX IF NOT EXISTS idx_sync_status ON usage_billing_sync(billing_status, sync_attempts);
CREATE INDEX IF NOT EXISTS idx_alerts_meter_user ON usage_alerts(meter_id, user_id);
"""


class Transaction:
    """Executes statements on one connection, committed together."""

    def __init__(self, db: "Database", conn: Any):
        self._db = db
        self._conn = conn

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        return self._db._run(self._conn, query, params)


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        with db.connection() as conn:
            conn.execute("SELECT * FROM usage_meters")

        with db.transaction() as tx:
            tx.execute("INSERT ...", (...))
            tx.execute("INSERT ...", (...))
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///meter_rail.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._init_lock = threading.Lock()
        self._initialized = False

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton (tests, reconfiguration)."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = None

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "meter_rail.db"

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """Get a database connection (thread-safe)."""
        if self.is_postgres:
            with self._postgres_connection() as conn:
                yield conn
        else:
            with self._sqlite_connection() as conn:
                yield conn

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
        """PostgreSQL connection."""
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install meter-rail[postgres]")

        conn = psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[Transaction, None, None]:
        """Run several statements atomically."""
        with self.connection() as conn:
            yield Transaction(self, conn)

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._init_lock:
            if self._initialized:
                return

            schema = POSTGRES_SCHEMA_SQL if self.is_postgres else SCHEMA_SQL

            with self.connection() as conn:
                now = datetime.now(timezone.utc).isoformat()
                if self.is_postgres:
                    cursor = conn.cursor()
                    cursor.execute(schema)
                    cursor.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
                else:
                    conn.executescript(schema)
                    conn.execute(
                        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now)
                    )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def _run(self, conn: Any, query: str, params: tuple) -> List[Dict[str, Any]]:
        if self.is_postgres:
            cursor = conn.cursor()
            cursor.execute(query.replace("?", "%s"), params)
            if cursor.description:
                return [dict(row) for row in cursor.fetchall()]
            return []

        cursor = conn.execute(query, params)
        if cursor.description:
            return [dict(row) for row in cursor.fetchall()]
        return []

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        with self.connection() as conn:
            return self._run(conn, query, params)

    def execute_many(self, query: str, params_list: List[tuple]) -> int:
        """Execute a query with multiple parameter sets."""
        with self.connection() as conn:
            if self.is_postgres:
                cursor = conn.cursor()
                cursor.executemany(query.replace("?", "%s"), params_list)
                return cursor.rowcount
            else:
                cursor = conn.executemany(query, params_list)
                return cursor.rowcount

    @staticmethod
    def is_unique_violation(error: Exception) -> bool:
        """True when an error is a UNIQUE constraint violation on either engine."""
        if isinstance(error, sqlite3.IntegrityError):
            return "UNIQUE" in str(error).upper()
        return getattr(error, "pgcode", None) == "23505"

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
