"""
Relational store for ProviderTrust.

A thin sqlite3 layer: schema creation, re-entrant transactions, timestamp
helpers, field provenance and the append-only audit tables shared by the
merge engine, the auditor and the batch run log.
"""

import json
import sqlite3
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"
DAYS_PER_MONTH = 30

SCHEMA = [
    '''
    CREATE TABLE IF NOT EXISTS providers (
        npi TEXT PRIMARY KEY,
        entity_type TEXT,
        first_name TEXT,
        last_name TEXT,
        middle_name TEXT,
        organization_name TEXT,
        credential TEXT,
        primary_taxonomy_code TEXT,
        primary_specialty TEXT,
        deactivation_date TEXT,
        registry_last_synced TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS practice_locations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        npi TEXT NOT NULL REFERENCES providers(npi),
        address_purpose TEXT DEFAULT 'LOCATION',
        address_line1 TEXT,
        address_line2 TEXT,
        city TEXT,
        state TEXT,
        zip_code TEXT,
        phone TEXT,
        fax TEXT,
        address_hash TEXT,
        latitude REAL,
        longitude REAL,
        geocoded_at TEXT,
        geocode_status TEXT,
        data_source TEXT NOT NULL DEFAULT 'registry',
        enriched_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(npi, address_hash)
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_locations_address_hash ON practice_locations(address_hash)',
    '''
    CREATE TABLE IF NOT EXISTS field_provenance (
        table_name TEXT NOT NULL,
        entity_key TEXT NOT NULL,
        field_name TEXT NOT NULL,
        source TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (table_name, entity_key, field_name)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS insurance_plans (
        plan_id TEXT PRIMARY KEY,
        plan_name TEXT,
        carrier TEXT,
        issuer_name TEXT,
        plan_type TEXT,
        state TEXT
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS provider_insurance (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        npi TEXT NOT NULL REFERENCES providers(npi),
        network_name TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE(npi, network_name)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS provider_plan_acceptance (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        npi TEXT NOT NULL REFERENCES providers(npi),
        plan_id TEXT NOT NULL REFERENCES insurance_plans(plan_id),
        location_id INTEGER REFERENCES practice_locations(id),
        acceptance_status TEXT NOT NULL DEFAULT 'PENDING',
        confidence_score INTEGER NOT NULL DEFAULT 0
            CHECK (confidence_score BETWEEN 0 AND 100),
        origin_source TEXT NOT NULL DEFAULT 'registry',
        verification_count INTEGER NOT NULL DEFAULT 0,
        last_verified TEXT,
        expires_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE UNIQUE INDEX IF NOT EXISTS idx_ppa_npi_plan_location
        ON provider_plan_acceptance(npi, plan_id, location_id)
        WHERE location_id IS NOT NULL
    ''',
    '''
    CREATE UNIQUE INDEX IF NOT EXISTS idx_ppa_npi_plan_no_location
        ON provider_plan_acceptance(npi, plan_id)
        WHERE location_id IS NULL
    ''',
    '''
    CREATE TABLE IF NOT EXISTS verification_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        npi TEXT NOT NULL,
        plan_id TEXT NOT NULL,
        acceptance_id INTEGER REFERENCES provider_plan_acceptance(id),
        upvotes INTEGER NOT NULL DEFAULT 0,
        downvotes INTEGER NOT NULL DEFAULT 0,
        submitted_by TEXT,
        source_ip TEXT,
        created_at TEXT NOT NULL,
        expires_at TEXT
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_verification_npi_plan ON verification_logs(npi, plan_id)',
    '''
    CREATE TABLE IF NOT EXISTS import_conflicts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        npi TEXT,
        table_name TEXT NOT NULL,
        entity_key TEXT NOT NULL,
        field_name TEXT NOT NULL,
        current_value TEXT,
        incoming_value TEXT,
        current_source TEXT NOT NULL,
        incoming_source TEXT NOT NULL,
        resolution TEXT NOT NULL DEFAULT 'pending',
        resolved_at TEXT,
        created_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS data_quality_audit (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id INTEGER,
        npi TEXT NOT NULL,
        audit_type TEXT NOT NULL,
        severity TEXT NOT NULL,
        field_name TEXT,
        current_value TEXT,
        expected_value TEXT,
        details TEXT,
        resolved INTEGER NOT NULL DEFAULT 0,
        resolved_at TEXT,
        created_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS sync_runs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_type TEXT NOT NULL,
        status TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT,
        records_processed INTEGER DEFAULT 0,
        error_message TEXT,
        summary TEXT
    )
    ''',
]


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def expiry_after(created_at: datetime, ttl_months: int) -> datetime:
    """Expiry for a record created at ``created_at``; a month counts as 30 days."""
    return created_at + timedelta(days=DAYS_PER_MONTH * ttl_months)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Render a datetime as the UTC text form stored in every table."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp (or ISO date) into an aware UTC datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class ProviderStore:
    """
    Owns the sqlite3 connection and the schema.

    Transactions are explicit. ``transaction()`` may be nested; inner blocks
    become savepoints so a failing inner record rolls back alone while the
    outermost block decides the final commit.
    """

    def __init__(self, db_path: str = "data/provider_trust.db"):
        """
        Open (and if needed create) the store.

        Args:
            db_path: Filesystem path of the database, or ``:memory:``
        """
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.conn = sqlite3.connect(db_path, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._depth = 0

        self._init_database()
        logger.info(f"Opened provider store at {db_path}")

    def _init_database(self):
        """Create tables and indexes."""
        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    def close(self):
        self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a transaction, or a savepoint when one is already open."""
        savepoint = f"sp_{self._depth}"
        if self._depth == 0:
            self.conn.execute("BEGIN")
        else:
            self.conn.execute(f"SAVEPOINT {savepoint}")
        self._depth += 1

        try:
            yield self.conn
        except BaseException:
            self._depth -= 1
            if self._depth == 0:
                self.conn.execute("ROLLBACK")
            else:
                self.conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                self.conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            raise
        else:
            self._depth -= 1
            if self._depth == 0:
                self.conn.execute("COMMIT")
            else:
                self.conn.execute(f"RELEASE SAVEPOINT {savepoint}")

    def fetchone(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        return self.conn.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        return self.conn.execute(sql, params).fetchall()

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        return self.conn.execute(sql, params)

    # Providers and locations

    def get_provider(self, npi: str) -> Optional[sqlite3.Row]:
        return self.fetchone("SELECT * FROM providers WHERE npi = ?", (npi,))

    def insert_provider(self, npi: str, entity_type: Optional[str] = None,
                        now: Optional[datetime] = None) -> None:
        stamp = format_timestamp(now or utc_now())
        self.execute(
            "INSERT INTO providers (npi, entity_type, created_at, updated_at) VALUES (?, ?, ?, ?)",
            (npi, entity_type, stamp, stamp),
        )

    def get_location(self, location_id: int) -> Optional[sqlite3.Row]:
        return self.fetchone("SELECT * FROM practice_locations WHERE id = ?", (location_id,))

    def find_location(self, npi: str, address_hash: str) -> Optional[sqlite3.Row]:
        return self.fetchone(
            "SELECT * FROM practice_locations WHERE npi = ? AND address_hash = ?",
            (npi, address_hash),
        )

    def location_states(self, npi: str) -> List[str]:
        rows = self.fetchall(
            "SELECT DISTINCT UPPER(TRIM(state)) AS state FROM practice_locations "
            "WHERE npi = ? AND state IS NOT NULL",
            (npi,),
        )
        return [row["state"] for row in rows]

    def update_watermark(self, npi: str, synced_at: datetime) -> None:
        self.execute(
            "UPDATE providers SET registry_last_synced = ? WHERE npi = ?",
            (format_timestamp(synced_at), npi),
        )

    # Plan acceptance

    def find_acceptance(self, npi: str, plan_id: str,
                        location_id: Optional[int] = None) -> Optional[sqlite3.Row]:
        """Look up a PPA in its own uniqueness scope (location-specific or provider-wide)."""
        if location_id is None:
            return self.fetchone(
                "SELECT * FROM provider_plan_acceptance "
                "WHERE npi = ? AND plan_id = ? AND location_id IS NULL",
                (npi, plan_id),
            )
        return self.fetchone(
            "SELECT * FROM provider_plan_acceptance "
            "WHERE npi = ? AND plan_id = ? AND location_id = ?",
            (npi, plan_id, location_id),
        )

    def get_acceptance(self, acceptance_id: int) -> Optional[sqlite3.Row]:
        return self.fetchone("SELECT * FROM provider_plan_acceptance WHERE id = ?", (acceptance_id,))

    def insert_acceptance(self, npi: str, plan_id: str, location_id: Optional[int],
                          status: str, confidence_score: int, expires_at: datetime,
                          now: Optional[datetime] = None, origin_source: str = "registry") -> int:
        """Insert a plan acceptance; ``origin_source`` is the tier label that created it."""
        stamp = format_timestamp(now or utc_now())
        cursor = self.execute(
            '''
            INSERT INTO provider_plan_acceptance
                (npi, plan_id, location_id, acceptance_status, confidence_score, origin_source,
                 verification_count, expires_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
            ''',
            (npi, plan_id, location_id, status, confidence_score, origin_source,
             format_timestamp(expires_at), stamp, stamp),
        )
        return cursor.lastrowid

    # Field provenance

    def get_field_source(self, table_name: str, entity_key: str, field_name: str) -> Optional[str]:
        row = self.fetchone(
            "SELECT source FROM field_provenance "
            "WHERE table_name = ? AND entity_key = ? AND field_name = ?",
            (table_name, str(entity_key), field_name),
        )
        return row["source"] if row else None

    def set_field_source(self, table_name: str, entity_key: str, field_name: str,
                         source: str, now: Optional[datetime] = None) -> None:
        self.execute(
            '''
            INSERT INTO field_provenance (table_name, entity_key, field_name, source, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(table_name, entity_key, field_name)
            DO UPDATE SET source = excluded.source, updated_at = excluded.updated_at
            ''',
            (table_name, str(entity_key), field_name, source, format_timestamp(now or utc_now())),
        )

    # Append-only audit tables

    def insert_import_conflict(self, npi: Optional[str], table_name: str, entity_key: str,
                               field_name: str, current_value: Any, incoming_value: Any,
                               current_source: str, incoming_source: str,
                               now: Optional[datetime] = None) -> int:
        cursor = self.execute(
            '''
            INSERT INTO import_conflicts
                (npi, table_name, entity_key, field_name, current_value, incoming_value,
                 current_source, incoming_source, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''',
            (npi, table_name, str(entity_key), field_name,
             None if current_value is None else str(current_value),
             None if incoming_value is None else str(incoming_value),
             current_source, incoming_source, format_timestamp(now or utc_now())),
        )
        return cursor.lastrowid

    def count_import_conflicts(self) -> int:
        return self.fetchone("SELECT COUNT(*) AS n FROM import_conflicts")["n"]

    def insert_discrepancy(self, run_id: Optional[int], npi: str, audit_type: str, severity: str,
                           field_name: Optional[str], current_value: Any, expected_value: Any,
                           details: str, now: Optional[datetime] = None) -> int:
        cursor = self.execute(
            '''
            INSERT INTO data_quality_audit
                (run_id, npi, audit_type, severity, field_name, current_value,
                 expected_value, details, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''',
            (run_id, npi, audit_type, severity, field_name,
             None if current_value is None else str(current_value),
             None if expected_value is None else str(expected_value),
             details, format_timestamp(now or utc_now())),
        )
        return cursor.lastrowid

    def resolve_discrepancy(self, discrepancy_id: int, now: Optional[datetime] = None) -> None:
        """Mark a discrepancy resolved (operator action or auto-fix)."""
        with self.transaction():
            self.execute(
                "UPDATE data_quality_audit SET resolved = 1, resolved_at = ? WHERE id = ?",
                (format_timestamp(now or utc_now()), discrepancy_id),
            )

    # Batch run log

    def start_run(self, run_type: str) -> int:
        with self.transaction():
            cursor = self.execute(
                "INSERT INTO sync_runs (run_type, status, started_at) VALUES (?, 'IN_PROGRESS', ?)",
                (run_type, format_timestamp(utc_now())),
            )
        return cursor.lastrowid

    def finish_run(self, run_id: int, status: str, records_processed: int,
                   summary: Dict[str, Any], error_message: Optional[str] = None) -> None:
        with self.transaction():
            self.execute(
                '''
                UPDATE sync_runs
                SET status = ?, completed_at = ?, records_processed = ?,
                    error_message = ?, summary = ?
                WHERE id = ?
                ''',
                (status, format_timestamp(utc_now()), records_processed,
                 error_message, json.dumps(summary, default=str), run_id),
            )
