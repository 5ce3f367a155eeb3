"""
SQLite database module for CRM sync state.

Provides persistent storage for:
- OAuth credentials (token store, one active credential per provider)
- Synced entities (contacts, exchanges, tasks) keyed by CRM external id
- Sync run history (audit log) with per-record details
"""

import json
import sqlite3
import threading
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

# Entity tables share bookkeeping columns; mapped columns are added with
# ensure_columns() as the mapping tables require them.
ENTITY_TABLES = ("contacts", "exchanges", "tasks")

_ENTITY_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS {table} (
    id INTEGER PRIMARY KEY,
    external_id TEXT,
    raw_payload TEXT,
    mapping_version TEXT,
    last_synced_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(external_id)
);

CREATE INDEX IF NOT EXISTS idx_{table}_external_id ON {table}(external_id);
"""

SCHEMA = (
    """
CREATE TABLE IF NOT EXISTS oauth_tokens (
    id INTEGER PRIMARY KEY,
    provider TEXT NOT NULL,
    access_token TEXT NOT NULL,
    refresh_token TEXT,
    token_type TEXT NOT NULL DEFAULT 'Bearer',
    expires_at TEXT NOT NULL,
    scope TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_used_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_oauth_tokens_active
    ON oauth_tokens(provider, is_active);

CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY,
    sync_type TEXT NOT NULL,
    strategy TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    modified_since TEXT,
    pages_fetched INTEGER NOT NULL DEFAULT 0,
    records_processed INTEGER NOT NULL DEFAULT 0,
    records_created INTEGER NOT NULL DEFAULT 0,
    records_updated INTEGER NOT NULL DEFAULT 0,
    records_failed INTEGER NOT NULL DEFAULT 0,
    errors TEXT NOT NULL DEFAULT '[]',
    error_message TEXT,
    triggered_by TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_runs_type_status
    ON sync_runs(sync_type, status, completed_at);

CREATE TABLE IF NOT EXISTS sync_run_details (
    id INTEGER PRIMARY KEY,
    sync_run_id INTEGER NOT NULL REFERENCES sync_runs(id),
    external_id TEXT,
    local_id INTEGER,
    action TEXT NOT NULL,
    message TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_run_details_run
    ON sync_run_details(sync_run_id);
"""
    + "".join(_ENTITY_TABLE_SQL.format(table=t) for t in ENTITY_TABLES)
)

# sync_runs columns writable through record_sync_run()
SYNC_RUN_COLUMNS = (
    "sync_type",
    "strategy",
    "status",
    "started_at",
    "completed_at",
    "modified_since",
    "pages_fetched",
    "records_processed",
    "records_created",
    "records_updated",
    "records_failed",
    "errors",
    "error_message",
    "triggered_by",
)

# Columns owned by the store; never written from a record
_RESERVED_COLUMNS = frozenset({"id", "created_at", "updated_at"})


class StoreError(Exception):
    """Raised when a store operation fails."""

    pass


class UpsertConflictError(StoreError):
    """Raised when a record cannot be written because it conflicts with the schema or existing rows."""

    pass


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of an upsert: the local row id and whether it was inserted."""

    local_id: int
    created: bool


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string, the store's timestamp format."""
    return datetime.now(timezone.utc).isoformat()


def _to_text_timestamp(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    return value


class SyncDatabase:
    """
    SQLite database manager for the CRM sync engine.

    Provides methods for:
    - Storing and rotating OAuth credentials
    - Upserting and querying synced entities
    - Recording sync runs and their per-record details

    Usage:
        db = SyncDatabase('/path/to/sync.db')
        db.initialize()

        # Or use in-memory for testing:
        db = SyncDatabase(':memory:')
        db.initialize()
    """

    def __init__(self, db_path: str):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
        """
        self.db_path = str(db_path)
        self._shared_connection: Optional[sqlite3.Connection] = None
        # Serializes use of the shared in-memory connection across threads
        self._lock = threading.RLock()

    @property
    def is_memory(self) -> bool:
        return self.db_path == ":memory:"

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        For in-memory databases, returns a shared connection to ensure
        schema persists across operations. For file databases, creates
        a new connection each time.
        """
        if self.is_memory:
            if self._shared_connection is None:
                self._shared_connection = sqlite3.connect(
                    ":memory:", check_same_thread=False
                )
                self._shared_connection.row_factory = sqlite3.Row
            return self._shared_connection

        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Commits on success and rolls back on error.

        Yields:
            sqlite3.Connection: Database connection

        Usage:
            with db.connection() as conn:
                conn.execute("SELECT * FROM sync_runs")
        """
        if self.is_memory:
            with self._lock:
                conn = self._get_connection()
                try:
                    yield conn
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
            return

        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """
        Initialize the database schema.

        Creates all tables if they don't exist.

        Raises:
            StoreError: If the database cannot be opened or created
        """
        try:
            with self.connection() as conn:
                conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to initialize database {self.db_path}: {e}") from e

    def close(self) -> None:
        """Close the shared in-memory connection, if any."""
        with self._lock:
            if self._shared_connection is not None:
                self._shared_connection.close()
                self._shared_connection = None

    # =========================================================================
    # Token Store Operations
    # =========================================================================

    def get_active_credential(self, provider: str) -> Optional[dict[str, Any]]:
        """
        Get the active OAuth credential for a provider.

        Args:
            provider: Provider name (e.g., 'practicepanther')

        Returns:
            Dictionary with the credential row, or None if none is active
        """
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM oauth_tokens
                WHERE provider = ? AND is_active = 1
                ORDER BY id DESC
                LIMIT 1
                """,
                (provider,),
            ).fetchone()
            return dict(row) if row else None

    def store_credential(
        self,
        provider: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: datetime,
        token_type: str = "Bearer",
        scope: Optional[str] = None,
    ) -> int:
        """
        Store a new active credential, deactivating any previous ones.

        Both steps run in a single transaction so there is never more than
        one active credential per provider.

        Returns:
            The id of the new credential row
        """
        now = utc_now()
        with self.connection() as conn:
            conn.execute(
                """
                UPDATE oauth_tokens SET is_active = 0, updated_at = ?
                WHERE provider = ? AND is_active = 1
                """,
                (now, provider),
            )
            cursor = conn.execute(
                """
                INSERT INTO oauth_tokens (
                    provider, access_token, refresh_token, token_type,
                    expires_at, scope, is_active, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
                """,
                (
                    provider,
                    access_token,
                    refresh_token,
                    token_type,
                    _to_text_timestamp(expires_at),
                    scope,
                    now,
                    now,
                ),
            )
            return int(cursor.lastrowid)

    def deactivate_credentials(self, provider: str) -> int:
        """
        Deactivate every active credential of a provider.

        Returns:
            Number of credentials deactivated
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE oauth_tokens SET is_active = 0, updated_at = ?
                WHERE provider = ? AND is_active = 1
                """,
                (utc_now(), provider),
            )
            return cursor.rowcount

    def touch_credential(self, credential_id: int) -> None:
        """Record that a credential was just handed out."""
        with self.connection() as conn:
            conn.execute(
                "UPDATE oauth_tokens SET last_used_at = ? WHERE id = ?",
                (utc_now(), credential_id),
            )

    def get_credential_count(self, provider: Optional[str] = None) -> int:
        """Count stored credentials (active or not)."""
        with self.connection() as conn:
            if provider is None:
                row = conn.execute("SELECT COUNT(*) FROM oauth_tokens").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM oauth_tokens WHERE provider = ?",
                    (provider,),
                ).fetchone()
            return row[0] if row else 0

    # =========================================================================
    # Entity Store Operations
    # =========================================================================

    def _check_table(self, table: str) -> None:
        if table not in ENTITY_TABLES:
            raise StoreError(f"Unknown table: {table}")

    def table_columns(self, table: str) -> set[str]:
        """
        Get the column names of an entity table.

        Raises:
            StoreError: If the table is not an entity table
        """
        self._check_table(table)
        with self.connection() as conn:
            rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
            return {row["name"] for row in rows}

    def ensure_columns(self, table: str, columns: dict[str, str]) -> list[str]:
        """
        Add missing columns to an entity table.

        Args:
            table: Entity table name
            columns: Column name to SQLite declared type (TEXT, REAL, INTEGER)

        Returns:
            Names of the columns that were added
        """
        existing = self.table_columns(table)
        added: list[str] = []
        with self.connection() as conn:
            for name, sql_type in columns.items():
                if name in existing:
                    continue
                if not name.isidentifier() or sql_type not in ("TEXT", "REAL", "INTEGER"):
                    raise StoreError(f"Invalid column definition: {name} {sql_type}")
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {sql_type}")
                added.append(name)
        return added

    def upsert(
        self, table: str, match_key: str, record: dict[str, Any]
    ) -> UpsertResult:
        """
        Insert or update an entity row matched on a key column.

        Columns not present in ``record`` are left untouched on update.

        Args:
            table: Entity table name
            match_key: Column used to find the existing row (e.g. 'external_id')
            record: Column values to write; must include ``match_key``

        Returns:
            UpsertResult with the local id and whether the row was inserted

        Raises:
            UpsertConflictError: If the record names unknown columns or
                violates a table constraint
            StoreError: For any other database failure
        """
        columns = self.table_columns(table)

        if match_key not in columns:
            raise UpsertConflictError(f"Unknown match key '{match_key}' for {table}")
        if record.get(match_key) is None:
            raise UpsertConflictError(f"Record has no value for match key '{match_key}'")

        unknown = sorted(set(record) - columns)
        if unknown:
            raise UpsertConflictError(
                f"Unknown columns for {table}: {', '.join(unknown)}"
            )

        values = {
            k: _to_text_timestamp(v)
            for k, v in record.items()
            if k not in _RESERVED_COLUMNS
        }
        now = utc_now()

        try:
            with self.connection() as conn:
                existing = conn.execute(
                    f"SELECT id FROM {table} WHERE {match_key} = ?",
                    (values[match_key],),
                ).fetchone()

                if existing:
                    local_id = int(existing["id"])
                    assignments = [f"{col} = ?" for col in values]
                    assignments.append("updated_at = ?")
                    conn.execute(
                        f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ?",
                        (*values.values(), now, local_id),
                    )
                    return UpsertResult(local_id=local_id, created=False)

                insert_cols = [*values, "created_at", "updated_at"]
                placeholders = ", ".join("?" for _ in insert_cols)
                cursor = conn.execute(
                    f"INSERT INTO {table} ({', '.join(insert_cols)}) "
                    f"VALUES ({placeholders})",
                    (*values.values(), now, now),
                )
                return UpsertResult(local_id=int(cursor.lastrowid), created=True)
        except sqlite3.IntegrityError as e:
            raise UpsertConflictError(f"Constraint violation in {table}: {e}") from e
        except sqlite3.Error as e:
            raise StoreError(f"Failed to upsert into {table}: {e}") from e

    def insert(self, table: str, record: dict[str, Any]) -> int:
        """
        Insert an entity row without an external id (e.g. a locally created record).

        Returns:
            The new local id
        """
        columns = self.table_columns(table)
        unknown = sorted(set(record) - columns)
        if unknown:
            raise UpsertConflictError(
                f"Unknown columns for {table}: {', '.join(unknown)}"
            )

        values = {k: _to_text_timestamp(v) for k, v in record.items()}
        now = utc_now()
        insert_cols = [*values, "created_at", "updated_at"]
        placeholders = ", ".join("?" for _ in insert_cols)
        try:
            with self.connection() as conn:
                cursor = conn.execute(
                    f"INSERT INTO {table} ({', '.join(insert_cols)}) "
                    f"VALUES ({placeholders})",
                    (*values.values(), now, now),
                )
                return int(cursor.lastrowid)
        except sqlite3.IntegrityError as e:
            raise UpsertConflictError(f"Constraint violation in {table}: {e}") from e

    def query(
        self,
        table: str,
        filter: Optional[dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Query entity rows by column equality.

        A ``None`` filter value matches NULL.

        Args:
            table: Entity table name
            filter: Column to value conditions, combined with AND
            limit: Maximum number of rows

        Returns:
            List of row dictionaries ordered by local id
        """
        columns = self.table_columns(table)
        filter = filter or {}

        unknown = sorted(set(filter) - columns)
        if unknown:
            raise StoreError(f"Unknown columns for {table}: {', '.join(unknown)}")

        clauses: list[str] = []
        params: list[Any] = []
        for col, value in filter.items():
            if value is None:
                clauses.append(f"{col} IS NULL")
            else:
                clauses.append(f"{col} = ?")
                params.append(_to_text_timestamp(value))

        sql = f"SELECT * FROM {table}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self.connection() as conn:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]

    def get_by_external_id(
        self, table: str, external_id: str
    ) -> Optional[dict[str, Any]]:
        """Get an entity row by its CRM id."""
        rows = self.query(table, {"external_id": external_id}, limit=1)
        return rows[0] if rows else None

    def link_external_id(self, table: str, local_id: int, external_id: str) -> None:
        """
        Attach a CRM id to an existing local row that has none.

        Raises:
            UpsertConflictError: If the row is already linked or the CRM id
                belongs to another row
        """
        self._check_table(table)
        try:
            with self.connection() as conn:
                cursor = conn.execute(
                    f"""
                    UPDATE {table} SET external_id = ?, updated_at = ?
                    WHERE id = ? AND external_id IS NULL
                    """,
                    (external_id, utc_now(), local_id),
                )
                if cursor.rowcount == 0:
                    raise UpsertConflictError(
                        f"Row {local_id} in {table} is missing or already linked"
                    )
        except sqlite3.IntegrityError as e:
            raise UpsertConflictError(
                f"External id {external_id} already linked in {table}"
            ) from e

    def count_rows(self, table: str) -> int:
        """Count rows in an entity table."""
        self._check_table(table)
        with self.connection() as conn:
            row = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
            return row[0] if row else 0

    # =========================================================================
    # Audit Log Operations
    # =========================================================================

    def record_sync_run(self, run: dict[str, Any]) -> int:
        """
        Insert or update a sync run.

        A run dictionary with an ``id`` updates that row; otherwise a new row
        is inserted. ``errors`` may be a list and is stored as JSON.

        Returns:
            The sync run id
        """
        values: dict[str, Any] = {}
        for col in SYNC_RUN_COLUMNS:
            if col in run:
                value = run[col]
                if col == "errors" and not isinstance(value, str):
                    value = json.dumps(list(value or []))
                values[col] = _to_text_timestamp(value)

        run_id = run.get("id")
        with self.connection() as conn:
            if run_id is not None:
                assignments = ", ".join(f"{col} = ?" for col in values)
                cursor = conn.execute(
                    f"UPDATE sync_runs SET {assignments} WHERE id = ?",
                    (*values.values(), run_id),
                )
                if cursor.rowcount == 0:
                    raise StoreError(f"Sync run {run_id} not found")
                return int(run_id)

            cols = list(values)
            cursor = conn.execute(
                f"INSERT INTO sync_runs ({', '.join(cols)}) "
                f"VALUES ({', '.join('?' for _ in cols)})",
                tuple(values.values()),
            )
            return int(cursor.lastrowid)

    def append_sync_detail(self, sync_run_id: int, detail: dict[str, Any]) -> None:
        """
        Append a per-record entry to a sync run.

        Args:
            sync_run_id: Owning sync run
            detail: Dictionary with ``action`` and optionally ``external_id``,
                    ``local_id`` and ``message``
        """
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_run_details (
                    sync_run_id, external_id, local_id, action, message, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    sync_run_id,
                    detail.get("external_id"),
                    detail.get("local_id"),
                    detail["action"],
                    detail.get("message"),
                    utc_now(),
                ),
            )

    @staticmethod
    def _run_row(row: sqlite3.Row) -> dict[str, Any]:
        run = dict(row)
        try:
            run["errors"] = json.loads(run.get("errors") or "[]")
        except json.JSONDecodeError:
            run["errors"] = [run["errors"]]
        return run

    def get_sync_run(self, sync_run_id: int) -> Optional[dict[str, Any]]:
        """Get a sync run by id."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM sync_runs WHERE id = ?", (sync_run_id,)
            ).fetchone()
            return self._run_row(row) if row else None

    def get_last_successful_run(self, sync_type: str) -> Optional[dict[str, Any]]:
        """
        Get the most recently completed run of a sync type.

        Args:
            sync_type: Entity type name (contacts, matters, tasks)

        Returns:
            The run dictionary, or None if the type never completed a run
        """
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM sync_runs
                WHERE sync_type = ? AND status = 'completed'
                    AND completed_at IS NOT NULL
                ORDER BY completed_at DESC, id DESC
                LIMIT 1
                """,
                (sync_type,),
            ).fetchone()
            return self._run_row(row) if row else None

    def get_recent_sync_runs(
        self, limit: int = 10, sync_type: Optional[str] = None
    ) -> list[dict[str, Any]]:
        """Get the most recent sync runs, newest first."""
        with self.connection() as conn:
            if sync_type is None:
                rows = conn.execute(
                    "SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM sync_runs WHERE sync_type = ? "
                    "ORDER BY id DESC LIMIT ?",
                    (sync_type, limit),
                ).fetchall()
            return [self._run_row(row) for row in rows]

    def get_sync_run_details(self, sync_run_id: int) -> list[dict[str, Any]]:
        """Get the per-record entries of a sync run in insertion order."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_run_details WHERE sync_run_id = ? ORDER BY id",
                (sync_run_id,),
            ).fetchall()
            return [dict(row) for row in rows]
