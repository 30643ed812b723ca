"""DuckDB-based job ledger.

Every state transition of an ingestion or delta-sync job is appended to a
DuckDB table so operators can answer "when was this repository last
indexed, and did it fail?" after the in-memory job records are gone.

Database Schema:
    job_events table:
        - id: Auto-incrementing primary key
        - job_id: Job identifier
        - repository_url: Repository the job works on
        - kind: 'full' or 'delta'
        - state: State entered
        - detail: Optional error text / summary
        - timestamp: When the transition happened (UTC)

Thread Safety:
    A DuckDB connection is not thread-safe, so every statement runs under
    ``_lock``.

Usage:
    ledger = JobAuditService("repoguard_jobs.duckdb")
    ledger.record(JobAuditEntry(job_id="j1", repository_url=url, kind="full", state="done"))
    history = ledger.get_events(repository_url=url)
"""
import logging
import threading
from typing import List, Optional

import duckdb

from .schemas import JobAuditEntry

logger = logging.getLogger(__name__)

_COLUMNS = "job_id, repository_url, kind, state, detail, timestamp"


class JobAuditService:
    """Append-only ledger of job state transitions backed by DuckDB.

    Args:
        db_path: Path to the DuckDB file, or ``":memory:"``.
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.Lock()
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create the sequence and table if they don't exist (idempotent)."""
        with self._lock:
            conn = self._get_connection()
            conn.execute("CREATE SEQUENCE IF NOT EXISTS job_events_seq START 1")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS job_events (
                    id INTEGER DEFAULT nextval('job_events_seq') PRIMARY KEY,
                    job_id VARCHAR NOT NULL,
                    repository_url VARCHAR NOT NULL,
                    kind VARCHAR NOT NULL,
                    state VARCHAR NOT NULL,
                    detail VARCHAR,
                    timestamp TIMESTAMP NOT NULL
                )
            """)

    def record(self, entry: JobAuditEntry) -> JobAuditEntry:
        """Append *entry* to the ledger and return it."""
        with self._lock:
            self._get_connection().execute(
                f"INSERT INTO job_events ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                [
                    entry.job_id,
                    entry.repository_url,
                    entry.kind,
                    entry.state,
                    entry.detail,
                    entry.timestamp.replace(tzinfo=None),
                ],
            )
        return entry

    def get_events(
        self,
        job_id: Optional[str] = None,
        repository_url: Optional[str] = None,
        limit: int = 100,
    ) -> List[JobAuditEntry]:
        """Return transitions in recording order, optionally filtered.

        Args:
            job_id:         Only this job's transitions.
            repository_url: Only transitions of jobs on this repository.
            limit:          Maximum number of rows.
        """
        clauses, params = [], []
        if job_id:
            clauses.append("job_id = ?")
            params.append(job_id)
        if repository_url:
            clauses.append("repository_url = ?")
            params.append(repository_url)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        with self._lock:
            rows = self._get_connection().execute(
                f"SELECT {_COLUMNS} FROM job_events {where} ORDER BY id LIMIT ?",
                params,
            ).fetchall()

        return [
            JobAuditEntry(
                job_id=row[0],
                repository_url=row[1],
                kind=row[2],
                state=row[3],
                detail=row[4],
                timestamp=row[5],
            )
            for row in rows
        ]

    def last_state(self, repository_url: str, kind: Optional[str] = None) -> Optional[JobAuditEntry]:
        """Most recent transition recorded for *repository_url* (optionally of one job kind)."""
        sql = f"SELECT {_COLUMNS} FROM job_events WHERE repository_url = ?"
        params: list = [repository_url]
        if kind:
            sql += " AND kind = ?"
            params.append(kind)
        sql += " ORDER BY id DESC LIMIT 1"
        with self._lock:
            row = self._get_connection().execute(sql, params).fetchone()
        if row is None:
            return None
        return JobAuditEntry(
            job_id=row[0], repository_url=row[1], kind=row[2],
            state=row[3], detail=row[4], timestamp=row[5],
        )

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
