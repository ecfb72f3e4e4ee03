"""SQLite-backed job storage with optimistic versioning."""

from __future__ import annotations

import contextlib
import sqlite3
from pathlib import Path
from threading import RLock

from milestone_escrow_service.services.models import Job, now_iso


class DuplicateJobError(Exception):
    """Raised when attempting to insert a job with a duplicate job_id."""


class VersionConflictError(Exception):
    """Raised when a save finds the stored version differs from the expected one."""

    def __init__(self, job_id: str, expected_version: int) -> None:
        super().__init__(
            f"Job {job_id} was modified concurrently (expected version {expected_version})"
        )
        self.job_id = job_id
        self.expected_version = expected_version


class JobStore:
    """
    SQLite-backed storage for Job aggregates.

    Each job is stored as one JSON document (milestones and votes embedded)
    next to the indexed columns used for filtering. Every write checks and
    increments the row's version, so a read-modify-write that raced another
    writer fails with VersionConflictError instead of losing the other update.
    """

    _JOB_SELECT_SQL = "SELECT document, version FROM jobs"

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    client_id TEXT NOT NULL,
                    freelancer_id TEXT,
                    status TEXT NOT NULL DEFAULT 'draft',
                    document TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_jobs_client ON jobs(client_id);
                CREATE INDEX IF NOT EXISTS idx_jobs_freelancer ON jobs(freelancer_id);
                CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
                """
            )
            self._db.commit()

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        job = Job.model_validate_json(row["document"])
        job.version = int(row["version"])
        return job

    def insert_job(self, job: Job) -> Job:
        """Insert a new job at version 1 and return the stored copy."""
        stored = job.model_copy(deep=True, update={"version": 1})

        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                self._db.execute(
                    """
                    INSERT INTO jobs (
                        job_id, client_id, freelancer_id, status,
                        document, version, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        stored.job_id,
                        stored.client_id,
                        stored.freelancer_id,
                        stored.status.value,
                        stored.model_dump_json(),
                        stored.version,
                        stored.created_at,
                        stored.updated_at,
                    ),
                )
                self._db.commit()
            except sqlite3.IntegrityError as exc:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                if "unique" in str(exc).lower():
                    raise DuplicateJobError(
                        f"A job with job_id={job.job_id} already exists"
                    ) from exc
                raise
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
        return stored

    def get_job(self, job_id: str) -> Job | None:
        """Fetch a job by ID."""
        with self._lock:
            cursor = self._db.execute(self._JOB_SELECT_SQL + " WHERE job_id = ?", (job_id,))
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_job(row)

    def save_job(self, job: Job, expected_version: int) -> Job:
        """
        Persist a mutated job if the stored version still equals expected_version.

        Returns the stored copy with its new version.

        Raises:
            VersionConflictError: If another writer saved (or deleted) the job first
        """
        stored = job.model_copy(
            deep=True,
            update={"version": expected_version + 1, "updated_at": now_iso()},
        )

        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                cursor = self._db.execute(
                    """
                    UPDATE jobs
                    SET freelancer_id = ?, status = ?, document = ?, version = ?, updated_at = ?
                    WHERE job_id = ? AND version = ?
                    """,
                    (
                        stored.freelancer_id,
                        stored.status.value,
                        stored.model_dump_json(),
                        stored.version,
                        stored.updated_at,
                        stored.job_id,
                        expected_version,
                    ),
                )
                if cursor.rowcount == 0:
                    self._db.execute("ROLLBACK")
                    raise VersionConflictError(job.job_id, expected_version)
                self._db.commit()
            except VersionConflictError:
                raise
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
        return stored

    def delete_job(self, job_id: str, expected_version: int) -> None:
        """
        Delete a job if the stored version still equals expected_version.

        Raises:
            VersionConflictError: If the job changed or disappeared since it was read
        """
        with self._lock:
            cursor = self._db.execute(
                "DELETE FROM jobs WHERE job_id = ? AND version = ?",
                (job_id, expected_version),
            )
            self._db.commit()
        if cursor.rowcount == 0:
            raise VersionConflictError(job_id, expected_version)

    def list_jobs(
        self,
        status: str | None,
        client_id: str | None,
        freelancer_id: str | None,
        skills: list[str] | None,
    ) -> list[Job]:
        """List jobs, newest first, with optional filters. Skills match if any overlaps."""
        query = self._JOB_SELECT_SQL
        clauses: list[str] = []
        params: list[object] = []

        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if client_id is not None:
            clauses.append("client_id = ?")
            params.append(client_id)
        if freelancer_id is not None:
            clauses.append("freelancer_id = ?")
            params.append(freelancer_id)

        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)

        query += " ORDER BY created_at DESC"

        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        jobs = [self._row_to_job(row) for row in rows]

        if skills:
            wanted = set(skills)
            jobs = [job for job in jobs if wanted.intersection(job.skills)]
        return jobs

    def count_jobs(self) -> int:
        """Count total jobs."""
        with self._lock:
            row = self._db.execute("SELECT COUNT(*) FROM jobs").fetchone()
        return int(row[0]) if row is not None else 0

    def count_jobs_by_status(self) -> dict[str, int]:
        """Count jobs grouped by status."""
        with self._lock:
            rows = self._db.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status").fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
