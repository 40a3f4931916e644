"""SQLite backed job store used by the relay dispatcher.

Every public method opens its own connection, so a single :class:`JobStore`
can be shared by the SMTP listener, the mailbox poller and the dispatch loop,
and several processes may point at the same file. The claim operation runs
inside a ``BEGIN IMMEDIATE`` transaction: SQLite grants the write lock to one
connection at a time, so two claimers can never select the same pending row.
"""

from __future__ import annotations

import json
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

from .models import Job, JobStatus

JOB_COLUMNS = ("id", "status", "attempts", "next_run_at", "created_at", "payload", "result")


def now_ms() -> int:
    """Return the current time as epoch milliseconds."""
    return int(time.time() * 1000)


class JobStore:
    """Durable job table: insert, atomic claim and state transitions."""

    def __init__(self, db_path: str = "/data/db.sqlite", busy_timeout: float = 30.0):
        """Persist jobs to the given SQLite file."""
        self.db_path = db_path
        self.busy_timeout = busy_timeout

    def _connect(self, **kwargs: Any) -> aiosqlite.Connection:
        return aiosqlite.connect(self.db_path, timeout=self.busy_timeout, **kwargs)

    async def init_db(self) -> None:
        """Create the schema if needed and switch the database to WAL mode."""
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    next_run_at INTEGER NOT NULL,
                    created_at INTEGER NOT NULL,
                    payload TEXT,
                    result TEXT
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(status, next_run_at, created_at)"
            )
            await db.commit()

    @staticmethod
    def _decode_row(row: Tuple[Any, ...], columns: Sequence[str]) -> Job:
        return Job.model_validate(dict(zip(columns, row)))

    # Ingestion ----------------------------------------------------------------
    async def insert_job(
        self,
        job_id: str,
        payload: Dict[str, Any],
        *,
        created_at: Optional[int] = None,
        next_run_at: Optional[int] = None,
    ) -> bool:
        """Insert a pending job, returning ``False`` when the id already exists.

        A duplicate id is never overwritten: redelivery of the same remote
        message id is a no-op.
        """
        created = created_at if created_at is not None else now_ms()
        async with self._connect() as db:
            cursor = await db.execute(
                """
                INSERT INTO jobs (id, status, attempts, next_run_at, created_at, payload, result)
                VALUES (?, ?, 0, ?, ?, ?, NULL)
                ON CONFLICT(id) DO NOTHING
                """,
                (
                    job_id,
                    JobStatus.PENDING.value,
                    next_run_at if next_run_at is not None else created,
                    created,
                    json.dumps(payload),
                ),
            )
            await db.commit()
            return cursor.rowcount == 1

    # Claim --------------------------------------------------------------------
    async def claim_batch(self, limit: int, now: Optional[int] = None) -> List[Job]:
        """Atomically move up to ``limit`` eligible jobs to ``processing``.

        Eligible means ``status = 'pending' AND next_run_at <= now``; jobs are
        returned oldest first. Selection and transition share one write
        transaction.
        """
        if limit <= 0:
            return []
        now_ts = now if now is not None else now_ms()
        async with self._connect(isolation_level=None) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                async with db.execute(
                    f"""
                    SELECT {", ".join(JOB_COLUMNS)}
                    FROM jobs
                    WHERE status = ? AND next_run_at <= ?
                    ORDER BY created_at ASC, id ASC
                    LIMIT ?
                    """,
                    (JobStatus.PENDING.value, now_ts, limit),
                ) as cur:
                    rows = await cur.fetchall()
                    cols = [c[0] for c in cur.description]
                if rows:
                    ids = [row[0] for row in rows]
                    placeholders = ",".join("?" for _ in ids)
                    await db.execute(
                        f"UPDATE jobs SET status = ? WHERE id IN ({placeholders}) AND status = ?",
                        (JobStatus.PROCESSING.value, *ids, JobStatus.PENDING.value),
                    )
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise
        jobs = [self._decode_row(row, cols) for row in rows]
        return [job.model_copy(update={"status": JobStatus.PROCESSING}) for job in jobs]

    # Transitions --------------------------------------------------------------
    async def _update(self, job_id: str, status: JobStatus, attempts: int, next_run_at: int, result: Optional[str]) -> bool:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE jobs
                SET status = ?, attempts = MAX(attempts, ?), next_run_at = ?, result = ?
                WHERE id = ?
                """,
                (status.value, attempts, next_run_at, result, job_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def mark_done(self, job_id: str, attempts: int, result: Optional[str] = None) -> bool:
        """Record terminal success. ``next_run_at`` becomes the completion time."""
        return await self._update(job_id, JobStatus.DONE, attempts, now_ms(), result)

    async def mark_retry(self, job_id: str, attempts: int, next_run_at: int, result: Optional[str]) -> bool:
        """Return a job to ``pending`` with its next eligible time."""
        return await self._update(job_id, JobStatus.PENDING, attempts, next_run_at, result)

    async def mark_error(self, job_id: str, attempts: int, result: Optional[str]) -> bool:
        """Park a job in ``error`` for operator inspection."""
        return await self._update(job_id, JobStatus.ERROR, attempts, now_ms(), result)

    async def reset_abandoned(self) -> int:
        """Return every ``processing`` job to ``pending`` (crash recovery)."""
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE jobs SET status = ? WHERE status = ?",
                (JobStatus.PENDING.value, JobStatus.PROCESSING.value),
            )
            await db.commit()
            return cursor.rowcount

    async def release(self, ids: Iterable[str]) -> int:
        """Return specific ``processing`` jobs to ``pending`` without touching attempts."""
        id_list = [jid for jid in ids if jid]
        if not id_list:
            return 0
        async with self._connect() as db:
            cursor = await db.execute(
                f"UPDATE jobs SET status = ? WHERE status = ? AND id IN ({','.join('?' for _ in id_list)})",
                (JobStatus.PENDING.value, JobStatus.PROCESSING.value, *id_list),
            )
            await db.commit()
            return cursor.rowcount

    async def reset_errors(self, ids: Optional[Iterable[str]] = None, now: Optional[int] = None) -> int:
        """Make ``error`` jobs claimable again. Attempts are preserved."""
        now_ts = now if now is not None else now_ms()
        query = "UPDATE jobs SET status = ?, next_run_at = ? WHERE status = ?"
        params: List[Any] = [JobStatus.PENDING.value, now_ts, JobStatus.ERROR.value]
        if ids is not None:
            id_list = [jid for jid in ids if jid]
            if not id_list:
                return 0
            query += f" AND id IN ({','.join('?' for _ in id_list)})"
            params.extend(id_list)
        async with self._connect() as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount

    async def delete_job(self, job_id: str) -> bool:
        """Remove a job regardless of its state."""
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def purge(self, status: JobStatus, older_than: int) -> int:
        """Delete finished jobs (``done`` or ``error``) finalized before ``older_than``."""
        if status not in (JobStatus.DONE, JobStatus.ERROR):
            raise ValueError(f"Refusing to purge jobs in status '{status.value}'")
        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM jobs WHERE status = ? AND next_run_at < ?",
                (status.value, older_than),
            )
            await db.commit()
            return cursor.rowcount

    # Inspection ---------------------------------------------------------------
    async def get_job(self, job_id: str) -> Optional[Job]:
        """Fetch a single job or ``None``."""
        async with self._connect() as db:
            async with db.execute(
                f"SELECT {', '.join(JOB_COLUMNS)} FROM jobs WHERE id = ?", (job_id,)
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._decode_row(row, cols)

    async def list_jobs(self, *, status: Optional[JobStatus] = None, limit: Optional[int] = None) -> List[Job]:
        """Return jobs for inspection purposes, oldest first."""
        query = f"SELECT {', '.join(JOB_COLUMNS)} FROM jobs"
        params: List[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY created_at ASC, id ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        async with self._connect() as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_row(row, cols) for row in rows]

    async def count_by_status(self) -> Dict[str, int]:
        """Return ``{status: count}`` with every status present."""
        counts = {status.value: 0 for status in JobStatus}
        async with self._connect() as db:
            async with db.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status") as cur:
                for status, count in await cur.fetchall():
                    counts[status] = int(count)
        return counts

    async def count_active(self) -> int:
        """Return the number of jobs still awaiting a final outcome."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT COUNT(*) FROM jobs WHERE status IN (?, ?)",
                (JobStatus.PENDING.value, JobStatus.PROCESSING.value),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)
