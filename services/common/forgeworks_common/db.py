import os, sqlite3, json, threading
from typing import Optional

from .errors import InvalidTransition
from .schemas import Job, JobStatus, TRANSITIONS
from .utils import utc_now_iso, stamp

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
  id TEXT PRIMARY KEY,
  status TEXT NOT NULL,
  blueprint_json TEXT NOT NULL,
  received_at TEXT NOT NULL,
  started_at TEXT,
  completed_at TEXT,
  logs_json TEXT NOT NULL,
  outputs_json TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS jobs_status_idx ON jobs(status, received_at);
CREATE TABLE IF NOT EXISTS deploy_cache (
  key TEXT PRIMARY KEY,
  data_json TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
"""

_COLUMNS = "id,status,blueprint_json,received_at,started_at,completed_at,logs_json,outputs_json"


def _connect(db_path: str):
    parent = os.path.dirname(db_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30, isolation_level=None, check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


def init_db(db_path: str):
    conn = _connect(db_path)
    conn.executescript(SCHEMA)
    conn.close()


def _row_to_job(row) -> Job:
    return Job(
        job_id=row[0],
        status=JobStatus(row[1]),
        blueprint=json.loads(row[2] or "{}"),
        received_at=row[3],
        started_at=row[4],
        completed_at=row[5],
        logs=json.loads(row[6] or "[]"),
        outputs=json.loads(row[7] or "{}"),
    )


class JobStore:
    """
    Durable job records, one row per job id.

    Every status change is a compare-and-set run inside BEGIN IMMEDIATE, which
    takes SQLite's write lock, so concurrent workers (threads or processes)
    never both move the same job out of PENDING.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()
        init_db(db_path)

    def create_job(self, job_id: str, blueprint: dict) -> Job:
        now = utc_now_iso()
        logs = [stamp("Job created.")]
        with self._lock:
            conn = _connect(self.db_path)
            try:
                conn.execute(
                    "INSERT INTO jobs(id,status,blueprint_json,received_at,started_at,completed_at,"
                    "logs_json,outputs_json,updated_at) VALUES(?,?,?,?,?,?,?,?,?)",
                    (job_id, JobStatus.PENDING.value, json.dumps(blueprint), now, None, None,
                     json.dumps(logs), json.dumps({}), now),
                )
            finally:
                conn.close()
        return Job(job_id=job_id, status=JobStatus.PENDING, blueprint=blueprint,
                   received_at=now, logs=logs, outputs={})

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            conn = _connect(self.db_path)
            try:
                row = conn.execute(f"SELECT {_COLUMNS} FROM jobs WHERE id=?", (job_id,)).fetchone()
            finally:
                conn.close()
        if not row:
            return None
        return _row_to_job(row)

    def list_jobs(self, status: JobStatus = None, limit: int = 50) -> list:
        sql = f"SELECT {_COLUMNS} FROM jobs"
        args = []
        if status is not None:
            sql += " WHERE status=?"
            args.append(JobStatus(status).value)
        sql += " ORDER BY received_at DESC LIMIT ?"
        args.append(int(limit))
        with self._lock:
            conn = _connect(self.db_path)
            try:
                rows = conn.execute(sql, args).fetchall()
            finally:
                conn.close()
        return [_row_to_job(r) for r in rows]

    def append_log(self, job_id: str, message: str):
        with self._lock:
            conn = _connect(self.db_path)
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute("SELECT logs_json FROM jobs WHERE id=?", (job_id,)).fetchone()
                if not row:
                    conn.execute("ROLLBACK")
                    raise KeyError(job_id)
                logs = json.loads(row[0] or "[]")
                logs.append(stamp(message))
                conn.execute(
                    "UPDATE jobs SET logs_json=?, updated_at=? WHERE id=?",
                    (json.dumps(logs), utc_now_iso(), job_id),
                )
                conn.execute("COMMIT")
            finally:
                conn.close()

    def _transition(self, job_id: str, expected: JobStatus, new: JobStatus, message: str,
                    fields: dict = None) -> bool:
        """Move job_id from `expected` to `new`; False if it is no longer in `expected`."""
        if new not in TRANSITIONS[expected]:
            raise InvalidTransition(f"{expected.value} -> {new.value} is not a valid job transition")
        with self._lock:
            conn = _connect(self.db_path)
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute("SELECT status,logs_json FROM jobs WHERE id=?", (job_id,)).fetchone()
                if not row:
                    conn.execute("ROLLBACK")
                    raise KeyError(job_id)
                if row[0] != expected.value:
                    conn.execute("ROLLBACK")
                    return False
                logs = json.loads(row[1] or "[]")
                logs.append(stamp(message))
                values = dict(fields or {})
                values.update({"status": new.value, "logs_json": json.dumps(logs), "updated_at": utc_now_iso()})
                set_clause = ",".join(f"{k}=?" for k in values)
                conn.execute(
                    f"UPDATE jobs SET {set_clause} WHERE id=? AND status=?",
                    list(values.values()) + [job_id, expected.value],
                )
                conn.execute("COMMIT")
            finally:
                conn.close()
        return True

    def claim_job(self, job_id: str, message: str = "Worker started job.") -> bool:
        return self._transition(job_id, JobStatus.PENDING, JobStatus.RUNNING, message,
                                {"started_at": utc_now_iso()})

    def complete_job(self, job_id: str, outputs: dict, message: str = "Job finished successfully."):
        ok = self._transition(job_id, JobStatus.RUNNING, JobStatus.SUCCESS, message, {
            "completed_at": utc_now_iso(),
            "outputs_json": json.dumps(outputs or {}),
        })
        if not ok:
            raise InvalidTransition(f"Job {job_id} is not RUNNING; cannot mark it SUCCESS")

    def fail_job(self, job_id: str, error: str):
        ok = self._transition(job_id, JobStatus.RUNNING, JobStatus.FAILED, f"ERROR: {error}", {
            "completed_at": utc_now_iso(),
        })
        if not ok:
            raise InvalidTransition(f"Job {job_id} is not RUNNING; cannot mark it FAILED")


def cache_key(target: str, name: str) -> str:
    return f"zip_{target}_{name}"


def operation_key(target: str, name: str) -> str:
    return f"deploy_{target}_{name}"


class DeployCache:
    """Packaged source bundles and last build operations, keyed by string."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()
        init_db(db_path)

    def get(self, key: str) -> Optional[dict]:
        with self._lock:
            conn = _connect(self.db_path)
            try:
                row = conn.execute("SELECT data_json FROM deploy_cache WHERE key=?", (key,)).fetchone()
            finally:
                conn.close()
        if not row:
            return None
        return json.loads(row[0] or "{}")

    def put(self, key: str, data: dict):
        with self._lock:
            conn = _connect(self.db_path)
            try:
                conn.execute(
                    "INSERT INTO deploy_cache(key,data_json,updated_at) VALUES(?,?,?) "
                    "ON CONFLICT(key) DO UPDATE SET data_json=excluded.data_json, updated_at=excluded.updated_at",
                    (key, json.dumps(data), utc_now_iso()),
                )
            finally:
                conn.close()
