import json
import os
import sqlite3
import threading
import uuid
from datetime import datetime, timezone

DB_PATH = os.environ.get("OFFICENET_DB_PATH", "/data/officenet.db")
DB_URL = (os.environ.get("OFFICENET_DATABASE_URL") or os.environ.get("DATABASE_URL") or "").strip()

_pg_pool = None
_pg_pool_lock = threading.Lock()

SCHEDULE_COLUMNS = ("id", "office_id", "isp", "time_slot", "is_active", "last_run", "next_run", "created_at")
OFFICE_COLUMNS = ("id", "unit_office", "sub_unit_office", "location", "section", "isp", "isps", "section_isps")


def _use_postgres():
    url = (DB_URL or "").lower()
    return url.startswith("postgres://") or url.startswith("postgresql://")


def _translate_qmarks(sql):
    # sqlite uses "?" params; psycopg2 expects "%s".
    # Replace only outside single-quoted string literals.
    out = []
    in_single = False
    i = 0
    while i < len(sql):
        ch = sql[i]
        if ch == "'":
            out.append(ch)
            if in_single and i + 1 < len(sql) and sql[i + 1] == "'":
                out.append("'")
                i += 2
                continue
            in_single = not in_single
            i += 1
            continue
        if ch == "?" and not in_single:
            out.append("%s")
        else:
            out.append(ch)
        i += 1
    return "".join(out)


class _NoResult:
    def fetchone(self):
        return None

    def fetchall(self):
        return []


class _PGCursorResult:
    def __init__(self, owner, cursor):
        self._owner = owner
        self._cursor = cursor

    def _close(self):
        if not self._cursor:
            return
        try:
            self._cursor.close()
        finally:
            self._owner._discard_cursor(self._cursor)
            self._cursor = None

    def fetchone(self):
        try:
            return self._cursor.fetchone()
        finally:
            self._close()

    def fetchall(self):
        try:
            return self._cursor.fetchall()
        finally:
            self._close()


class _PGConn:
    def __init__(self, pool, conn):
        self._pool = pool
        self._conn = conn
        self._open_cursors = []

    def _discard_cursor(self, cursor):
        try:
            self._open_cursors.remove(cursor)
        except ValueError:
            pass

    def __enter__(self):
        self._conn.__enter__()
        return self

    def __exit__(self, exc_type, exc, tb):
        return self._conn.__exit__(exc_type, exc, tb)

    def execute(self, sql, params=None):
        from psycopg2.extras import RealDictCursor

        q = _translate_qmarks(str(sql))
        cur = self._conn.cursor(cursor_factory=RealDictCursor)
        try:
            cur.execute(q, tuple(params or ()))
            if cur.description is None:
                cur.close()
                return _NoResult()
            self._open_cursors.append(cur)
            return _PGCursorResult(self, cur)
        except Exception:
            cur.close()
            raise

    def close(self):
        # Return to pool, ensuring the connection is clean.
        for cur in list(self._open_cursors):
            cur.close()
        self._open_cursors.clear()
        try:
            self._conn.rollback()
        finally:
            self._pool.putconn(self._conn)


def _get_pg_pool():
    global _pg_pool
    if _pg_pool is not None:
        return _pg_pool
    with _pg_pool_lock:
        if _pg_pool is not None:
            return _pg_pool
        from psycopg2.pool import ThreadedConnectionPool

        minconn = max(int(os.environ.get("OFFICENET_PG_POOL_MIN", 1) or 1), 1)
        maxconn = max(int(os.environ.get("OFFICENET_PG_POOL_MAX", 10) or 10), minconn)
        _pg_pool = ThreadedConnectionPool(minconn, maxconn, dsn=DB_URL)
        return _pg_pool


def get_conn():
    if _use_postgres():
        conn = _get_pg_pool().getconn()
        conn.autocommit = False
        return _PGConn(_get_pg_pool(), conn)
    conn = sqlite3.connect(DB_PATH, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db():
    serial_pk = "BIGSERIAL PRIMARY KEY" if _use_postgres() else "INTEGER PRIMARY KEY AUTOINCREMENT"
    statements = [
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS job_status (
            job_name TEXT PRIMARY KEY,
            last_run_at TEXT,
            last_success_at TEXT,
            last_error TEXT,
            last_error_at TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS offices (
            id TEXT PRIMARY KEY,
            unit_office TEXT NOT NULL,
            sub_unit_office TEXT,
            location TEXT,
            section TEXT,
            isp TEXT,
            isps TEXT,
            section_isps TEXT
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS test_schedules (
            id {serial_pk},
            office_id TEXT NOT NULL,
            isp TEXT NOT NULL,
            time_slot TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            last_run TEXT,
            next_run TEXT,
            created_at TEXT NOT NULL
        )
        """,
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_test_schedules_active
        ON test_schedules (office_id, isp, time_slot)
        WHERE is_active = 1
        """,
        f"""
        CREATE TABLE IF NOT EXISTS speed_tests (
            id {serial_pk},
            office_id TEXT NOT NULL,
            isp TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            download DOUBLE PRECISION,
            upload DOUBLE PRECISION,
            ping DOUBLE PRECISION,
            jitter DOUBLE PRECISION,
            packet_loss DOUBLE PRECISION,
            server_id TEXT,
            server_name TEXT,
            raw_data TEXT
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_speed_tests_office_ts
        ON speed_tests (office_id, timestamp)
        """,
    ]
    conn = get_conn()
    try:
        with conn:
            for statement in statements:
                conn.execute(statement)
    finally:
        conn.close()


def utc_now_iso():
    return datetime.now(timezone.utc).replace(microsecond=0, tzinfo=None).isoformat() + "Z"


def _encode_json_field(value):
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=True)


def get_json(table, key, default):
    conn = get_conn()
    try:
        row = conn.execute(
            f"SELECT value FROM {table} WHERE key = ?",
            (key,),
        ).fetchone()
        if not row:
            return default
        return json.loads(row["value"])
    finally:
        conn.close()


def set_json(table, key, value):
    payload = json.dumps(value, ensure_ascii=True)
    conn = get_conn()
    try:
        with conn:
            conn.execute(
                f"INSERT INTO {table} (key, value) VALUES (?, ?)"
                " ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, payload),
            )
    finally:
        conn.close()


def update_job_status(job_name, last_run_at=None, last_success_at=None, last_error=None, last_error_at=None):
    conn = get_conn()
    try:
        existing = conn.execute(
            "SELECT * FROM job_status WHERE job_name = ?",
            (job_name,),
        ).fetchone()
        payload = {
            "last_run_at": existing["last_run_at"] if existing else None,
            "last_success_at": existing["last_success_at"] if existing else None,
            "last_error": existing["last_error"] if existing else None,
            "last_error_at": existing["last_error_at"] if existing else None,
        }
        if last_run_at is not None:
            payload["last_run_at"] = last_run_at
        if last_success_at is not None:
            payload["last_success_at"] = last_success_at
        if last_error is not None:
            payload["last_error"] = last_error
        if last_error_at is not None:
            payload["last_error_at"] = last_error_at

        with conn:
            conn.execute(
                """
                INSERT INTO job_status (job_name, last_run_at, last_success_at, last_error, last_error_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(job_name) DO UPDATE SET
                    last_run_at = excluded.last_run_at,
                    last_success_at = excluded.last_success_at,
                    last_error = excluded.last_error,
                    last_error_at = excluded.last_error_at
                """,
                (
                    job_name,
                    payload["last_run_at"],
                    payload["last_success_at"],
                    payload["last_error"],
                    payload["last_error_at"],
                ),
            )
    finally:
        conn.close()


def get_job_status():
    conn = get_conn()
    try:
        rows = conn.execute("SELECT * FROM job_status ORDER BY job_name").fetchall()
        return [dict(row) for row in rows]
    finally:
        conn.close()


def save_office(office):
    office_id = (office.get("id") or "").strip() or uuid.uuid4().hex
    values = (
        office_id,
        (office.get("unit_office") or "").strip(),
        office.get("sub_unit_office"),
        office.get("location"),
        office.get("section"),
        office.get("isp"),
        _encode_json_field(office.get("isps")),
        _encode_json_field(office.get("section_isps")),
    )
    conn = get_conn()
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO offices (id, unit_office, sub_unit_office, location, section, isp, isps, section_isps)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    unit_office = excluded.unit_office,
                    sub_unit_office = excluded.sub_unit_office,
                    location = excluded.location,
                    section = excluded.section,
                    isp = excluded.isp,
                    isps = excluded.isps,
                    section_isps = excluded.section_isps
                """,
                values,
            )
    finally:
        conn.close()
    return dict(zip(OFFICE_COLUMNS, values))


def get_office(office_id):
    conn = get_conn()
    try:
        row = conn.execute("SELECT * FROM offices WHERE id = ?", (office_id,)).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def list_offices():
    conn = get_conn()
    try:
        rows = conn.execute("SELECT * FROM offices ORDER BY unit_office, id").fetchall()
        return [dict(row) for row in rows]
    finally:
        conn.close()


def delete_office(office_id):
    conn = get_conn()
    try:
        with conn:
            conn.execute("DELETE FROM offices WHERE id = ?", (office_id,))
    finally:
        conn.close()


def _schedule_row(row):
    if not row:
        return None
    data = dict(row)
    data["is_active"] = bool(data.get("is_active"))
    return data


def list_schedules(active_only=False, office_id=None):
    clauses = []
    params = []
    if active_only:
        clauses.append("is_active = 1")
    if office_id:
        clauses.append("office_id = ?")
        params.append(office_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    conn = get_conn()
    try:
        rows = conn.execute(
            f"SELECT * FROM test_schedules {where} ORDER BY office_id, isp, time_slot, id",
            params,
        ).fetchall()
        return [_schedule_row(row) for row in rows]
    finally:
        conn.close()


def get_schedule(schedule_id):
    conn = get_conn()
    try:
        row = conn.execute("SELECT * FROM test_schedules WHERE id = ?", (schedule_id,)).fetchone()
        return _schedule_row(row)
    finally:
        conn.close()


def find_active_schedule(office_id, isp, time_slot):
    conn = get_conn()
    try:
        row = conn.execute(
            """
            SELECT * FROM test_schedules
            WHERE office_id = ? AND isp = ? AND time_slot = ? AND is_active = 1
            """,
            (office_id, isp, time_slot),
        ).fetchone()
        return _schedule_row(row)
    finally:
        conn.close()


def insert_schedule(office_id, isp, time_slot, next_run=None):
    """Create an active schedule; returns None when the triple already has one."""
    conn = get_conn()
    try:
        with conn:
            rows = conn.execute(
                """
                INSERT INTO test_schedules (office_id, isp, time_slot, is_active, next_run, created_at)
                VALUES (?, ?, ?, 1, ?, ?)
                ON CONFLICT (office_id, isp, time_slot) WHERE is_active = 1 DO NOTHING
                RETURNING *
                """,
                (office_id, isp, time_slot, next_run, utc_now_iso()),
            ).fetchall()
        return _schedule_row(rows[0]) if rows else None
    finally:
        conn.close()


def update_schedule_run(schedule_id, last_run, next_run):
    conn = get_conn()
    try:
        with conn:
            conn.execute(
                "UPDATE test_schedules SET last_run = ?, next_run = ? WHERE id = ?",
                (last_run, next_run, schedule_id),
            )
    finally:
        conn.close()


def set_schedule_active(schedule_id, active):
    conn = get_conn()
    try:
        with conn:
            conn.execute(
                "UPDATE test_schedules SET is_active = ? WHERE id = ?",
                (1 if active else 0, schedule_id),
            )
    finally:
        conn.close()


def delete_schedule(schedule_id):
    conn = get_conn()
    try:
        with conn:
            conn.execute("DELETE FROM test_schedules WHERE id = ?", (schedule_id,))
    finally:
        conn.close()


def insert_speed_test(
    office_id,
    isp,
    download,
    upload,
    ping,
    jitter=None,
    packet_loss=None,
    server_id=None,
    server_name=None,
    raw_data=None,
    timestamp=None,
):
    stamp = timestamp or utc_now_iso()
    conn = get_conn()
    try:
        with conn:
            rows = conn.execute(
                """
                INSERT INTO speed_tests (
                    office_id, isp, timestamp, download, upload, ping, jitter, packet_loss,
                    server_id, server_name, raw_data
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING *
                """,
                (
                    office_id,
                    isp,
                    stamp,
                    download,
                    upload,
                    ping,
                    jitter,
                    packet_loss,
                    None if server_id is None else str(server_id),
                    server_name,
                    _encode_json_field(raw_data),
                ),
            ).fetchall()
        return dict(rows[0])
    finally:
        conn.close()


def get_speed_tests_between(start_iso, end_iso, office_id=None):
    params = [start_iso, end_iso]
    office_clause = ""
    if office_id:
        office_clause = "AND office_id = ?"
        params.append(office_id)
    conn = get_conn()
    try:
        rows = conn.execute(
            f"""
            SELECT * FROM speed_tests
            WHERE timestamp >= ? AND timestamp < ? {office_clause}
            ORDER BY timestamp DESC, id DESC
            """,
            params,
        ).fetchall()
        return [dict(row) for row in rows]
    finally:
        conn.close()


def list_speed_tests(office_id=None, limit=50, offset=0):
    where = "WHERE office_id = ?" if office_id else ""
    params = [office_id] if office_id else []
    conn = get_conn()
    try:
        total = conn.execute(f"SELECT COUNT(*) AS total FROM speed_tests {where}", params).fetchone()["total"]
        rows = conn.execute(
            f"SELECT * FROM speed_tests {where} ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?",
            params + [int(limit), int(offset)],
        ).fetchall()
        return [dict(row) for row in rows], int(total)
    finally:
        conn.close()
