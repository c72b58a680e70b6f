from __future__ import annotations

import contextlib
import json
import os
import sqlite3
from collections.abc import Iterator
from datetime import timedelta
from typing import Any

from .logging_bridge import error as log_error
from .models import CREATED, UPDATED
from .utils import now_iso, parse_iso, to_iso

SORTABLE_FIELDS = ("scraped_at", "created_at", "updated_at", "company", "title", "source")
MAX_PAGE_SIZE = 500

_POSTING_FIELDS = (
    "company",
    "title",
    "location",
    "source",
    "skills",
    "job_url",
    "salary",
    "equity",
    "job_type",
    "remote",
    "raw_data",
)


class StorageError(RuntimeError):
    """The persistence operation itself failed (connectivity, I/O, constraint)."""


class NotFoundError(LookupError):
    """No stored entity has the requested identity."""


# ---- Public API: lifecycle --------------------------------------------------


def init_db(sqlite_path: str) -> None:
    """
    Ensure the SQLite database and schema exist.
    Safe to call multiple times.
    """
    with _open(sqlite_path, "init_db"):
        pass


def ping(sqlite_path: str) -> None:
    """Raise StorageError if the store cannot be opened and queried."""
    with _open(sqlite_path, "ping") as conn:
        conn.execute("SELECT 1").fetchone()


def count_rows(sqlite_path: str) -> int:
    """Return total rows in job_postings; 0 if DB missing/empty."""
    if not os.path.exists(sqlite_path):
        return 0
    with _open(sqlite_path, "count_rows") as conn:
        (n,) = conn.execute("SELECT COUNT(*) FROM job_postings").fetchone()
    return int(n or 0)


def reset_db(sqlite_path: str) -> None:
    """
    Remove the DB file entirely (for pytest fixtures).
    Safe if it doesn't exist.
    """
    for suffix in ("", "-wal", "-shm"):
        with contextlib.suppress(FileNotFoundError):
            os.remove(sqlite_path + suffix)


# ---- Public API: postings ---------------------------------------------------


def upsert_posting(
    sqlite_path: str,
    posting: dict[str, Any],
    scraped_at: str | None = None,
) -> tuple[str, dict[str, Any]]:
    """
    Insert or fully overwrite the row keyed by posting["job_url"].

    `scraped_at` is always the ingestion instant; any timestamp inside
    `posting` is ignored. `id` and `created_at` survive an overwrite.

    Returns:
        ("created" | "updated", stored_row)
    """
    values = _encode_posting(posting)

    with _open(sqlite_path, "upsert_posting") as conn, _transaction(conn):
        # stamped under the write lock so commit order matches scraped_at order
        ts = scraped_at or now_iso()
        existing = conn.execute(
            "SELECT id FROM job_postings WHERE job_url = ?",
            (values["job_url"],),
        ).fetchone()

        cols = ", ".join(_POSTING_FIELDS)
        marks = ", ".join("?" for _ in _POSTING_FIELDS)
        updates = ", ".join(f"{c} = excluded.{c}" for c in _POSTING_FIELDS if c != "job_url")
        conn.execute(
            f"""
            INSERT INTO job_postings ({cols}, scraped_at, created_at, updated_at)
            VALUES ({marks}, ?, ?, ?)
            ON CONFLICT(job_url) DO UPDATE SET
              {updates},
              scraped_at = excluded.scraped_at,
              updated_at = excluded.updated_at
            """,
            (*[values[c] for c in _POSTING_FIELDS], ts, ts, ts),
        )
        row = conn.execute(
            "SELECT * FROM job_postings WHERE job_url = ?",
            (values["job_url"],),
        ).fetchone()

    return (UPDATED if existing else CREATED), _decode_posting(row)


def get_posting(sqlite_path: str, posting_id: int) -> dict[str, Any] | None:
    with _open(sqlite_path, "get_posting") as conn:
        row = conn.execute("SELECT * FROM job_postings WHERE id = ?", (int(posting_id),)).fetchone()
    return _decode_posting(row) if row else None


def get_posting_by_url(sqlite_path: str, job_url: str) -> dict[str, Any] | None:
    with _open(sqlite_path, "get_posting_by_url") as conn:
        row = conn.execute("SELECT * FROM job_postings WHERE job_url = ?", (job_url,)).fetchone()
    return _decode_posting(row) if row else None


def list_postings(
    sqlite_path: str,
    *,
    source: str | None = None,
    company: str | None = None,
    search: str | None = None,
    limit: int = 50,
    offset: int = 0,
    sort: str = "-scraped_at",
) -> tuple[list[dict[str, Any]], int]:
    """
    Filtered, paginated listing.

    - source: exact match (case-folded)
    - company: case-insensitive substring
    - search: whitespace-separated terms; a row matches if ANY term appears in
      company, title or skills (case-insensitive)
    - sort: one of SORTABLE_FIELDS, '-' prefix for descending

    Returns:
        (rows, total_matching_rows)

    Raises:
        ValueError on an unknown sort field or out-of-range paging.
    """
    order_sql = _order_clause(sort)
    if not 1 <= int(limit) <= MAX_PAGE_SIZE:
        raise ValueError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    if int(offset) < 0:
        raise ValueError("offset must be >= 0")

    where: list[str] = []
    params: list[Any] = []
    if source:
        where.append("source = ?")
        params.append(source.strip().lower())
    if company:
        where.append("lower(company) LIKE ? ESCAPE '\\'")
        params.append(_like(company))
    terms = (search or "").split()
    if terms:
        ors = []
        for term in terms:
            ors.append(
                "(lower(company) LIKE ? ESCAPE '\\' OR lower(title) LIKE ? ESCAPE '\\'"
                " OR lower(skills) LIKE ? ESCAPE '\\')"
            )
            params.extend([_like(term)] * 3)
        where.append("(" + " OR ".join(ors) + ")")
    where_sql = f"WHERE {' AND '.join(where)}" if where else ""

    with _open(sqlite_path, "list_postings") as conn:
        (total,) = conn.execute(f"SELECT COUNT(*) FROM job_postings {where_sql}", params).fetchone()
        rows = conn.execute(
            f"SELECT * FROM job_postings {where_sql} {order_sql} LIMIT ? OFFSET ?",
            (*params, int(limit), int(offset)),
        ).fetchall()
    return [_decode_posting(r) for r in rows], int(total or 0)


def source_stats(sqlite_path: str) -> dict[str, Any]:
    """Per-source counts and latest ingestion instant, plus the grand total."""
    with _open(sqlite_path, "source_stats") as conn:
        rows = conn.execute(
            """
            SELECT source, COUNT(*) AS count, MAX(scraped_at) AS latest_scrape
            FROM job_postings
            GROUP BY source
            ORDER BY source
            """
        ).fetchall()
    by_source = {r["source"]: {"count": int(r["count"]), "latest_scrape": r["latest_scrape"]} for r in rows}
    return {"total": sum(v["count"] for v in by_source.values()), "by_source": by_source}


def delete_posting(sqlite_path: str, posting_id: int) -> dict[str, Any]:
    """
    Delete one posting by store identity and return the removed row.
    Raises NotFoundError if no such row exists.
    """
    with _open(sqlite_path, "delete_posting") as conn, _transaction(conn):
        row = conn.execute("SELECT * FROM job_postings WHERE id = ?", (int(posting_id),)).fetchone()
        if row is None:
            raise NotFoundError(f"Job {posting_id} not found")
        conn.execute("DELETE FROM job_postings WHERE id = ?", (int(posting_id),))
        conn.execute("DELETE FROM delivery_failures WHERE posting_id = ?", (int(posting_id),))
    return _decode_posting(row)


def fetch_since(sqlite_path: str, since: str | None = None, source: str | None = None) -> list[dict[str, Any]]:
    """Postings with scraped_at strictly after `since` (all if None), oldest first."""
    where_sql, params = _since_filter(since, source)
    with _open(sqlite_path, "fetch_since") as conn:
        rows = conn.execute(
            f"SELECT * FROM job_postings {where_sql} ORDER BY scraped_at ASC, id ASC",
            params,
        ).fetchall()
    return [_decode_posting(r) for r in rows]


def count_since(sqlite_path: str, since: str | None = None, source: str | None = None) -> int:
    where_sql, params = _since_filter(since, source)
    with _open(sqlite_path, "count_since") as conn:
        (n,) = conn.execute(f"SELECT COUNT(*) FROM job_postings {where_sql}", params).fetchone()
    return int(n or 0)


# ---- Public API: sync cursor ------------------------------------------------


def ensure_cursor(sqlite_path: str, key: str) -> dict[str, Any]:
    """Return the cursor row for `key`, creating it with defaults on first access."""
    with _open(sqlite_path, "ensure_cursor") as conn:
        _insert_cursor_if_missing(conn, key)
        row = conn.execute("SELECT * FROM sync_cursors WHERE key = ?", (key,)).fetchone()
    return dict(row)


def get_cursor(sqlite_path: str, key: str) -> dict[str, Any] | None:
    with _open(sqlite_path, "get_cursor") as conn:
        row = conn.execute("SELECT * FROM sync_cursors WHERE key = ?", (key,)).fetchone()
    return dict(row) if row else None


def acquire_sync_lease(sqlite_path: str, key: str, owner: str, ttl_seconds: int) -> bool:
    """
    Take the single-flight lease on cursor `key` for `ttl_seconds`.
    Returns False if another owner holds an unexpired lease.
    """
    now = now_iso()
    expires = to_iso(parse_iso(now) + timedelta(seconds=int(ttl_seconds)))
    with _open(sqlite_path, "acquire_sync_lease") as conn, _transaction(conn):
        _insert_cursor_if_missing(conn, key)
        cur = conn.execute(
            """
            UPDATE sync_cursors
               SET lease_owner = ?, lease_expires_at = ?, updated_at = ?
             WHERE key = ?
               AND (lease_owner IS NULL OR lease_expires_at IS NULL OR lease_expires_at <= ?)
            """,
            (owner, expires, now, key, now),
        )
        acquired = cur.rowcount == 1
    return acquired


def release_sync_lease(sqlite_path: str, key: str, owner: str) -> None:
    with _open(sqlite_path, "release_sync_lease") as conn:
        conn.execute(
            """
            UPDATE sync_cursors
               SET lease_owner = NULL, lease_expires_at = NULL
             WHERE key = ? AND lease_owner = ?
            """,
            (key, owner),
        )


def complete_sync_pass(
    sqlite_path: str,
    key: str,
    owner: str,
    started_at: str,
    delivered: int,
) -> tuple[dict[str, Any], bool]:
    """
    Advance the cursor once for a finished pass, in one transaction:

      last_sync_at    = max(last_sync_at, started_at)
      last_sync_count = delivered
      total_synced   += delivered

    and release the lease if `owner` still holds it.

    Returns:
        (cursor_row, lease_was_held)
    """
    now = now_iso()
    with _open(sqlite_path, "complete_sync_pass") as conn, _transaction(conn):
        _insert_cursor_if_missing(conn, key)
        holder = conn.execute("SELECT lease_owner FROM sync_cursors WHERE key = ?", (key,)).fetchone()
        held = holder is not None and holder["lease_owner"] == owner
        conn.execute(
            """
            UPDATE sync_cursors
               SET last_sync_at = CASE
                     WHEN last_sync_at IS NULL OR last_sync_at < ? THEN ?
                     ELSE last_sync_at
                   END,
                   last_sync_count = ?,
                   total_synced = total_synced + ?,
                   lease_owner = CASE WHEN lease_owner = ? THEN NULL ELSE lease_owner END,
                   lease_expires_at = CASE WHEN lease_owner = ? THEN NULL ELSE lease_expires_at END,
                   updated_at = ?
             WHERE key = ?
            """,
            (started_at, started_at, int(delivered), int(delivered), owner, owner, now, key),
        )
        row = conn.execute("SELECT * FROM sync_cursors WHERE key = ?", (key,)).fetchone()
    return dict(row), held


# ---- Public API: delivery ledger --------------------------------------------


def record_delivery_failure(
    sqlite_path: str,
    key: str,
    posting_id: int,
    job_url: str,
    error: str | None,
) -> None:
    """Remember a failed forward; a repeat failure refreshes the existing entry."""
    with _open(sqlite_path, "record_delivery_failure") as conn:
        conn.execute(
            """
            INSERT INTO delivery_failures (cursor_key, posting_id, job_url, attempted_at, error)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(cursor_key, posting_id) DO UPDATE SET
              job_url = excluded.job_url,
              attempted_at = excluded.attempted_at,
              error = excluded.error
            """,
            (key, int(posting_id), job_url, now_iso(), error),
        )


def list_delivery_failures(sqlite_path: str, key: str, limit: int = 100) -> list[dict[str, Any]]:
    with _open(sqlite_path, "list_delivery_failures") as conn:
        rows = conn.execute(
            """
            SELECT * FROM delivery_failures
             WHERE cursor_key = ?
             ORDER BY attempted_at ASC, id ASC
             LIMIT ?
            """,
            (key, int(limit)),
        ).fetchall()
    return [dict(r) for r in rows]


def clear_delivery_failure(sqlite_path: str, failure_id: int) -> None:
    with _open(sqlite_path, "clear_delivery_failure") as conn:
        conn.execute("DELETE FROM delivery_failures WHERE id = ?", (int(failure_id),))


# ---- Internal utilities -----------------------------------------------------


@contextlib.contextmanager
def _open(sqlite_path: str, op: str) -> Iterator[sqlite3.Connection]:
    """
    Connection scope: open, apply pragmas, ensure schema, yield, close.
    Any sqlite3/OS failure inside the scope surfaces as StorageError.
    """
    conn: sqlite3.Connection | None = None
    try:
        _ensure_dir(sqlite_path)
        conn = _connect(sqlite_path)
        _apply_pragmas(conn)
        _ensure_schema(conn)
        yield conn
    except (sqlite3.Error, OSError) as e:
        log_error({
            "component": "job_intake.db",
            "op": op,
            "sqlite_path": sqlite_path,
            "error": repr(e),
        })
        raise StorageError(f"{op} failed: {e}") from e
    finally:
        if conn is not None:
            conn.close()


@contextlib.contextmanager
def _transaction(conn: sqlite3.Connection) -> Iterator[None]:
    # BEGIN IMMEDIATE takes the write lock up front so read-then-write is atomic
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def _ensure_dir(sqlite_path: str) -> None:
    d = os.path.dirname(os.path.abspath(sqlite_path)) or "."
    os.makedirs(d, exist_ok=True)


def _connect(sqlite_path: str) -> sqlite3.Connection:
    # isolation_level=None gives autocommit mode; we manage transactions explicitly.
    conn = sqlite3.connect(sqlite_path, timeout=30.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


def _apply_pragmas(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA temp_store=MEMORY;")
    conn.execute("PRAGMA cache_size=-8000;")  # approx 8MB cache


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS job_postings (
          id INTEGER PRIMARY KEY,
          company  TEXT NOT NULL,
          title    TEXT NOT NULL,
          location TEXT NOT NULL,
          source   TEXT NOT NULL,
          skills   TEXT NOT NULL DEFAULT '[]',
          job_url  TEXT NOT NULL,
          salary   TEXT,
          equity   TEXT,
          job_type TEXT,
          remote   INTEGER,
          raw_data TEXT,
          scraped_at TEXT NOT NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );
        """
    )
    conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS ux_job_postings_url ON job_postings (job_url);")
    conn.execute("CREATE INDEX IF NOT EXISTS ix_job_postings_scraped ON job_postings (scraped_at);")
    conn.execute("CREATE INDEX IF NOT EXISTS ix_job_postings_source ON job_postings (source, scraped_at);")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_cursors (
          key TEXT PRIMARY KEY,
          last_sync_at TEXT,
          last_sync_count INTEGER NOT NULL DEFAULT 0,
          total_synced INTEGER NOT NULL DEFAULT 0,
          lease_owner TEXT,
          lease_expires_at TEXT,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS delivery_failures (
          id INTEGER PRIMARY KEY,
          cursor_key TEXT NOT NULL,
          posting_id INTEGER NOT NULL,
          job_url TEXT NOT NULL,
          attempted_at TEXT NOT NULL,
          error TEXT,
          UNIQUE (cursor_key, posting_id)
        );
        """
    )


def _insert_cursor_if_missing(conn: sqlite3.Connection, key: str) -> None:
    ts = now_iso()
    conn.execute(
        "INSERT OR IGNORE INTO sync_cursors (key, created_at, updated_at) VALUES (?, ?, ?)",
        (key, ts, ts),
    )


def _since_filter(since: str | None, source: str | None) -> tuple[str, list[Any]]:
    where: list[str] = []
    params: list[Any] = []
    if since:
        where.append("scraped_at > ?")
        params.append(since)
    if source:
        where.append("source = ?")
        params.append(source.strip().lower())
    return (f"WHERE {' AND '.join(where)}" if where else ""), params


def _order_clause(sort: str) -> str:
    s = (sort or "-scraped_at").strip()
    desc = s.startswith("-")
    field = s.lstrip("-+")
    if field not in SORTABLE_FIELDS:
        raise ValueError(f"sort must be one of {', '.join(SORTABLE_FIELDS)} (optionally prefixed with '-')")
    direction = "DESC" if desc else "ASC"
    return f"ORDER BY {field} {direction}, id {direction}"


def _like(term: str) -> str:
    escaped = term.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _encode_posting(posting: dict[str, Any]) -> dict[str, Any]:
    out = {c: posting.get(c) for c in _POSTING_FIELDS}
    out["skills"] = json.dumps(list(posting.get("skills") or []), ensure_ascii=False)
    remote = posting.get("remote")
    out["remote"] = None if remote is None else int(bool(remote))
    raw_data = posting.get("raw_data")
    out["raw_data"] = None if raw_data is None else json.dumps(raw_data, ensure_ascii=False, default=str)
    return out


def _decode_posting(row: sqlite3.Row) -> dict[str, Any]:
    d = dict(row)
    d["skills"] = json.loads(d.get("skills") or "[]")
    d["remote"] = None if d.get("remote") is None else bool(d["remote"])
    d["raw_data"] = None if d.get("raw_data") is None else json.loads(d["raw_data"])
    return d
