# tests/test_job_intake_db.py
import sqlite3
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor

import pytest
from freezegun import freeze_time

from modules.job_intake.lib import db
from modules.job_intake.lib.normalize import normalize_posting


def _posting(make_job, n, **kw):
    return normalize_posting(make_job(n, **kw))


def test_upsert_created_then_updated_keeps_one_row(db_path, make_job):
    with freeze_time("2025-01-01T00:00:00Z") as frozen:
        outcome1, row1 = db.upsert_posting(db_path, _posting(make_job, 1, title="Engineer"))
        frozen.tick(60)
        outcome2, row2 = db.upsert_posting(db_path, _posting(make_job, 1, title="Senior Engineer", skills=[]))

    assert (outcome1, outcome2) == ("created", "updated")
    assert db.count_rows(db_path) == 1
    assert row2["id"] == row1["id"]
    assert row2["created_at"] == row1["created_at"]
    assert row2["title"] == "Senior Engineer"
    assert row2["skills"] == []
    assert row1["scraped_at"] == "2025-01-01T00:00:00.000000Z"
    assert row2["scraped_at"] == "2025-01-01T00:01:00.000000Z"


def test_upsert_ignores_input_scraped_at(db_path, make_job, frozen_utc):
    posting = _posting(make_job, 1)
    posting["scraped_at"] = "1999-01-01T00:00:00.000000Z"
    _, row = db.upsert_posting(db_path, posting)
    assert row["scraped_at"] == "2025-01-01T00:00:00.000000Z"


def test_upsert_round_trips_optional_fields(db_path, make_job):
    _, row = db.upsert_posting(
        db_path,
        _posting(make_job, 1, remote="true", raw_data={"a": 1}, salary="$100k", location="Remote, EU"),
    )
    stored = db.get_posting(db_path, row["id"])
    assert stored["remote"] is True
    assert stored["raw_data"] == {"a": 1}
    assert stored["salary"] == "$100k"
    assert stored["location"] == "Remote, EU"
    assert db.get_posting_by_url(db_path, "https://jobs.example.com/1")["id"] == row["id"]


def test_list_postings_filters_and_paginates(db_path, make_job):
    db.upsert_posting(db_path, _posting(make_job, 1, company="Stripe", title="Data Engineer", source="linkedin"))
    db.upsert_posting(db_path, _posting(make_job, 2, company="Acme Payments", title="Designer", skills=["figma"]))
    db.upsert_posting(db_path, _posting(make_job, 3, company="Globex", title="SRE", skills=["kubernetes"]))

    rows, total = db.list_postings(db_path, source="LinkedIn")
    assert total == 1 and rows[0]["company"] == "Stripe"

    rows, total = db.list_postings(db_path, company="acme")
    assert [r["company"] for r in rows] == ["Acme Payments"]

    rows, total = db.list_postings(db_path, search="FIGMA kubernetes")
    assert total == 2

    rows, total = db.list_postings(db_path, limit=2, offset=0, sort="company")
    assert total == 3
    assert [r["company"] for r in rows] == ["Acme Payments", "Globex"]

    rows, _ = db.list_postings(db_path, limit=2, offset=2, sort="company")
    assert [r["company"] for r in rows] == ["Stripe"]


def test_list_postings_default_sort_is_most_recent_first(db_path, make_job):
    with freeze_time("2025-01-01T00:00:00Z") as frozen:
        for n in (1, 2, 3):
            db.upsert_posting(db_path, _posting(make_job, n))
            frozen.tick(1)
    rows, _ = db.list_postings(db_path)
    assert [r["job_url"][-1] for r in rows] == ["3", "2", "1"]


def test_list_postings_escapes_like_wildcards(db_path, make_job):
    db.upsert_posting(db_path, _posting(make_job, 1, company="100% Remote"))
    db.upsert_posting(db_path, _posting(make_job, 2, company="1000 Remote"))
    rows, total = db.list_postings(db_path, company="100%")
    assert total == 1 and rows[0]["company"] == "100% Remote"


@pytest.mark.parametrize("kw", [{"sort": "salary"}, {"limit": 0}, {"limit": 501}, {"offset": -1}])
def test_list_postings_rejects_bad_paging(db_path, kw):
    with pytest.raises(ValueError):
        db.list_postings(db_path, **kw)


def test_source_stats_groups_by_source(db_path, make_job):
    with freeze_time("2025-01-01T00:00:00Z") as frozen:
        db.upsert_posting(db_path, _posting(make_job, 1, source="monster"))
        frozen.tick(10)
        db.upsert_posting(db_path, _posting(make_job, 2, source="monster"))
        db.upsert_posting(db_path, _posting(make_job, 3, source="ycombinator"))

    stats = db.source_stats(db_path)
    assert stats["total"] == 3
    assert stats["by_source"]["monster"] == {"count": 2, "latest_scrape": "2025-01-01T00:00:10.000000Z"}
    assert stats["by_source"]["ycombinator"]["count"] == 1


def test_delete_posting_and_not_found(db_path, make_job):
    _, row = db.upsert_posting(db_path, _posting(make_job, 1))
    removed = db.delete_posting(db_path, row["id"])
    assert removed["job_url"] == row["job_url"]
    assert db.count_rows(db_path) == 0
    with pytest.raises(db.NotFoundError):
        db.delete_posting(db_path, row["id"])


def test_fetch_since_is_strict_and_oldest_first(db_path, make_job):
    with freeze_time("2025-01-01T00:00:00Z") as frozen:
        for n in (1, 2, 3):
            db.upsert_posting(db_path, _posting(make_job, n, source="monster" if n == 3 else "wellfound"))
            frozen.tick(1)

    boundary = "2025-01-01T00:00:00.000000Z"
    assert [r["job_url"][-1] for r in db.fetch_since(db_path, boundary)] == ["2", "3"]
    assert [r["job_url"][-1] for r in db.fetch_since(db_path, None)] == ["1", "2", "3"]
    assert db.count_since(db_path, boundary, "monster") == 1
    assert db.count_since(db_path, None) == 3


def test_sync_lease_is_single_flight(db_path):
    assert db.acquire_sync_lease(db_path, "k", "owner-a", 60)
    assert not db.acquire_sync_lease(db_path, "k", "owner-b", 60)
    db.release_sync_lease(db_path, "k", "owner-b")  # not the holder: no effect
    assert not db.acquire_sync_lease(db_path, "k", "owner-b", 60)
    db.release_sync_lease(db_path, "k", "owner-a")
    assert db.acquire_sync_lease(db_path, "k", "owner-b", 60)


def test_sync_lease_expires(db_path):
    with freeze_time("2025-01-01T00:00:00Z") as frozen:
        assert db.acquire_sync_lease(db_path, "k", "owner-a", 30)
        frozen.tick(31)
        assert db.acquire_sync_lease(db_path, "k", "owner-b", 30)


def test_complete_sync_pass_never_moves_cursor_backwards(db_path):
    assert db.acquire_sync_lease(db_path, "k", "o1", 60)
    row, held = db.complete_sync_pass(db_path, "k", "o1", "2025-01-02T00:00:00.000000Z", 3)
    assert held
    assert (row["last_sync_at"], row["last_sync_count"], row["total_synced"]) == (
        "2025-01-02T00:00:00.000000Z",
        3,
        3,
    )
    assert row["lease_owner"] is None

    row, held = db.complete_sync_pass(db_path, "k", "o2", "2025-01-01T00:00:00.000000Z", 2)
    assert not held
    assert row["last_sync_at"] == "2025-01-02T00:00:00.000000Z"
    assert row["total_synced"] == 5


def test_delivery_ledger_refreshes_and_clears(db_path, make_job):
    _, row = db.upsert_posting(db_path, _posting(make_job, 1))
    db.record_delivery_failure(db_path, "k", row["id"], row["job_url"], "HTTP 500")
    db.record_delivery_failure(db_path, "k", row["id"], row["job_url"], "HTTP 503")

    entries = db.list_delivery_failures(db_path, "k")
    assert len(entries) == 1 and entries[0]["error"] == "HTTP 503"
    assert db.list_delivery_failures(db_path, "other") == []

    db.clear_delivery_failure(db_path, entries[0]["id"])
    assert db.list_delivery_failures(db_path, "k") == []


def test_storage_errors_are_wrapped(tmp_path, make_job):
    # A directory cannot be opened as a database file
    with pytest.raises(db.StorageError):
        db.upsert_posting(str(tmp_path), _posting(make_job, 1))
    with pytest.raises(db.StorageError):
        db.ping(str(tmp_path))


def test_reset_db_removes_file(db_path, make_job):
    db.upsert_posting(db_path, _posting(make_job, 1))
    db.reset_db(db_path)
    assert db.count_rows(db_path) == 0


def test_init_db_is_idempotent(db_path):
    db.init_db(db_path)
    db.init_db(db_path)
    db.ping(db_path)
    assert db.count_rows(db_path) == 0
    assert db.get_cursor(db_path, "webhook_sync") is None


def test_concurrent_upserts_of_one_url_store_a_single_row(db_path, make_job):
    db.init_db(db_path)
    workers = 8
    start = threading.Barrier(workers)

    def submit(n):
        start.wait()
        outcome, _ = db.upsert_posting(db_path, _posting(make_job, 1, title=f"Engineer {n}"))
        return outcome

    with ThreadPoolExecutor(max_workers=workers) as pool:
        outcomes = Counter(pool.map(submit, range(workers)))

    assert outcomes == {"created": 1, "updated": workers - 1}
    assert db.count_rows(db_path) == 1


def test_upsert_stamps_scraped_at_under_the_write_lock(db_path, make_job, monkeypatch):
    db.init_db(db_path)
    real_now = db.now_iso
    lock_states = []

    def now_while_checking_lock():
        other = sqlite3.connect(db_path, timeout=0, isolation_level=None)
        try:
            other.execute("BEGIN IMMEDIATE")
            other.execute("ROLLBACK")
            lock_states.append("free")
        except sqlite3.OperationalError:
            lock_states.append("held")
        finally:
            other.close()
        return real_now()

    monkeypatch.setattr(db, "now_iso", now_while_checking_lock)
    db.upsert_posting(db_path, _posting(make_job, 1))

    assert lock_states == ["held"]
