import json
import os


def _run(capsys, *argv):
    from service import cli

    rc = cli.main(list(argv))
    out, err = capsys.readouterr()
    return rc, out, err


def test_cli_ingest_batch_then_list(capsys, tmp_path, db_path, make_job):
    p = tmp_path / "jobs.json"
    p.write_text(json.dumps([make_job(1), make_job(2), make_job(3, source="indeed")]), encoding="utf-8")

    rc, out, _ = _run(capsys, "--db", db_path, "ingest", str(p))
    assert rc == 0
    data = json.loads(out)["data"]
    assert (data["created"], data["updated"], data["failed"]) == (2, 0, 1)

    rc, out, _ = _run(capsys, "--db", db_path, "list", "--limit", "1")
    assert rc == 0
    envelope = json.loads(out)
    assert envelope["pagination"] == {"total": 2, "limit": 1, "offset": 0}


def test_cli_ingest_single_invalid(capsys, tmp_path, db_path):
    p = tmp_path / "job.json"
    p.write_text(json.dumps({"company": "Acme"}), encoding="utf-8")
    rc, out, _ = _run(capsys, "--db", db_path, "ingest", str(p))
    assert rc == 1
    assert json.loads(out)["error"] == "Validation failed"


def test_cli_ingest_unreadable_file(capsys, tmp_path, db_path):
    rc, out, _ = _run(capsys, "--db", db_path, "ingest", str(tmp_path / "nope.json"))
    assert rc == 1
    assert json.loads(out)["error"] == "Invalid input"


def test_cli_delete_missing_job(capsys, db_path):
    rc, out, _ = _run(capsys, "--db", db_path, "delete", "999")
    assert rc == 1
    assert json.loads(out)["not_found"] is True


def test_cli_sync_requires_webhook(capsys, db_path):
    rc, out, _ = _run(capsys, "--db", db_path, "sync")
    assert rc == 1
    assert json.loads(out)["error"] == "Sync not configured"


def test_cli_sync_status_and_stats(capsys, db_path):
    rc, out, _ = _run(capsys, "--db", db_path, "sync-status")
    assert rc == 0
    assert json.loads(out)["data"]["pending"] == 0

    rc, out, _ = _run(capsys, "--db", db_path, "stats")
    assert rc == 0
    assert json.loads(out)["data"] == {"total": 0, "by_source": {}}


def test_cli_uses_config_intake_block(capsys, write_config, db_path):
    write_config()
    rc, out, _ = _run(capsys, "sync-failures")
    assert rc == 0
    assert json.loads(out)["data"] == []
    assert os.path.exists(db_path)


def test_cli_bad_settings_exit_code(capsys, monkeypatch, db_path):
    monkeypatch.setenv("JOB_INTAKE_WEBHOOK_URL", "ftp://nope")
    rc, _, err = _run(capsys, "--db", db_path, "sync-status")
    assert rc == 2
    assert "configuration invalid" in err


def test_cli_run_module(capsys, db_path):
    rc, out, _ = _run(capsys, "run", "modules.job_intake", "--kwargs", "op=status", f"sqlite_path={db_path}")
    assert rc == 0
    assert "DONE: 0 job(s) pending" in out


def test_cli_run_module_failure(capsys, db_path):
    rc, _, err = _run(capsys, "run", "modules.job_intake", "--kwargs", "op=bogus", f"sqlite_path={db_path}")
    assert rc == 1
    assert "FAILURE" in err


def test_cli_validate_config_and_list_jobs(capsys, write_config):
    write_config()
    rc, out, _ = _run(capsys, "validate-config")
    assert rc == 0 and "OK" in out

    rc, out, _ = _run(capsys, "list-jobs")
    assert rc == 0
    assert "webhook-sync" in out and "pytest config" in out


def test_cli_validate_config_rejects(capsys, write_config):
    write_config(jobs=[{"module": "modules.job_intake", "trigger": {}}])
    rc, _, err = _run(capsys, "validate-config")
    assert rc == 1
    assert "configuration invalid" in err


def test_cli_run_takes_intake_block_from_config(capsys, write_config, db_path):
    write_config()
    rc, out, _ = _run(capsys, "run", "modules.job_intake", "--kwargs", "op=status")
    assert rc == 0
    assert "DONE: 0 job(s) pending" in out
    assert os.path.exists(db_path)
