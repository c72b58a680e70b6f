import json

import pytest


def test_load_and_validate_min_config(write_config, db_path):
    from service import config_schema

    write_config()
    cfg = config_schema.load_config()  # CONFIG_PATH set by fixture
    config_schema.validate(cfg)

    assert [j["id"] for j in cfg["jobs"]] == ["webhook-sync"]
    assert config_schema.intake_settings(cfg) == {"sqlite_path": db_path}


def test_empty_default_when_no_path(monkeypatch):
    from service import config_schema

    monkeypatch.delenv("TZ", raising=False)
    cfg = config_schema.load_config()
    assert cfg == {"jobs": [], "timezone": "UTC", "intake": {}}
    config_schema.validate(cfg)


def test_yaml_config(tmp_path):
    from service import config_schema

    p = tmp_path / "config.yaml"
    p.write_text(
        "timezone: America/Indiana/Indianapolis\n"
        "intake:\n"
        "  batch_max_items: 25\n"
        "jobs:\n"
        "  - module: modules.job_intake\n"
        "    trigger:\n"
        "      cron: '*/10 * * * *'\n"
        "    kwargs: {op: sync}\n",
        encoding="utf-8",
    )
    cfg = config_schema.load_config(str(p))
    config_schema.validate(cfg)
    assert cfg["jobs"][0]["id"] == "modules.job_intake"
    assert config_schema.intake_settings(cfg) == {"batch_max_items": 25}


def test_intake_env_indirection(write_config, monkeypatch):
    from service import config_schema

    monkeypatch.setenv("N8N_WEBHOOK_URL", "https://n8n.example.test/webhook/abc")
    write_config(intake={"webhook_url_env": "N8N_WEBHOOK_URL", "cursor_key_env": "UNSET_CURSOR_VAR"})
    cfg = config_schema.load_config()
    config_schema.validate(cfg)

    # unset variables resolve to "" and are left to the Settings defaults
    assert config_schema.intake_settings(cfg) == {"webhook_url": "https://n8n.example.test/webhook/abc"}


@pytest.mark.parametrize(
    "patch, fragment",
    [
        ({"intake": {"webhook": "x"}}, "unknown field"),
        ({"intake": {"batch_max_items": 0}}, "'intake': 'batch_max_items'"),
        ({"intake": {"webhook_url": "ftp://files.example.test"}}, "http(s) URL"),
        ({"jobs": [{"module": "modules.job_intake", "trigger": {"cron": "* * * * *"}, "kwargs": {"op": "purge"}}]}, "not one of"),
        ({"jobs": [{"trigger": {"interval": {"minutes": 5}}}]}, "needs a 'module'"),
        ({"jobs": [{"module": "m", "trigger": {}}]}, "exactly one of"),
        ({"jobs": [{"module": "m", "trigger": {"interval": {"minutes": 5}, "cron": "* * * * *"}}]}, "exactly one"),
        ({"jobs": [{"module": "m", "trigger": {"interval": {"minutes": "x"}}}]}, "is not an integer"),
        ({"jobs": [{"module": "m", "trigger": {"cron": 5}}]}, "'cron' must be"),
        ({"jobs": [{"module": "m", "trigger": {"cron": "* * * * *"}, "kwargs": []}]}, "'kwargs' must be a mapping"),
        ({"jobs": [{"module": "m", "trigger": {"cron": "* * * * *"}, "max_instances": 0}]}, "must be at least 1"),
        ({"jobs": [{"module": "m", "trigger": {"cron": "* * * * *"}, "timeout_sec": -1}]}, "must be at least 0"),
        (
            {
                "jobs": [
                    {"id": "a", "module": "m", "trigger": {"cron": "* * * * *"}},
                    {"id": "a", "module": "m", "trigger": {"cron": "0 * * * *"}},
                ]
            },
            "used more than once",
        ),
    ],
)
def test_validate_rejects(write_config, patch, fragment):
    from service import config_schema

    write_config(**patch)
    cfg = config_schema.load_config()
    with pytest.raises(config_schema.ConfigError) as ei:
        config_schema.validate(cfg)
    assert fragment in str(ei.value)


def test_read_errors_are_config_errors(tmp_path):
    from service import config_schema

    with pytest.raises(config_schema.ConfigError):
        config_schema.load_config(str(tmp_path / "missing.json"))

    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    with pytest.raises(config_schema.ConfigError):
        config_schema.load_config(str(bad))

    top = tmp_path / "list.json"
    top.write_text(json.dumps([1, 2]), encoding="utf-8")
    with pytest.raises(config_schema.ConfigError):
        config_schema.load_config(str(top))


def test_job_kwargs_layers_intake_block_under_intake_jobs(write_config, monkeypatch, db_path):
    from service import config_schema

    monkeypatch.setenv("N8N_HOOK", "https://n8n.example.test/webhook/abc")
    write_config(intake={"sqlite_path": db_path, "webhook_url_env": "N8N_HOOK", "cursor_key": "shared"})
    cfg = config_schema.load_config()

    plain = config_schema.job_kwargs(cfg, {"module": "modules.job_intake", "kwargs": {"op": "sync"}})
    assert plain == {
        "sqlite_path": db_path,
        "webhook_url": "https://n8n.example.test/webhook/abc",
        "cursor_key": "shared",
        "op": "sync",
    }

    # job keys win, set directly or through <key>_env
    own = config_schema.job_kwargs(
        cfg,
        {"module": "modules.job_intake", "kwargs": {"cursor_key": "nightly", "webhook_url_env": "OTHER_HOOK"}},
    )
    assert own == {"sqlite_path": db_path, "cursor_key": "nightly", "webhook_url_env": "OTHER_HOOK"}

    # other modules never see the intake block
    assert config_schema.job_kwargs(cfg, {"module": "modules.other", "kwargs": {"x": 1}}) == {"x": 1}
