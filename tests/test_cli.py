import json

import pytest
from click.testing import CliRunner

from cronctl.cli import cli

URL = "https://hooks.example.com/tick"


@pytest.fixture
def invoke(db_path):
    runner = CliRunner()

    def _invoke(*args):
        return runner.invoke(cli, ["--db", db_path, *args])

    return _invoke


def test_add_list_show(invoke):
    res = invoke("job", "add", "tick", "--cron", "*/5 * * * *", "--url", URL,
                 "--header", "Authorization: Bearer x", "--max-retries", "2")
    assert res.exit_code == 0, res.output
    assert "Created tick" in res.output

    res = invoke("job", "list")
    assert "tick" in res.output and "*/5 * * * *" in res.output

    shown = json.loads(invoke("job", "show", "tick").output)
    assert shown["headers"] == {"Authorization": "Bearer x"}
    assert shown["max_retries"] == 2
    assert shown["enabled"] is True


def test_next_previews_occurrences(invoke):
    invoke("job", "add", "hourly", "--cron", "@hourly", "--url", URL)
    res = invoke("job", "next", "hourly", "--count", "3")
    assert res.exit_code == 0
    lines = res.output.strip().splitlines()
    assert len(lines) == 3
    assert all(line.endswith(":00:00.000000Z") for line in lines)


def test_one_shot_with_delay(invoke):
    res = invoke("job", "add", "later", "--in", "10m", "--url", URL)
    assert res.exit_code == 0, res.output
    assert json.loads(invoke("job", "show", "later").output)["cron"] is None


@pytest.mark.parametrize("args", [
    ("--cron", "* * * * *", "--run-at", "2030-01-01T00:00:00Z", "--url", URL),
    ("--url", URL),
    ("--cron", "99 * * * *", "--url", URL),
    ("--cron", "* * * * *"),
    ("--run-at", "2030-01-01T00:00:00Z", "--in", "5m", "--url", URL),
])
def test_add_rejects_bad_definitions(invoke, args):
    res = invoke("job", "add", "bad", *args)
    assert res.exit_code == 1
    assert "Error:" in res.output
    assert "No jobs." in invoke("job", "list").output


def test_update_enable_disable_remove(invoke):
    invoke("job", "add", "tick", "--cron", "*/5 * * * *", "--url", URL)
    assert invoke("job", "update", "tick", "--cron", "0 * * * *").exit_code == 0
    assert json.loads(invoke("job", "show", "tick").output)["cron"] == "0 * * * *"

    assert invoke("job", "disable", "tick").exit_code == 0
    assert "tick" in invoke("job", "list", "--disabled").output
    assert invoke("job", "enable", "tick").exit_code == 0

    assert invoke("job", "remove", "tick").exit_code == 0
    assert invoke("job", "remove", "tick").exit_code == 1
    assert invoke("job", "show", "tick").exit_code == 1


def test_update_missing_job(invoke):
    assert invoke("job", "update", "ghost", "--url", URL).exit_code == 1


def test_status_and_runs(invoke):
    status = json.loads(invoke("status").output)
    assert status["active"] == 0
    assert status["queued_tasks"] == 0
    assert set(status) >= {"pending", "claimed", "executing", "succeeded", "retry_scheduled", "failed_terminal"}
    assert "No runs." in invoke("runs", "list").output
    assert invoke("runs", "show", "1").exit_code == 1


def test_config_get_and_set(invoke):
    assert json.loads(invoke("config", "get").output)["backoff_policy"] == "exponential"
    assert invoke("config", "set", "backoff_policy", "linear").exit_code == 0
    assert json.loads(invoke("config", "get").output)["backoff_policy"] == "linear"


@pytest.mark.parametrize("key, value", [
    ("lease_timeout_seconds", "5"),
    ("no_such_key", "1"),
])
def test_config_set_rejects_invalid(invoke, key, value):
    res = invoke("config", "set", key, value)
    assert res.exit_code == 1
    assert "Error:" in res.output
