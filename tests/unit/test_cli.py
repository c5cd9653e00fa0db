import pytest
from typer.testing import CliRunner

from circleflow.cli import app

WORKFLOW_YAML = """
id: wf-purchase
name: Purchase
organizationId: org-1
steps:
  - id: mgr
    name: Manager sign-off
    type: approval
    approverRule:
      kind: manager
  - id: done
    type: terminal
"""


@pytest.fixture
def runner(tmp_path, monkeypatch) -> CliRunner:
    monkeypatch.setenv("CIRCLEFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("CIRCLEFLOW_DATABASE_URL", f"sqlite://{tmp_path / 'cli.db'}")
    return CliRunner()


def test_workflow_load_list_and_show(runner, tmp_path):
    path = tmp_path / "purchase.yaml"
    path.write_text(WORKFLOW_YAML)

    result = runner.invoke(app, ["workflow", "load", str(path)])
    assert result.exit_code == 0, result.stdout
    assert "Loaded workflow wf-purchase (2 steps)" in result.stdout

    listed = runner.invoke(app, ["workflow", "list"])
    assert "wf-purchase\tPurchase\t2 steps" in listed.stdout

    shown = runner.invoke(app, ["workflow", "show", "wf-purchase"])
    assert shown.exit_code == 0
    assert "0. [approval] mgr - Manager sign-off" in shown.stdout
    assert "1. [terminal] done" in shown.stdout

    missing = runner.invoke(app, ["workflow", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "Workflow not found" in missing.stdout


def test_workflow_load_rejects_missing_and_invalid_files(runner, tmp_path):
    result = runner.invoke(app, ["workflow", "load", str(tmp_path / "nope.yaml")])
    assert result.exit_code == 1
    assert "does not exist" in result.stdout

    bad = tmp_path / "bad.yaml"
    bad.write_text("name: no id\n")
    result = runner.invoke(app, ["workflow", "load", str(bad)])
    assert result.exit_code == 1
    assert "Invalid workflow definition" in result.stdout


def test_request_start_and_status(runner, tmp_path):
    path = tmp_path / "purchase.yaml"
    path.write_text(WORKFLOW_YAML)
    runner.invoke(app, ["workflow", "load", str(path)])
    runner.invoke(app, ["user", "add", "u-mgr", "org-1", "--name", "Max"])
    runner.invoke(app, ["user", "add", "u-req", "org-1", "--manager", "u-mgr"])

    created = runner.invoke(app, ["request", "create", "u-req", "org-1", "--title", "Laptop"])
    assert created.exit_code == 0
    request_id = created.stdout.strip()

    started = runner.invoke(
        app, ["request", "start", "wf-purchase", request_id, "--data", '{"amount": 5}']
    )
    assert started.exit_code == 0, started.stdout
    assert "mgr\tapproval\twaiting" in started.stdout

    status = runner.invoke(app, ["request", "status", "wf-purchase", request_id])
    assert status.exit_code == 0
    assert f"Request {request_id}: pending_approval" in status.stdout
    assert "[u-mgr]: pending" in status.stdout
    assert "started" in status.stdout

    missing = runner.invoke(app, ["request", "start", "missing", request_id])
    assert missing.exit_code == 1
    assert "Workflow not found" in missing.stdout


def test_request_start_requires_json_object(runner):
    not_object = runner.invoke(app, ["request", "start", "wf-purchase", "r-1", "--data", "[1]"])
    assert not_object.exit_code == 1
    assert "--data must be a JSON object" in not_object.stdout

    not_json = runner.invoke(app, ["request", "start", "wf-purchase", "r-1", "--data", "{"])
    assert not_json.exit_code == 1
    assert "--data must be valid JSON" in not_json.stdout
