import json

import pytest
from typer.testing import CliRunner

from idm.provision.cli import commands
from idm.provision.cli.main import app
from idm.provision.errors import FatalError

runner = CliRunner()


class FakeClient:
    """Async context manager handing out the in-memory directory."""

    def __init__(self, directory, settings):
        self.directory = directory
        self.settings = settings

    async def __aenter__(self):
        return self.directory

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None


@pytest.fixture
def fake_client(monkeypatch, directory):
    created = []

    def factory(settings):
        client = FakeClient(directory, settings)
        created.append(client)
        return client

    monkeypatch.setenv("IDM_PROVISION_ADMIN_TOKEN", "token")
    monkeypatch.setattr(commands, "IdmAdminClient", factory)
    return created


@pytest.fixture
def state_file(tmp_path, end_to_end_document):
    path = tmp_path / "state.json"
    path.write_text(json.dumps(end_to_end_document))
    return path


def test_validate_accepts_valid_document(state_file):
    result = runner.invoke(app, ["validate", "--state", str(state_file)])

    assert result.exit_code == 0
    assert "Valid: 1 groups, 1 persons, 0 oauth2 resource servers" in result.output


def test_validate_rejects_uppercase_names(tmp_path):
    path = tmp_path / "state.json"
    path.write_text(json.dumps({"groups": {"Admins": {}}}))

    result = runner.invoke(app, ["validate", "--state", str(path)])

    assert result.exit_code == 1
    assert "must be lowercase" in result.output


def test_sync_applies_and_reports(fake_client, directory, state_file):
    result = runner.invoke(
        app, ["sync", "--url", "https://idm.example.com", "--state", str(state_file)]
    )

    assert result.exit_code == 0, result.output
    assert "+ create person alice" in result.output
    assert "+ create group devs (members: alice)" in result.output
    assert "Applied 2 operations" in result.output
    assert directory.tracked == {"alice", "devs"}
    assert fake_client[0].settings.base_url == "https://idm.example.com"


def test_sync_dry_run_makes_no_changes(fake_client, directory, state_file):
    result = runner.invoke(app, ["sync", "--state", str(state_file), "--dry-run"])

    assert result.exit_code == 0, result.output
    assert "[DRY RUN] No changes applied" in result.output
    assert directory.writes == []


def test_sync_no_auto_remove(fake_client, directory, tmp_path):
    directory.add_group("old", tracked=True)
    path = tmp_path / "state.json"
    path.write_text("{}")

    result = runner.invoke(app, ["sync", "--state", str(path), "--no-auto-remove"])

    assert result.exit_code == 0, result.output
    assert "? group old" in result.output
    assert "old" in directory.groups


def test_sync_exits_non_zero_on_operation_failure(fake_client, directory, state_file):
    from idm.provision.errors import TransientError

    directory.fail("create_entity", "alice", TransientError("503"))

    result = runner.invoke(app, ["sync", "--state", str(state_file)])

    assert result.exit_code == 1
    assert "Failed: 1" in result.output


def test_sync_exits_non_zero_on_plan_error(fake_client, directory, tmp_path):
    path = tmp_path / "state.json"
    path.write_text(json.dumps({"groups": {"devs": {"members": ["ghost"]}}}))

    result = runner.invoke(app, ["sync", "--state", str(path)])

    assert result.exit_code == 1
    assert "Planning failed" in result.output
    assert directory.writes == []


def test_sync_exits_non_zero_on_fatal_error(fake_client, directory, state_file):
    directory.fail("create_entity", "alice", FatalError("token expired", status_code=401))

    result = runner.invoke(app, ["sync", "--state", str(state_file), "--max-workers", "1"])

    assert result.exit_code == 1
    assert "Fatal error, run aborted" in result.output
    assert directory.tracked == set()


def test_sync_requires_existing_state_file(tmp_path):
    result = runner.invoke(app, ["sync", "--state", str(tmp_path / "missing.json")])
    assert result.exit_code != 0


def test_status_lists_entities(fake_client, directory):
    directory.add_person("alice", tracked=True)
    directory.add_group("admins")

    result = runner.invoke(app, ["status"])

    assert result.exit_code == 0, result.output
    assert "* alice" in result.output
    assert "  admins" in result.output


def test_sync_writes_tracking_when_only_adopting(fake_client, directory, state_file):
    directory.add_person("alice", "Alice")
    directory.add_group("devs", ["alice"])

    result = runner.invoke(app, ["sync", "--state", str(state_file)])

    assert result.exit_code == 0, result.output
    assert "Adopting into tracking group: 2" in result.output
    assert directory.tracked == {"alice", "devs"}
