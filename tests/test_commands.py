import json

import pytest
from typer.testing import CliRunner

import kanidm_provision.commands as commands
from kanidm_provision.client import KanidmClient
from kanidm_provision.main import app
from kanidm_provision.validation import PROVISION_TRACKING_GROUP

from conftest import ADMIN_PASSWORD

runner = CliRunner()


@pytest.fixture
def cli_env(server, monkeypatch):
    monkeypatch.setenv("KANIDM_PROVISION_IDM_ADMIN_TOKEN", ADMIN_PASSWORD)
    monkeypatch.setattr(
        commands,
        "KanidmClient",
        lambda settings: KanidmClient(settings, transport=server.transport()),
    )
    return server


def _write_state(tmp_path, state: dict):
    path = tmp_path / "state.json"
    path.write_text(json.dumps(state))
    return path


def test_sync_command(cli_env, tmp_path):
    path = _write_state(tmp_path, {"persons": {"alice": {"displayName": "Alice"}}})

    result = runner.invoke(app, ["sync", "--url", "https://idm.example.com", "--state", str(path)])

    assert result.exit_code == 0, result.output
    assert "+ person/alice" in result.output
    assert "alice" in cli_env.names("person")


def test_sync_command_no_auto_remove(cli_env, tmp_path):
    cli_env.add_person("bob")
    cli_env.add_group(PROVISION_TRACKING_GROUP, members=["bob"])
    path = _write_state(tmp_path, {})

    result = runner.invoke(app, ["sync", "--state", str(path), "--no-auto-remove"])

    assert result.exit_code == 0, result.output
    assert "bob" in cli_env.names("person")
    assert "? bob" in result.output


def test_sync_command_validation_error(cli_env, tmp_path):
    path = _write_state(
        tmp_path,
        {"groups": {"ops": {}}, "persons": {"ops": {"displayName": "Ops"}}},
    )

    result = runner.invoke(app, ["sync", "--state", str(path)])

    assert result.exit_code == 1
    assert cli_env.calls == []


def test_sync_command_bad_password(cli_env, tmp_path, monkeypatch):
    monkeypatch.setenv("KANIDM_PROVISION_IDM_ADMIN_TOKEN", "wrong")
    path = _write_state(tmp_path, {})

    result = runner.invoke(app, ["sync", "--state", str(path)])

    assert result.exit_code == 1


def test_sync_command_invalid_state_file(cli_env, tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json")

    result = runner.invoke(app, ["sync", "--state", str(path)])

    assert result.exit_code == 1
    assert cli_env.calls == []


def test_status_command(cli_env):
    cli_env.add_person("alice", display_name="Alice")
    cli_env.add_oauth2("wiki", public=True, attrs={"oauth2_rs_origin": ["https://wiki"]})
    cli_env.add_group(PROVISION_TRACKING_GROUP, members=["alice"])

    result = runner.invoke(app, ["status"])

    assert result.exit_code == 0, result.output
    assert "alice: Alice (provisioned)" in result.output
    assert "wiki [public]" in result.output
    assert "origin: https://wiki" in result.output
    assert "Provisioned entities: 1" in result.output
