from unittest import mock

import pytest
from typer.testing import CliRunner

from conftest import make_token
from osgen.cli import app
from osgen.credentials import Credential

runner = CliRunner()


@pytest.fixture
def cli_env(monkeypatch):
    monkeypatch.setenv("OS_HOSTNAME", "env.outsystems.dev")
    monkeypatch.setenv("OSGEN_TOKEN", make_token())


@pytest.fixture
def patched_orchestrator(cli_env, make_orchestrator):
    with mock.patch("osgen.cli._build_orchestrator", side_effect=lambda settings: make_orchestrator()) as m:
        yield m


def test_deploy_prints_progress_and_url(patched_orchestrator):
    result = runner.invoke(app, ["deploy", "A todo app"])

    assert result.exit_code == 0, result.output
    assert "Step 1/7: Creating generation job..." in result.output
    assert "Current status: Finished" in result.output
    assert "https://env-dev.outsystems.app/app1" in result.output
    patched_orchestrator.assert_called_once()


def test_deploy_prompts_when_argument_missing(patched_orchestrator):
    result = runner.invoke(app, ["deploy"], input="A todo app\n")
    assert result.exit_code == 0, result.output
    assert "https://env-dev.outsystems.app/app1" in result.output


def test_deploy_failure_exit_code(patched_orchestrator, fake_remote):
    fake_remote.job_script = [{"key": "job-1", "status": "Failed"}]
    result = runner.invoke(app, ["deploy", "A todo app"])
    assert result.exit_code == 1
    assert "Error during poll_ready" in result.output
    assert "STAGE_FAILURE" in result.output


def test_deploy_without_configuration(monkeypatch):
    monkeypatch.delenv("OS_HOSTNAME", raising=False)
    result = runner.invoke(app, ["deploy", "A todo app"])
    assert result.exit_code == 2
    assert "OS_HOSTNAME" in result.output


def test_deploy_without_credentials(monkeypatch):
    monkeypatch.setenv("OS_HOSTNAME", "env.outsystems.dev")
    monkeypatch.delenv("OSGEN_TOKEN", raising=False)
    monkeypatch.delenv("OSGEN_CREDENTIAL_PROVIDER", raising=False)
    result = runner.invoke(app, ["deploy", "A todo app"])
    assert result.exit_code == 2
    assert "Configuration error" in result.output


def test_check_auth_reports_expiry(cli_env):
    result = runner.invoke(app, ["check-auth"])
    assert result.exit_code == 0, result.output
    assert "Authenticated against env.outsystems.dev" in result.output
    assert "Token expires at" in result.output


@mock.patch("osgen.cli.CredentialCache")
def test_check_auth_failure(mock_cache_cls, cli_env):
    from osgen.errors import AuthFailure

    mock_cache = mock_cache_cls.from_settings.return_value
    mock_cache.get_token = mock.AsyncMock(side_effect=AuthFailure("Failed to retrieve authentication token."))
    result = runner.invoke(app, ["check-auth"])
    assert result.exit_code == 1
    assert "AUTH_FAILURE" in result.output


@mock.patch("osgen.cli.CredentialCache")
def test_check_auth_uses_credential(mock_cache_cls, cli_env):
    mock_cache = mock_cache_cls.from_settings.return_value
    mock_cache.get_token = mock.AsyncMock(return_value=Credential(token="t", expires_at=0))
    result = runner.invoke(app, ["check-auth"])
    assert result.exit_code == 0
    assert "1970-01-01T00:00:00+00:00" in result.output


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "osgen" in result.output
