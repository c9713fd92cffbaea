"""
Tests for the CLI interface.
"""
import json
import os
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from conftest import FakeTransport, sse_body
from llm_quota_guard.cli.main import EXIT_CODE_FAIL, EXIT_CODE_PASS, _parse_assignments, app
from llm_quota_guard.core.errors import FailureKind, TransportFailure

runner = CliRunner()


@pytest.fixture(autouse=True)
def no_api_key(monkeypatch):
    """Run every command without an API key in the environment."""
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)


@pytest.fixture
def config_path(tmp_path):
    """Write a settings file that keeps the database inside tmp_path."""
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.dump({"storage": {"db_path": str(tmp_path / "usage.db")}}), encoding="utf-8"
    )
    return str(path)


@pytest.fixture
def mock_transport():
    """Replace the OpenAI transport the service builds."""
    transport = FakeTransport(sse_body("Hello", " world", usage={"prompt_tokens": 40, "completion_tokens": 2}))
    with patch("llm_quota_guard.sdk.service.OpenAITransport", return_value=transport):
        yield transport


def invoke(config_path, *args):
    return runner.invoke(app, ["--config", config_path, *args])


class TestCLI:
    """Test CLI commands."""

    def test_no_command_prints_banner(self, config_path):
        result = invoke(config_path)

        assert result.exit_code == EXIT_CODE_PASS
        assert "LLM Quota Guard" in result.output

    def test_init_creates_database(self, config_path, tmp_path):
        result = invoke(config_path, "init")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized successfully" in result.output
        assert os.path.exists(tmp_path / "usage.db")

    def test_stats_table(self, config_path):
        result = invoke(config_path, "stats")

        assert result.exit_code == EXIT_CODE_PASS
        assert "daily" in result.output
        assert "monthly" in result.output
        assert "Requests in the last minute: 0" in result.output

    def test_stats_json(self, config_path):
        result = invoke(config_path, "stats", "--json")

        assert result.exit_code == EXIT_CODE_PASS
        assert "current_minute_requests" in result.output

    def test_commands_close_the_service(self, config_path, mock_transport):
        for args in (["stats"], ["check", "hello"], ["reset", "daily"], ["limits"], ["export"]):
            result = invoke(config_path, *args)
            assert result.exit_code == EXIT_CODE_PASS

        assert mock_transport.aclosed == 5

    def test_check_allowed(self, config_path):
        result = invoke(config_path, "check", "What is on this page?")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Allowed" in result.output

    def test_limits_update_then_check_denied(self, config_path):
        """Test that updated limits persist between invocations."""
        result = invoke(config_path, "limits", "--set", "daily.requests=0")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Quota Limits" in result.output

        result = invoke(config_path, "check", "hello")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "daily_requests" in result.output

    def test_limits_rejects_bad_number(self, config_path):
        result = invoke(config_path, "limits", "--set", "daily.tokens=lots")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid number" in result.output

    def test_limits_rejects_invalid_value(self, config_path):
        result = invoke(config_path, "limits", "--set", "daily.tokens=-1")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "current limits kept" in result.output

    def test_reset_invalid_period(self, config_path):
        result = invoke(config_path, "reset", "weekly")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid period" in result.output

    def test_reset_daily(self, config_path):
        result = invoke(config_path, "reset", "daily")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Daily usage reset" in result.output

    def test_export_and_import(self, config_path, tmp_path):
        export_file = str(tmp_path / "export.json")

        result = invoke(config_path, "export", "--output", export_file)
        assert result.exit_code == EXIT_CODE_PASS
        with open(export_file, encoding="utf-8") as f:
            data = json.load(f)
        assert data["version"] == "1.0.0"

        result = invoke(config_path, "import", export_file)
        assert result.exit_code == EXIT_CODE_PASS

    def test_import_invalid_file(self, config_path, tmp_path):
        bad_file = tmp_path / "bad.json"
        bad_file.write_text(json.dumps({"nothing": True}), encoding="utf-8")

        result = invoke(config_path, "import", str(bad_file))

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error importing data" in result.output


class TestAskCommand:
    """Test completions from the CLI."""

    def test_ask_streams_answer(self, config_path, mock_transport):
        result = invoke(config_path, "ask", "Say hello")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Hello world" in result.output
        assert "42 tokens" in result.output

        stats = invoke(config_path, "stats", "--json")
        assert '"requests": 1' in stats.output

    def test_ask_with_page(self, config_path, mock_transport, tmp_path):
        page = tmp_path / "article.md"
        page.write_text("# Title\n\nSome content here.", encoding="utf-8")

        result = invoke(config_path, "ask", "Summarize", "--page", str(page))

        assert result.exit_code == EXIT_CODE_PASS
        system = mock_transport.requests[0]["messages"][0]
        assert system["role"] == "system"
        assert "Some content here." in system["content"]

    def test_ask_no_stream(self, config_path, mock_transport):
        result = invoke(config_path, "ask", "Say hello", "--no-stream")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Hello there" in result.output
        assert mock_transport.completed == 1

    def test_ask_denied(self, config_path, mock_transport):
        invoke(config_path, "limits", "--set", "daily.requests=0")

        result = invoke(config_path, "ask", "Say hello")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "daily_requests" in result.output
        assert mock_transport.requests == []

    def test_ask_without_api_key_fails_as_auth(self, config_path):
        """Verify a missing key only fails the request, not the service."""
        result = invoke(config_path, "ask", "Say hello")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Failed (auth)" in result.output

        stats = invoke(config_path, "stats", "--json")
        assert stats.exit_code == EXIT_CODE_PASS
        assert '"requests": 0' in stats.output

    def test_ask_transport_failure(self, config_path, mock_transport):
        mock_transport.open_error = TransportFailure(FailureKind.AUTH, "Invalid API key.")

        result = invoke(config_path, "ask", "Say hello")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Failed (auth)" in result.output


class TestParseAssignments:
    """Test --set parsing."""

    def test_numbers_and_null(self):
        partial = _parse_assignments(["daily.tokens=500", "monthly.cost=1.5", "per_minute.requests=none"])

        assert partial == {
            "daily": {"tokens": 500},
            "monthly": {"cost": 1.5},
            "per_minute": {"requests": None},
        }

    def test_missing_section(self):
        with pytest.raises(ValueError, match="section.key=value"):
            _parse_assignments(["tokens=5"])
