"""
Unit tests for the stride CLI.

Commands run against the in-memory test database by patching the session
factory they import.
"""

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner
from sqlalchemy.orm import sessionmaker

from stride import __version__
from stride.cli.main import cli
from stride.models import NotificationRecord


@pytest.fixture
def cli_runner():
    """Create a Click CLI runner."""
    return CliRunner()


@pytest.fixture
def cli_db(test_db_engine):
    """Point the CLI's SessionLocal at the test engine."""
    factory = sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)
    with patch("stride.db.database.SessionLocal", factory):
        yield factory


def test_version(cli_runner):
    result = cli_runner.invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


class TestSendCommand:
    """Tests for 'stride send'."""

    def test_test_notification(self, cli_runner, cli_db, create_user, test_db_session):
        user = create_user("student-1")

        result = cli_runner.invoke(cli, ["send", user.id])

        assert result.exit_code == 0, result.output
        assert "student-1: in-app, realtime" in result.output
        record = test_db_session.query(NotificationRecord).one()
        assert record.kind == "test"

    def test_custom_notification(self, cli_runner, cli_db, create_user, test_db_session):
        user = create_user("student-1")

        result = cli_runner.invoke(cli, [
            "send", user.id,
            "--title", "Exam moved",
            "--body", "Now in hall B",
            "--data", '{"room": "B"}',
            "--sender", "registrar",
        ])

        assert result.exit_code == 0, result.output
        record = test_db_session.query(NotificationRecord).one()
        assert record.title == "Exam moved"
        assert record.sender_id == "registrar"
        assert record.data == {"type": "custom", "room": "B"}

    def test_unknown_user(self, cli_runner, cli_db):
        result = cli_runner.invoke(cli, ["send", "ghost"])

        assert result.exit_code == 1
        assert "User not found: ghost" in result.output

    def test_invalid_message(self, cli_runner, cli_db, create_user):
        user = create_user("student-1")

        result = cli_runner.invoke(cli, ["send", user.id, "--title", "x" * 101, "--body", "b"])

        assert result.exit_code == 1
        assert "Title is too long" in result.output

    @pytest.mark.parametrize("data", ["{nope", "[1, 2]"])
    def test_bad_data_option(self, cli_runner, cli_db, create_user, data):
        user = create_user("student-1")

        result = cli_runner.invoke(cli, ["send", user.id, "--title", "t", "--body", "b", "--data", data])

        assert result.exit_code == 2
        assert "--data" in result.output


def test_serve_runs_uvicorn(cli_runner):
    with patch("uvicorn.run") as mock_run:
        result = cli_runner.invoke(cli, ["serve", "--port", "9000"])

    assert result.exit_code == 0
    mock_run.assert_called_once_with(
        "stride.main:app", host="127.0.0.1", port=9000, reload=False, log_level="info"
    )


def test_campus_command(cli_runner, cli_db, create_user):
    create_user()
    create_user()
    create_user(school_domain="other.edu")

    result = cli_runner.invoke(cli, ["campus", "stride.edu", "--title", "Fire drill", "--body", "At 3pm"])

    assert result.exit_code == 0, result.output
    assert "2/2 recipients reached." in result.output


def test_campus_requires_title(cli_runner, cli_db):
    result = cli_runner.invoke(cli, ["campus", "stride.edu", "--body", "At 3pm"])
    assert result.exit_code == 2


def test_cleanup_tokens(cli_runner, cli_db, create_user, create_push_target):
    create_push_target(create_user(), token="not-a-token")
    create_push_target(create_user())

    result = cli_runner.invoke(cli, ["cleanup-tokens"])

    assert result.exit_code == 0
    assert "Cleared 1 invalid token(s)." in result.output


def test_stats_json(cli_runner, cli_db, create_user, create_push_target):
    create_push_target(create_user())
    create_user()

    result = cli_runner.invoke(cli, ["stats", "--json"])

    assert result.exit_code == 0
    assert json.loads(result.output) == {
        "total_users": 2,
        "users_with_expo_tokens": 1,
        "users_with_push_enabled": 1,
        "recent_notifications": 0,
    }
