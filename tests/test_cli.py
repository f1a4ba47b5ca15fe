"""
Tests for the RAG CLI argument handling and exit codes.

Command implementations are patched; no database is needed.

Usage:
    pytest tests/test_cli.py -v
"""

from unittest.mock import MagicMock, patch

import psycopg2
import pytest

from src.rag import cli
from src.rag.errors import IndexUnsupportedError


@pytest.fixture(autouse=True)
def quiet_settings():
    with patch.object(cli, "get_settings", return_value=MagicMock()), \
         patch.object(cli, "setup_logging_from_settings"):
        yield


class TestCLI:
    """Tests for cli.main()."""

    def test_no_command_prints_help(self, capsys):
        """Without a command, help is printed and nothing runs."""
        cli.main([])
        assert "usage" in capsys.readouterr().out.lower()

    @patch.object(cli, "run_search", return_value=True)
    def test_search_arguments(self, run_search):
        """search passes query, tags, sort and limit through."""
        with pytest.raises(SystemExit) as exc:
            cli.main(["search", "kafka scaling", "--tags", "aws", "kafka", "--sort", "date", "-n", "3"])
        assert exc.value.code == 0
        _, query, tags, sort, limit = run_search.call_args[0]
        assert (query, tags, sort, limit) == ("kafka scaling", ["aws", "kafka"], "date", 3)

    @patch.object(cli, "run_audit", return_value=False)
    def test_audit_failure_exit_code(self, run_audit):
        """Invalid embeddings make audit exit 1."""
        with pytest.raises(SystemExit) as exc:
            cli.main(["audit"])
        assert exc.value.code == 1

    @patch.object(cli, "run_search", side_effect=IndexUnsupportedError("no vector search"))
    def test_rag_error_exit_code(self, run_search):
        """Library errors are logged and exit 1."""
        with pytest.raises(SystemExit) as exc:
            cli.main(["search", "q"])
        assert exc.value.code == 1

    @patch.object(cli, "run_index", return_value=True)
    def test_index_recreate(self, run_index):
        """index create --recreate is forwarded."""
        with pytest.raises(SystemExit):
            cli.main(["index", "create", "--recreate", "--field", "embedding"])
        _, action, name, field, recreate = run_index.call_args[0]
        assert (action, name, field, recreate) == ("create", None, "embedding", True)

    @patch.object(cli, "run_search", side_effect=psycopg2.OperationalError("could not connect to server"))
    def test_database_error_exit_code(self, run_search, caplog):
        """psycopg2 failures are logged and exit 1 instead of a traceback."""
        with pytest.raises(SystemExit) as exc:
            cli.main(["search", "q"])
        assert exc.value.code == 1
        assert "could not connect to server" in caplog.text
