"""Unit tests for CLI fatal-error handling that need no running database."""

from __future__ import annotations

import pytest
from click.testing import CliRunner

from flights_etl.cli import main

# Nothing listens on port 1, so the connect attempt is refused at once.
UNREACHABLE_DSN = "host=127.0.0.1 port=1 dbname=flights user=etl connect_timeout=2"


@pytest.mark.parametrize("mode", ["reconcile", "verify"])
def test_unreachable_database_is_fatal(mode, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    result = CliRunner().invoke(
        main, ["--db-dsn", UNREACHABLE_DSN, "--mode", mode, "--run-id", "r1"]
    )

    assert result.exit_code == 1
    assert "[r1] FATAL: cannot connect to database" in result.output
    assert not (tmp_path / "artifacts" / "reports").exists()


def test_load_unreachable_database_is_fatal(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    csv_path = tmp_path / "flights.csv"
    csv_path.write_text("col_1,col_2\nK1,a\n", encoding="utf-8")

    result = CliRunner().invoke(
        main,
        ["--db-dsn", UNREACHABLE_DSN, "--mode", "load_base",
         "--csv-path", str(csv_path), "--run-id", "r2"],
    )

    assert result.exit_code == 1
    assert "[r2] FATAL: cannot connect to database" in result.output
