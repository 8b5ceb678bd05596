"""End-to-end tests for the flights_etl CLI (load → reconcile → verify)."""

from __future__ import annotations

import csv
import json
from pathlib import Path

import psycopg
from click.testing import CliRunner

import flights_etl.cli as cli_mod
from flights_etl.cli import main

CSV_HEADER = [f"Col_{i}" for i in range(1, 20)]


def _write_csv(path: Path, rows: list[tuple[str, str]]) -> str:
    with path.open("w", newline="", encoding="utf-8") as fh:
        writer = csv.writer(fh)
        writer.writerow(CSV_HEADER)
        for key, value in rows:
            writer.writerow([key, value] + [f"v{i}" for i in range(3, 20)])
    return str(path)


def _invoke(dsn: str, *args: str):
    return CliRunner().invoke(main, ["--db-dsn", dsn, *args])


def _base_rows(conn):
    rows = [
        (r[0], r[1])
        for r in conn.execute(
            "SELECT col_1, col_2 FROM flights_base ORDER BY load_seq"
        ).fetchall()
    ]
    # release locks so the next CLI run can ALTER the table
    conn.rollback()
    return rows


def test_full_pipeline(db_conn, tmp_path, monkeypatch):
    conn, dsn = db_conn
    monkeypatch.chdir(tmp_path)
    base_csv = _write_csv(tmp_path / "flights_5000.csv", [("K1", "old"), ("K1", "older"), ("K2", "b")])
    new_csv = _write_csv(tmp_path / "flights_10000.csv", [("K1", "new"), ("K3", "c"), ("K3", "c2")])

    result = _invoke(dsn, "--mode", "load_base", "--csv-path", base_csv)
    assert result.exit_code == 0, result.output
    result = _invoke(dsn, "--mode", "load_incoming", "--csv-path", new_csv)
    assert result.exit_code == 0, result.output

    result = _invoke(dsn, "--mode", "verify")
    assert result.exit_code == 1
    assert "ERROR - duplicate keys found" in result.output

    result = _invoke(dsn, "--mode", "reconcile", "--run-id", "run-1")
    assert result.exit_code == 0, result.output
    assert "Committed." in result.output
    report = json.loads((tmp_path / "artifacts" / "reports" / "run-1.json").read_text())
    assert report["counters"] == {
        "base_count_before": 3,
        "incoming_count_total": 3,
        "base_duplicates_removed": 1,
        "incoming_unique_count": 2,
        "inserted": 1,
        "updated": 1,
        "base_count_after": 3,
    }
    assert _base_rows(conn) == [("K1", "new"), ("K2", "b"), ("K3", "c")]

    result = _invoke(dsn, "--mode", "verify")
    assert result.exit_code == 0, result.output
    assert "OK - no duplicate keys in flights_base" in result.output

    # second run with the same input changes nothing
    result = _invoke(dsn, "--mode", "reconcile", "--run-id", "run-2")
    assert result.exit_code == 0, result.output
    second = json.loads((tmp_path / "artifacts" / "reports" / "run-2.json").read_text())
    assert second["counters"]["inserted"] == 0
    assert second["counters"]["updated"] == 2
    assert _base_rows(conn) == [("K1", "new"), ("K2", "b"), ("K3", "c")]


def test_reconcile_dry_run(db_conn, tmp_path, monkeypatch):
    conn, dsn = db_conn
    monkeypatch.chdir(tmp_path)
    conn.execute("INSERT INTO flights_base (col_1, col_2) VALUES ('K1', 'a'), ('K1', 'b')")
    conn.execute("INSERT INTO flights_new (col_1, col_2) VALUES ('K2', 'x')")
    conn.commit()

    result = _invoke(dsn, "--mode", "reconcile", "--dry-run")

    assert result.exit_code == 0, result.output
    assert "dry_run: True" in result.output
    assert _base_rows(conn) == [("K1", "a"), ("K1", "b")]


def test_reconcile_schema_mismatch_exits_nonzero(db_conn, tmp_path, monkeypatch):
    conn, dsn = db_conn
    monkeypatch.chdir(tmp_path)
    conn.execute("ALTER TABLE flights_new ADD COLUMN col_20 VARCHAR(100)")
    conn.commit()

    result = _invoke(dsn, "--mode", "reconcile")

    assert result.exit_code == 1
    assert not (tmp_path / "artifacts" / "reports").exists()


def test_load_requires_csv_path(db_conn, tmp_path, monkeypatch):
    _, dsn = db_conn
    monkeypatch.chdir(tmp_path)

    result = _invoke(dsn, "--mode", "load_base")

    assert result.exit_code == 1


def test_reconcile_db_error_is_fatal(db_conn, tmp_path, monkeypatch):
    conn, dsn = db_conn
    monkeypatch.chdir(tmp_path)
    conn.execute("INSERT INTO flights_base (col_1, col_2) VALUES ('K1', 'a')")
    conn.commit()

    def failing_reconcile(conn, **kwargs):
        raise psycopg.OperationalError("server closed the connection")

    monkeypatch.setattr(cli_mod, "reconcile_tables", failing_reconcile)
    result = _invoke(dsn, "--mode", "reconcile", "--run-id", "r1")

    assert result.exit_code == 1
    assert "[r1] FATAL: reconcile failed with DB error" in result.output
    assert _base_rows(conn) == [("K1", "a")]


def test_verify_missing_table_is_fatal(db_conn, tmp_path, monkeypatch):
    _, dsn = db_conn
    monkeypatch.chdir(tmp_path)

    result = _invoke(dsn, "--mode", "verify", "--base-table", "no_such_table", "--run-id", "r2")

    assert result.exit_code == 1
    assert "[r2] FATAL: verify failed with DB error" in result.output
    assert not (tmp_path / "artifacts" / "reports").exists()
