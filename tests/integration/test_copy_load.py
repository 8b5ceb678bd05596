"""Integration tests for load_csv: COPY into the flights tables."""

from __future__ import annotations

import csv
import uuid
from pathlib import Path

import pytest

from flights_etl.load_csv import LoadCounters, _run_load
from flights_etl.shared import RejectWriter

CSV_HEADER = [f"Col_{i}" for i in range(1, 20)]


def _write_flights_csv(path: Path, rows: list[list[str]]) -> Path:
    """Write a Col_1..Col_19 CSV; short rows are padded with generated values."""
    with path.open("w", newline="", encoding="utf-8") as fh:
        writer = csv.writer(fh)
        writer.writerow(CSV_HEADER)
        for row in rows:
            writer.writerow(list(row) + [f"v{i}" for i in range(len(row) + 1, 20)])
    return path


def _load(dsn, tmp_path, csv_path, table="flights_base", replace=True, dry_run=False):
    counters = LoadCounters()
    _run_load(
        run_id=str(uuid.uuid4()),
        db_dsn=dsn,
        counters=counters,
        rejects=RejectWriter(tmp_path / "rejects.csv"),
        csv_path=str(csv_path),
        table=table,
        key_column="col_1",
        delimiter=",",
        encoding="utf-8-sig",
        replace=replace,
        dry_run=dry_run,
    )
    return counters


def _keys(conn, table="flights_base"):
    return [r[0] for r in conn.execute(f"SELECT col_1 FROM {table} ORDER BY load_seq").fetchall()]


def test_load_preserves_file_order(db_conn, tmp_path):
    conn, dsn = db_conn
    path = _write_flights_csv(tmp_path / "base.csv", [["K3"], ["K1"], ["K3", "dup"]])

    counters = _load(dsn, tmp_path, path)

    assert counters.rows_read == 3
    assert counters.rows_loaded == 3
    assert counters.table_count_after == 3
    assert _keys(conn) == ["K3", "K1", "K3"]
    row = conn.execute(
        "SELECT col_2, col_19 FROM flights_base ORDER BY load_seq LIMIT 1"
    ).fetchone()
    assert row == ("v2", "v19")


def test_blank_values_load_as_null_and_blank_keys_rejected(db_conn, tmp_path):
    conn, dsn = db_conn
    path = _write_flights_csv(tmp_path / "new.csv", [["K1", ""], ["", "x"]])

    counters = _load(dsn, tmp_path, path, table="flights_new")

    assert counters.rows_rejected == 1
    assert counters.rows_loaded == 1
    assert (tmp_path / "rejects.csv").exists()
    row = conn.execute("SELECT col_1, col_2 FROM flights_new").fetchone()
    assert row == ("K1", None)


def test_replace_truncates_and_restarts_sequence(db_conn, tmp_path):
    conn, dsn = db_conn
    _load(dsn, tmp_path, _write_flights_csv(tmp_path / "a.csv", [["A1"], ["A2"]]))
    counters = _load(dsn, tmp_path, _write_flights_csv(tmp_path / "b.csv", [["B1"]]))

    assert counters.rows_truncated == 2
    assert _keys(conn) == ["B1"]
    assert conn.execute("SELECT MIN(load_seq) FROM flights_base").fetchone()[0] == 1


def test_append_mode_keeps_existing_rows(db_conn, tmp_path):
    conn, dsn = db_conn
    _load(dsn, tmp_path, _write_flights_csv(tmp_path / "a.csv", [["A1"]]))
    counters = _load(
        dsn, tmp_path, _write_flights_csv(tmp_path / "b.csv", [["B1"]]), replace=False
    )

    assert counters.rows_truncated == 0
    assert counters.table_count_after == 2
    assert _keys(conn) == ["A1", "B1"]


def test_dry_run_rolls_back(db_conn, tmp_path):
    conn, dsn = db_conn
    counters = _load(
        dsn, tmp_path, _write_flights_csv(tmp_path / "a.csv", [["A1"]]), dry_run=True
    )

    assert counters.rows_loaded == 1
    assert _keys(conn) == []


def test_missing_headers_is_fatal(db_conn, tmp_path):
    conn, dsn = db_conn
    path = tmp_path / "bad.csv"
    path.write_text("Col_1,Col_2\nK1,a\n", encoding="utf-8")

    with pytest.raises(SystemExit) as exc_info:
        _load(dsn, tmp_path, path)
    assert exc_info.value.code == 1
    assert _keys(conn) == []
