"""flights_etl.load_csv

Bulk CSV loader (--mode load_base / --mode load_incoming).

Pre-scan reads the whole file with csv.DictReader, matches headers to the
table's columns (Col_1 -> col_1), and rejects rows without a business key.
The DB phase streams the accepted rows with COPY ... FROM STDIN in file
order, so the table's load_seq identity reflects insertion order.

Empty fields load as NULL, the same as COPY ... FORMAT csv would do.
"""

from __future__ import annotations

import csv
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click
import psycopg
from psycopg import sql

from flights_etl.reconcile_pg import SEQ_COLUMN, table_columns
from flights_etl.shared import RejectWriter, normalize_header, normalize_headers, trim


class MissingHeadersError(Exception):
    """Raised when the CSV header lacks columns the target table requires."""

    def __init__(self, missing: set[str]) -> None:
        self.missing = missing
        super().__init__(f"missing headers: {sorted(missing)}")


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class LoadCounters:
    rows_read: int = 0
    rows_rejected: int = 0
    rows_loaded: int = 0
    rows_truncated: int = 0
    table_count_after: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_read": self.rows_read,
            "rows_rejected": self.rows_rejected,
            "rows_loaded": self.rows_loaded,
            "rows_truncated": self.rows_truncated,
            "table_count_after": self.table_count_after,
        }


# ---------------------------------------------------------------------------
# Pre-scan
# ---------------------------------------------------------------------------

def _cell(value: str | None) -> str | None:
    return None if value is None or value == "" else value


def read_csv_rows(
    csv_path: Path,
    columns: list[str],
    key_column: str,
    counters: LoadCounters,
    rejects: RejectWriter,
    delimiter: str = ",",
    encoding: str = "utf-8-sig",
) -> list[tuple[str | None, ...]]:
    """Return accepted rows as tuples ordered like *columns*.

    Raises MissingHeadersError before any row is read if a column is absent.
    Columns in the file that the table does not have are ignored.
    """
    rows: list[tuple[str | None, ...]] = []
    with csv_path.open(encoding=encoding, newline="") as fh:
        reader = csv.DictReader(fh, delimiter=delimiter)
        headers = {normalize_header(h) for h in reader.fieldnames or []}
        missing = set(columns) - headers
        if missing:
            raise MissingHeadersError(missing)

        for raw_row in reader:
            counters.rows_read += 1
            row = normalize_headers(raw_row)
            if trim(row.get(key_column)) is None:
                rejects.write(
                    {k: v for k, v in raw_row.items() if k is not None},
                    "missing_business_key",
                )
                counters.rows_rejected += 1
                continue
            rows.append(tuple(_cell(row.get(c)) for c in columns))
    return rows


# ---------------------------------------------------------------------------
# DB phase
# ---------------------------------------------------------------------------

def copy_rows(
    conn: psycopg.Connection,
    table: str,
    columns: list[str],
    rows: list[tuple[str | None, ...]],
) -> int:
    statement = sql.SQL("COPY {} ({}) FROM STDIN").format(
        sql.Identifier(table),
        sql.SQL(", ").join(map(sql.Identifier, columns)),
    )
    with conn.cursor() as cur:
        with cur.copy(statement) as copy:
            for row in rows:
                copy.write_row(row)
    return len(rows)


def truncate_table(conn: psycopg.Connection, table: str) -> int:
    row = conn.execute(
        sql.SQL("SELECT COUNT(*) FROM {}").format(sql.Identifier(table))
    ).fetchone()
    conn.execute(
        sql.SQL("TRUNCATE TABLE {} RESTART IDENTITY").format(sql.Identifier(table))
    )
    return int(row[0])


def load_rows(
    conn: psycopg.Connection,
    table: str,
    columns: list[str],
    rows: list[tuple[str | None, ...]],
    counters: LoadCounters,
    replace: bool,
) -> None:
    """Caller manages transaction."""
    if replace:
        counters.rows_truncated = truncate_table(conn, table)
    counters.rows_loaded = copy_rows(conn, table, columns, rows)
    counters.table_count_after = int(
        conn.execute(
            sql.SQL("SELECT COUNT(*) FROM {}").format(sql.Identifier(table))
        ).fetchone()[0]
    )


def build_load_report(table: str, counters: LoadCounters, dry_run: bool = False) -> str:
    lines = [
        "=" * 60,
        f"CSV Load Report: {table}",
        f"  dry_run: {dry_run}",
        "=" * 60,
        f"  rows read:                   {counters.rows_read}",
        f"  rows rejected:               {counters.rows_rejected}",
        f"  rows truncated (replace):    {counters.rows_truncated}",
        f"  rows loaded:                 {counters.rows_loaded}",
        f"  table rows after load:       {counters.table_count_after}",
        "=" * 60,
    ]
    return "\n".join(lines)


def _run_load(
    run_id: str,
    db_dsn: str,
    counters: LoadCounters,
    rejects: RejectWriter,
    csv_path: str,
    table: str,
    key_column: str,
    delimiter: str,
    encoding: str,
    replace: bool,
    dry_run: bool,
) -> None:
    try:
        conn = psycopg.connect(db_dsn, autocommit=False)
    except psycopg.Error as e:
        click.echo(f"[{run_id}] FATAL: cannot connect to database: {e}", err=True)
        rejects.close()
        sys.exit(1)
    try:
        columns = [c for c in table_columns(conn, table) if c != SEQ_COLUMN]
        if not columns:
            click.echo(f"[{run_id}] FATAL: table {table!r} not found", err=True)
            sys.exit(1)
        if key_column not in columns:
            click.echo(
                f"[{run_id}] FATAL: key column {key_column!r} not in {table!r}",
                err=True,
            )
            sys.exit(1)

        try:
            rows = read_csv_rows(
                Path(csv_path), columns, key_column, counters, rejects,
                delimiter=delimiter, encoding=encoding,
            )
        except MissingHeadersError as exc:
            click.echo(f"[{run_id}] FATAL: {exc}", err=True)
            sys.exit(1)
        click.echo(
            f"[{run_id}] Pre-scan: {counters.rows_read} rows read, "
            f"{len(rows)} to load, {counters.rows_rejected} rejected"
        )

        load_rows(conn, table, columns, rows, counters, replace)
        click.echo(build_load_report(table, counters, dry_run=dry_run))
        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] [dry-run] All changes rolled back.")
        else:
            conn.commit()
            click.echo(f"[{run_id}] Committed.")
    except psycopg.Error as e:
        conn.rollback()
        click.echo(f"[{run_id}] FATAL: load failed with DB error: {e}", err=True)
        sys.exit(1)
    finally:
        conn.close()
        rejects.close()
