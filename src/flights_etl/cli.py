"""flights_etl.cli

Unified CLI entrypoint.

Modes (--mode):
  load_base     : COPY a CSV into the base table (flights_5000.csv)
  load_incoming : COPY a CSV into the incoming table (flights_10000.csv)
  reconcile     : dedupe base, enforce key uniqueness, upsert incoming
  verify        : post-load duplicate checks on the base table

Tables are created by migrations/0001_flights_tables.sql:
    psql "$DB_DSN" -f migrations/0001_flights_tables.sql

Usage:
    python -m flights_etl.cli --mode load_base --csv-path data/flights_5000.csv
    python -m flights_etl.cli --mode load_incoming --csv-path data/flights_10000.csv
    python -m flights_etl.cli --mode reconcile
    python -m flights_etl.cli --mode verify

Every mode writes a JSON run report to ./artifacts/reports/<run_id>.json.
"""

from __future__ import annotations

import sys
import uuid
from datetime import datetime
from pathlib import Path

import click
import psycopg

from flights_etl.load_csv import LoadCounters, _run_load
from flights_etl.reconcile import ReconcileError, build_audit_report
from flights_etl.reconcile_pg import (
    build_verification_report,
    reconcile_tables,
    verify_base,
)
from flights_etl.shared import RejectWriter, write_run_report


def _connect(run_id: str, db_dsn: str, **kwargs) -> psycopg.Connection:
    try:
        return psycopg.connect(db_dsn, **kwargs)
    except psycopg.Error as exc:
        click.echo(f"[{run_id}] FATAL: cannot connect to database: {exc}", err=True)
        sys.exit(1)


def _run_reconcile(
    run_id: str,
    db_dsn: str,
    base_table: str,
    incoming_table: str,
    key_column: str,
    dry_run: bool,
):
    conn = _connect(run_id, db_dsn, autocommit=False)
    try:
        report = reconcile_tables(
            conn,
            base_table=base_table,
            incoming_table=incoming_table,
            key_column=key_column,
        )
        click.echo(build_audit_report(report, dry_run=dry_run))
        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] DRY RUN: rolled back.")
        else:
            conn.commit()
            click.echo(f"[{run_id}] Committed.")
        return report
    except ReconcileError as exc:
        conn.rollback()
        click.echo(
            f"[{run_id}] FATAL: {type(exc).__name__}: {exc}; {base_table} unchanged.",
            err=True,
        )
        sys.exit(1)
    except psycopg.Error as exc:
        conn.rollback()
        click.echo(
            f"[{run_id}] FATAL: reconcile failed with DB error: {exc}; "
            f"{base_table} unchanged.",
            err=True,
        )
        sys.exit(1)
    finally:
        conn.close()


def _run_verify(
    run_id: str,
    db_dsn: str,
    base_table: str,
    key_column: str,
    sample_size: int,
):
    conn = _connect(run_id, db_dsn)
    try:
        return verify_base(conn, base_table, key_column, sample_size=sample_size)
    except psycopg.Error as exc:
        click.echo(f"[{run_id}] FATAL: verify failed with DB error: {exc}", err=True)
        sys.exit(1)
    finally:
        conn.close()


@click.command()
@click.option(
    "--mode",
    default="reconcile",
    type=click.Choice(["load_base", "load_incoming", "reconcile", "verify"]),
    show_default=True,
    help="Run mode",
)
@click.option("--db-dsn", required=True, envvar="DB_DSN", help="PostgreSQL DSN (or $DB_DSN)")
@click.option("--csv-path", default=None, type=click.Path(), help="[load_*] Input CSV")
@click.option("--base-table", default="flights_base", show_default=True)
@click.option("--incoming-table", default="flights_new", show_default=True)
@click.option("--key-column", default="col_1", show_default=True, help="Business key column")
@click.option("--delimiter", default=",", show_default=True, help="[load_*] CSV field separator")
@click.option("--encoding", default="utf-8-sig", show_default=True, help="[load_*] CSV encoding")
@click.option(
    "--replace/--no-replace",
    default=True,
    show_default=True,
    help="[load_*] Truncate the target table before loading",
)
@click.option(
    "--sample-size",
    default=10,
    type=int,
    show_default=True,
    help="[verify] Rows to print for visual inspection",
)
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/flights_rejects.csv",
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
def main(
    mode: str,
    db_dsn: str,
    csv_path: str | None,
    base_table: str,
    incoming_table: str,
    key_column: str,
    delimiter: str,
    encoding: str,
    replace: bool,
    sample_size: int,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
) -> None:
    """Flights base/incoming reconciliation CLI."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode in ("load_base", "load_incoming"):
        if not csv_path:
            click.echo(f"[{run_id}] ERROR: --csv-path is required for {mode}", err=True)
            sys.exit(1)
        table = base_table if mode == "load_base" else incoming_table
        counters = LoadCounters()
        rejects = RejectWriter(Path(rejects_path))
        _run_load(
            run_id, db_dsn, counters, rejects,
            csv_path=csv_path,
            table=table,
            key_column=key_column,
            delimiter=delimiter,
            encoding=encoding,
            replace=replace,
            dry_run=dry_run,
        )
        if counters.rows_rejected:
            click.echo(f"[{run_id}] {counters.rows_rejected} rejected row(s): {rejects_path}")
        report_path = write_run_report(
            run_id, started_at, mode, dry_run,
            {"csv_path": csv_path, "table": table, "rejects_path": rejects_path},
            counters,
        )
    elif mode == "reconcile":
        click.echo(
            f"[{run_id}] reconcile {incoming_table} -> {base_table} on {key_column}"
        )
        report = _run_reconcile(
            run_id, db_dsn, base_table, incoming_table, key_column, dry_run,
        )
        report_path = write_run_report(
            run_id, started_at, mode, dry_run,
            {"base_table": base_table, "incoming_table": incoming_table,
             "key_column": key_column},
            report,
        )
    else:
        result = _run_verify(run_id, db_dsn, base_table, key_column, sample_size)
        click.echo(build_verification_report(result))
        report_path = write_run_report(
            run_id, started_at, mode, dry_run,
            {"base_table": base_table, "key_column": key_column},
            result,
        )
        if not result.ok:
            click.echo(f"[{run_id}] Run report: {report_path}")
            sys.exit(1)

    click.echo(f"[{run_id}] Run report: {report_path}")


if __name__ == "__main__":
    main()
