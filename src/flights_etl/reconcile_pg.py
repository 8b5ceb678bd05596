"""flights_etl.reconcile_pg

PostgreSQL Reconciler (--mode reconcile): the same four-stage pipeline as
flights_etl.reconcile, run against two tables that share their columns plus
a `load_seq` identity column recording insertion order.

  1. DELETE ... USING self-join keeps MIN(load_seq) per business key
  2. DROP CONSTRAINT IF EXISTS + ADD CONSTRAINT uq_<table>_<key> UNIQUE
  3. temp table of DISTINCT ON (key) ... ORDER BY key, load_seq
  4. INSERT ... SELECT ... ON CONFLICT (key) DO UPDATE SET <every column>

The whole run sits inside SAVEPOINT reconcile_run; any failure rolls back
to it, so Base is left exactly as it was.  The caller owns the outer
transaction (commit, or rollback for a dry run) and must serialize runs
against the same base table.

Also provides verify_base(), the post-load quality checks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import psycopg
from psycopg import errors, sql

from flights_etl.reconcile import (
    AuditReport,
    ConstraintViolation,
    ReconcileError,
    SchemaMismatch,
    StorageFailure,
)

SEQ_COLUMN = "load_seq"
TEMP_TABLE = "tmp_incoming_unique"
TEMP_REF = sql.Identifier("pg_temp", TEMP_TABLE)
SAVEPOINT = "reconcile_run"


def constraint_name(table: str, key_column: str) -> str:
    return f"uq_{table}_{key_column}"


# ---------------------------------------------------------------------------
# Schema helpers
# ---------------------------------------------------------------------------

def table_columns(conn: psycopg.Connection, table: str) -> list[str]:
    rows = conn.execute(
        """
        SELECT column_name
        FROM information_schema.columns
        WHERE table_schema = current_schema() AND table_name = %s
        ORDER BY ordinal_position
        """,
        (table,),
    ).fetchall()
    return [r[0] for r in rows]


def column_is_nullable(conn: psycopg.Connection, table: str, column: str) -> bool:
    row = conn.execute(
        """
        SELECT is_nullable
        FROM information_schema.columns
        WHERE table_schema = current_schema() AND table_name = %s AND column_name = %s
        """,
        (table, column),
    ).fetchone()
    return row is None or row[0] == "YES"


def check_table_schema(
    conn: psycopg.Connection,
    base_table: str,
    incoming_table: str,
    key_column: str,
) -> list[str]:
    """Return the shared payload columns (base order, without load_seq)."""
    base_cols = table_columns(conn, base_table)
    incoming_cols = table_columns(conn, incoming_table)
    if not base_cols:
        raise SchemaMismatch(f"base table {base_table!r} not found")
    if not incoming_cols:
        raise SchemaMismatch(f"incoming table {incoming_table!r} not found")
    if set(base_cols) != set(incoming_cols):
        raise SchemaMismatch(
            f"column sets differ: "
            f"base_only={sorted(set(base_cols) - set(incoming_cols))} "
            f"incoming_only={sorted(set(incoming_cols) - set(base_cols))}"
        )
    if key_column not in base_cols:
        raise SchemaMismatch(f"key column {key_column!r} missing from {base_table!r}")
    # NULL keys never conflict, so they would be re-inserted on every run.
    for table in (base_table, incoming_table):
        if column_is_nullable(conn, table, key_column):
            raise SchemaMismatch(
                f"key column {key_column!r} in {table!r} must be NOT NULL"
            )
    if SEQ_COLUMN not in base_cols:
        raise SchemaMismatch(
            f"{SEQ_COLUMN!r} column missing; insertion order cannot be determined"
        )
    return [c for c in base_cols if c != SEQ_COLUMN]


def _count(conn: psycopg.Connection, table: str | sql.Composable) -> int:
    if isinstance(table, str):
        table = sql.Identifier(table)
    row = conn.execute(
        sql.SQL("SELECT COUNT(*) FROM {}").format(table)
    ).fetchone()
    return int(row[0])


def _duplicate_keys(
    conn: psycopg.Connection,
    table: str,
    key_column: str,
    limit: int | None = None,
) -> list[tuple[Any, int]]:
    query = sql.SQL(
        "SELECT {key}, COUNT(*) FROM {table} GROUP BY {key} "
        "HAVING COUNT(*) > 1 ORDER BY {key}"
    ).format(key=sql.Identifier(key_column), table=sql.Identifier(table))
    if limit is not None:
        query = query + sql.SQL(" LIMIT {}").format(sql.Literal(limit))
    return [(r[0], int(r[1])) for r in conn.execute(query).fetchall()]


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

def _dedupe_base(conn: psycopg.Connection, table: str, key_column: str) -> int:
    cur = conn.execute(
        sql.SQL(
            """
            DELETE FROM {table} AS dup
            USING {table} AS keep
            WHERE dup.{key} = keep.{key}
              AND dup.{seq} > keep.{seq}
            """
        ).format(
            table=sql.Identifier(table),
            key=sql.Identifier(key_column),
            seq=sql.Identifier(SEQ_COLUMN),
        )
    )
    return cur.rowcount


def _enforce_unique_key(conn: psycopg.Connection, table: str, key_column: str) -> None:
    name = constraint_name(table, key_column)
    conn.execute(
        sql.SQL("ALTER TABLE {} DROP CONSTRAINT IF EXISTS {}").format(
            sql.Identifier(table), sql.Identifier(name)
        )
    )
    dups = _duplicate_keys(conn, table, key_column, limit=10)
    if dups:
        raise ConstraintViolation(
            f"cannot add {name}: duplicate keys remain in {table}, e.g. {dups!r}"
        )
    try:
        conn.execute(
            sql.SQL("ALTER TABLE {} ADD CONSTRAINT {} UNIQUE ({})").format(
                sql.Identifier(table), sql.Identifier(name), sql.Identifier(key_column)
            )
        )
    except errors.UniqueViolation as exc:
        raise ConstraintViolation(f"cannot add {name}: {exc}") from exc


def _dedupe_incoming(
    conn: psycopg.Connection,
    incoming_table: str,
    key_column: str,
    columns: list[str],
) -> int:
    conn.execute(sql.SQL("DROP TABLE IF EXISTS {}").format(TEMP_REF))
    conn.execute(
        sql.SQL(
            """
            CREATE TEMP TABLE {tmp} AS
            SELECT DISTINCT ON ({key}) {cols}, {seq} AS src_seq
            FROM {incoming}
            ORDER BY {key}, {seq}
            """
        ).format(
            tmp=sql.Identifier(TEMP_TABLE),
            key=sql.Identifier(key_column),
            cols=sql.SQL(", ").join(map(sql.Identifier, columns)),
            incoming=sql.Identifier(incoming_table),
            seq=sql.Identifier(SEQ_COLUMN),
        )
    )
    return _count(conn, TEMP_REF)


def _count_updates(conn: psycopg.Connection, base_table: str, key_column: str) -> int:
    row = conn.execute(
        sql.SQL(
            "SELECT COUNT(*) FROM {tmp} AS t JOIN {base} AS b ON b.{key} = t.{key}"
        ).format(
            tmp=TEMP_REF,
            base=sql.Identifier(base_table),
            key=sql.Identifier(key_column),
        )
    ).fetchone()
    return int(row[0])


def _upsert(
    conn: psycopg.Connection,
    base_table: str,
    key_column: str,
    columns: list[str],
) -> int:
    payload = [c for c in columns if c != key_column]
    if payload:
        on_conflict = sql.SQL("DO UPDATE SET {}").format(
            sql.SQL(", ").join(
                sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(c))
                for c in payload
            )
        )
    else:
        on_conflict = sql.SQL("DO NOTHING")
    cols = sql.SQL(", ").join(map(sql.Identifier, columns))
    cur = conn.execute(
        sql.SQL(
            """
            INSERT INTO {base} ({cols})
            SELECT {cols} FROM {tmp}
            ORDER BY {key}
            ON CONFLICT ({key}) {on_conflict}
            """
        ).format(
            base=sql.Identifier(base_table),
            cols=cols,
            tmp=TEMP_REF,
            key=sql.Identifier(key_column),
            on_conflict=on_conflict,
        )
    )
    return cur.rowcount


def _run_stages(
    conn: psycopg.Connection,
    base_table: str,
    incoming_table: str,
    key_column: str,
    columns: list[str],
    base_before: int,
    incoming_total: int,
) -> AuditReport:
    removed = _dedupe_base(conn, base_table, key_column)
    _enforce_unique_key(conn, base_table, key_column)
    unique = _dedupe_incoming(conn, incoming_table, key_column, columns)

    # Split must be computed before the upsert: afterwards updated rows are
    # indistinguishable from rows that were already there.
    updated = _count_updates(conn, base_table, key_column)
    inserted = unique - updated

    affected = _upsert(conn, base_table, key_column, columns)
    payload_cols = [c for c in columns if c != key_column]
    if payload_cols and affected != unique:
        raise StorageFailure(
            f"upsert touched {affected} rows, expected {unique}"
        )

    report = AuditReport(
        base_count_before=base_before,
        incoming_count_total=incoming_total,
        base_duplicates_removed=removed,
        incoming_unique_count=unique,
        inserted=inserted,
        updated=updated,
        base_count_after=_count(conn, base_table),
    )
    report.check()
    conn.execute(sql.SQL("DROP TABLE IF EXISTS {}").format(TEMP_REF))
    return report


# ---------------------------------------------------------------------------
# Top-level runner
# ---------------------------------------------------------------------------

def reconcile_tables(
    conn: psycopg.Connection,
    base_table: str = "flights_base",
    incoming_table: str = "flights_new",
    key_column: str = "col_1",
) -> AuditReport:
    """Merge *incoming_table* into *base_table* and return the AuditReport.

    Args:
        conn: Open psycopg connection, not in autocommit mode (caller
            commits or rolls back).
        base_table: Durable target table.
        incoming_table: Source table; read only.
        key_column: Business key column.

    Raises:
        SchemaMismatch: the tables' columns are incompatible (nothing touched).
        ConstraintViolation: duplicate keys survived base deduplication.
        StorageFailure: a database error occurred mid-run.
    On any of these, the run's effects are rolled back.
    """
    if conn.autocommit:
        raise ValueError("reconcile_tables needs a connection with autocommit=False")

    columns = check_table_schema(conn, base_table, incoming_table, key_column)
    base_before = _count(conn, base_table)
    incoming_total = _count(conn, incoming_table)

    conn.execute(f"SAVEPOINT {SAVEPOINT}")
    try:
        report = _run_stages(
            conn, base_table, incoming_table, key_column, columns,
            base_before, incoming_total,
        )
    except ReconcileError:
        conn.execute(f"ROLLBACK TO SAVEPOINT {SAVEPOINT}")
        raise
    except psycopg.Error as exc:
        conn.execute(f"ROLLBACK TO SAVEPOINT {SAVEPOINT}")
        raise StorageFailure(f"reconcile of {base_table} failed: {exc}") from exc
    conn.execute(f"RELEASE SAVEPOINT {SAVEPOINT}")
    return report


# ---------------------------------------------------------------------------
# Post-load verification
# ---------------------------------------------------------------------------

@dataclass
class BaseVerification:
    table: str
    total_rows: int = 0
    distinct_keys: int = 0
    duplicate_keys: list[tuple[Any, int]] = field(default_factory=list)
    sample_rows: list[tuple[Any, ...]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.total_rows == self.distinct_keys and not self.duplicate_keys

    @property
    def status(self) -> str:
        if self.ok:
            return f"OK - no duplicate keys in {self.table}"
        return f"ERROR - duplicate keys found in {self.table}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "total_rows": self.total_rows,
            "distinct_keys": self.distinct_keys,
            "duplicate_keys": [[k, n] for k, n in self.duplicate_keys[:50]],
            "ok": self.ok,
        }


def verify_base(
    conn: psycopg.Connection,
    table: str = "flights_base",
    key_column: str = "col_1",
    sample_size: int = 10,
) -> BaseVerification:
    row = conn.execute(
        sql.SQL("SELECT COUNT(*), COUNT(DISTINCT {key}) FROM {table}").format(
            key=sql.Identifier(key_column), table=sql.Identifier(table)
        )
    ).fetchone()
    result = BaseVerification(table=table, total_rows=int(row[0]), distinct_keys=int(row[1]))
    result.duplicate_keys = _duplicate_keys(conn, table, key_column)
    if sample_size > 0:
        result.sample_rows = conn.execute(
            sql.SQL("SELECT * FROM {} ORDER BY {} LIMIT {}").format(
                sql.Identifier(table),
                sql.Identifier(SEQ_COLUMN),
                sql.Literal(sample_size),
            )
        ).fetchall()
    return result


def build_verification_report(result: BaseVerification) -> str:
    lines = [
        "=" * 60,
        f"Post-load Verification: {result.table}",
        "=" * 60,
        f"  total rows:                  {result.total_rows}",
        f"  distinct keys:               {result.distinct_keys}",
        f"  duplicated keys:             {len(result.duplicate_keys)}",
    ]
    for key, n in result.duplicate_keys[:20]:
        lines.append(f"    {key!r}: {n}")
    if len(result.duplicate_keys) > 20:
        lines.append(f"    ... and {len(result.duplicate_keys) - 20} more")
    if result.sample_rows:
        lines.append(f"\nSample ({len(result.sample_rows)} rows):")
        for r in result.sample_rows:
            lines.append(f"  {r}")
    lines.append(result.status)
    lines.append("=" * 60)
    return "\n".join(lines)
