"""flights_etl.reconcile

In-memory Reconciler: folds an Incoming record batch into a Base record set.

Stages (strictly sequential, each over the state left by the previous one):
  1. dedupe_base       : one record per business key, first-inserted wins
  2. enforce_unique_key: drop + re-add the named uniqueness constraint
  3. dedupe_incoming   : derived collection, one record per key
                          (stable sort on key; ties keep incoming order)
  4. apply_merge       : full-record replace on match, append otherwise

reconcile() runs the stages on a working copy of Base and publishes it only
after every stage succeeded, so a failed run leaves Base untouched and
produces no AuditReport.  Running it twice with the same Incoming leaves
Base in the same state (second run: inserted=0, updated=incoming_unique).
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

UNIQUE_CONSTRAINT_NAME = "uq_base_business_key"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ReconcileError(Exception):
    """Base class for fatal reconciliation errors; the run is aborted."""


class SchemaMismatch(ReconcileError):
    """Base and Incoming have incompatible field sets."""


class ConstraintViolation(ReconcileError):
    """Base still holds duplicate business keys when uniqueness is enforced."""


class StorageFailure(ReconcileError):
    """The underlying storage operation failed mid-merge; effects rolled back."""


# ---------------------------------------------------------------------------
# Record / RecordSet
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Record:
    seq: int
    values: tuple[Any, ...]


class RecordSet:
    """Insertion-ordered records sharing a fixed field list and business key.

    Every appended record gets the next sequence number; sequence numbers
    are never reused, so they stand in for physical row order.
    """

    def __init__(
        self,
        fields: Sequence[str],
        key_field: str,
        rows: Iterable[Mapping[str, Any] | Sequence[Any]] = (),
    ) -> None:
        self.fields: tuple[str, ...] = tuple(fields)
        if len(set(self.fields)) != len(self.fields):
            raise ValueError(f"duplicate field names in {self.fields!r}")
        if key_field not in self.fields:
            raise ValueError(f"key field {key_field!r} not in fields {self.fields!r}")
        self.key_field = key_field
        self._key_idx = self.fields.index(key_field)
        self._records: list[Record] = []
        self._next_seq = 1
        self.constraints: dict[str, str] = {}
        for row in rows:
            self.append(row)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[Record]:
        return iter(self._records)

    def __repr__(self) -> str:
        return f"RecordSet(fields={self.fields!r}, key_field={self.key_field!r}, n={len(self)})"

    def _coerce(self, values: Mapping[str, Any] | Sequence[Any]) -> tuple[Any, ...]:
        if isinstance(values, Mapping):
            missing = set(self.fields) - set(values)
            if missing:
                raise ValueError(f"row is missing fields: {sorted(missing)}")
            return tuple(values[f] for f in self.fields)
        out = tuple(values)
        if len(out) != len(self.fields):
            raise ValueError(
                f"row has {len(out)} values, expected {len(self.fields)}"
            )
        return out

    def append(self, values: Mapping[str, Any] | Sequence[Any]) -> Record:
        row = self._coerce(values)
        key = row[self._key_idx]
        if key is None or (isinstance(key, str) and not key.strip()):
            raise ValueError(f"blank business key in row {row!r}")
        record = Record(self._next_seq, row)
        self._next_seq += 1
        self._records.append(record)
        return record

    def key_of(self, record: Record) -> Any:
        return record.values[self._key_idx]

    def keys(self) -> list[Any]:
        return [self.key_of(r) for r in self._records]

    def find(self, key: Any) -> Record | None:
        for r in self._records:
            if self.key_of(r) == key:
                return r
        return None

    def rows(self) -> list[tuple[Any, ...]]:
        return [r.values for r in self._records]

    def as_dicts(self) -> list[dict[str, Any]]:
        return [dict(zip(self.fields, r.values)) for r in self._records]

    def copy(self) -> RecordSet:
        # Records are frozen, so a shallow list copy is enough.
        other = RecordSet.__new__(RecordSet)
        other.fields = self.fields
        other.key_field = self.key_field
        other._key_idx = self._key_idx
        other._records = list(self._records)
        other._next_seq = self._next_seq
        other.constraints = dict(self.constraints)
        return other

    def restore(self, other: RecordSet) -> None:
        """Adopt the full state of *other* (same schema) in one step."""
        if other.fields != self.fields or other.key_field != self.key_field:
            raise SchemaMismatch("cannot restore from a record set with another schema")
        self._records, self._next_seq, self.constraints = (
            list(other._records),
            other._next_seq,
            dict(other.constraints),
        )


# ---------------------------------------------------------------------------
# AuditReport
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AuditReport:
    base_count_before: int
    incoming_count_total: int
    base_duplicates_removed: int
    incoming_unique_count: int
    inserted: int
    updated: int
    base_count_after: int

    def check(self) -> None:
        expected_after = (
            self.base_count_before - self.base_duplicates_removed + self.inserted
        )
        if self.base_count_after != expected_after:
            raise ReconcileError(
                f"count invariant broken: after={self.base_count_after} "
                f"expected={expected_after}"
            )
        if self.inserted + self.updated != self.incoming_unique_count:
            raise ReconcileError(
                f"merge invariant broken: inserted={self.inserted} + "
                f"updated={self.updated} != unique={self.incoming_unique_count}"
            )

    def to_dict(self) -> dict[str, int]:
        return {
            "base_count_before": self.base_count_before,
            "incoming_count_total": self.incoming_count_total,
            "base_duplicates_removed": self.base_duplicates_removed,
            "incoming_unique_count": self.incoming_unique_count,
            "inserted": self.inserted,
            "updated": self.updated,
            "base_count_after": self.base_count_after,
        }


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

def check_schema(base: RecordSet, incoming: RecordSet) -> None:
    if set(base.fields) != set(incoming.fields):
        only_base = sorted(set(base.fields) - set(incoming.fields))
        only_incoming = sorted(set(incoming.fields) - set(base.fields))
        raise SchemaMismatch(
            f"field sets differ: base_only={only_base} incoming_only={only_incoming}"
        )
    if base.key_field != incoming.key_field:
        raise SchemaMismatch(
            f"business key differs: base={base.key_field!r} "
            f"incoming={incoming.key_field!r}"
        )


def duplicate_keys(records: RecordSet) -> dict[Any, int]:
    """Return {key: count} for every key held by more than one record."""
    counts: dict[Any, int] = {}
    for key in records.keys():
        counts[key] = counts.get(key, 0) + 1
    return {k: n for k, n in counts.items() if n > 1}


def dedupe_base(base: RecordSet) -> int:
    """Keep the lowest-seq record per key; return how many were removed."""
    seen: set[Any] = set()
    survivors: list[Record] = []
    for record in sorted(base, key=lambda r: r.seq):
        key = base.key_of(record)
        if key in seen:
            continue
        seen.add(key)
        survivors.append(record)
    removed = len(base) - len(survivors)
    if removed:
        base._records = survivors
    return removed


def enforce_unique_key(base: RecordSet, name: str = UNIQUE_CONSTRAINT_NAME) -> None:
    base.constraints.pop(name, None)
    dups = duplicate_keys(base)
    if dups:
        sample = sorted(dups, key=str)[:10]
        raise ConstraintViolation(
            f"cannot add {name}: {len(dups)} duplicate key(s) remain in base, "
            f"e.g. {sample!r}"
        )
    base.constraints[name] = base.key_field


def _sort_key(key: Any) -> tuple[str, Any]:
    return type(key).__name__, key


def dedupe_incoming(incoming: RecordSet) -> RecordSet:
    """Derived one-per-key collection; *incoming* is left untouched.

    sorted() is stable and records iterate in insertion order, so among
    same-key records the earliest-inserted one survives.
    """
    unique = RecordSet(incoming.fields, incoming.key_field)
    last_key: Any = object()
    for record in sorted(incoming, key=lambda r: _sort_key(incoming.key_of(r))):
        key = incoming.key_of(record)
        if key == last_key:
            continue
        last_key = key
        unique.append(record.values)
    return unique


def _has_key_constraint(base: RecordSet) -> bool:
    return base.key_field in base.constraints.values()


def plan_merge(base: RecordSet, unique: RecordSet) -> tuple[int, int]:
    """Return (inserted, updated) by joining *unique* against *base* on key."""
    existing = set(base.keys())
    updated = sum(1 for key in unique.keys() if key in existing)
    return len(unique) - updated, updated


def apply_merge(base: RecordSet, unique: RecordSet) -> None:
    if not _has_key_constraint(base):
        raise ConstraintViolation(
            f"no uniqueness constraint on {base.key_field!r}; cannot merge"
        )
    positions = {base.key_of(r): i for i, r in enumerate(base._records)}
    for record in unique:
        row = dict(zip(unique.fields, record.values))
        aligned = tuple(row[f] for f in base.fields)
        idx = positions.get(row[base.key_field])
        if idx is None:
            base.append(aligned)
            positions[row[base.key_field]] = len(base._records) - 1
        else:
            # Full-record replace; the record keeps its insertion position.
            base._records[idx] = Record(base._records[idx].seq, aligned)


# ---------------------------------------------------------------------------
# Top-level runner
# ---------------------------------------------------------------------------

def reconcile(base: RecordSet, incoming: RecordSet) -> AuditReport:
    """Merge *incoming* into *base* in place and return the run's AuditReport.

    Raises:
        SchemaMismatch: before anything is touched.
        ConstraintViolation: duplicates survived base deduplication.
        StorageFailure: any other error while the stages ran.
    Base is only modified if the whole run succeeds.
    """
    check_schema(base, incoming)
    base_before = len(base)
    incoming_total = len(incoming)

    work = base.copy()
    try:
        removed = dedupe_base(work)
        enforce_unique_key(work)
        unique = dedupe_incoming(incoming)
        inserted, updated = plan_merge(work, unique)
        apply_merge(work, unique)

        report = AuditReport(
            base_count_before=base_before,
            incoming_count_total=incoming_total,
            base_duplicates_removed=removed,
            incoming_unique_count=len(unique),
            inserted=inserted,
            updated=updated,
            base_count_after=len(work),
        )
        report.check()
    except ReconcileError:
        raise
    except Exception as exc:
        raise StorageFailure(f"reconcile aborted: {exc}") from exc
    base.restore(work)
    return report


def build_audit_report(report: AuditReport, dry_run: bool = False) -> str:
    lines = [
        "=" * 60,
        "Base / Incoming Reconciliation Report",
        f"  dry_run: {dry_run}",
        "=" * 60,
        f"  base records before:         {report.base_count_before}",
        f"  incoming records total:      {report.incoming_count_total}",
        f"  base duplicates removed:     {report.base_duplicates_removed}",
        f"  incoming unique records:     {report.incoming_unique_count}",
        f"  inserted:                    {report.inserted}",
        f"  updated:                     {report.updated}",
        f"  base records after:          {report.base_count_after}",
        "=" * 60,
    ]
    return "\n".join(lines)
