"""flights_etl.shared

Helpers shared by the load, reconcile and verify modes: the reject-file
writer, header/value cleanup for CSV ingestion, and the JSON run report.
"""

from __future__ import annotations

import csv
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """CSV writer for rejected rows; the file is only created on first reject."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.rows_written = 0

    @property
    def path(self) -> Path:
        return self._path

    def write(self, row: dict[str, str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            self._writer = csv.DictWriter(
                self._fh,
                fieldnames=[*row.keys(), "_reject_reason"],
                extrasaction="ignore",
            )
            self._writer.writeheader()
        self._writer.writerow({**row, "_reject_reason": reason})
        self._fh.flush()
        self.rows_written += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None

    def __enter__(self) -> RejectWriter:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


# ---------------------------------------------------------------------------
# Header / value cleanup
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


def normalize_header(name: str) -> str:
    """'  Col_1 ' -> 'col_1' (PostgreSQL folds unquoted identifiers to lower)."""
    return name.strip().lower()


def normalize_headers(raw: dict[str, str]) -> dict[str, str]:
    """Return a new dict with header keys whitespace-stripped and lowercased."""
    return {normalize_header(k): v for k, v in raw.items() if k is not None}


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

class SupportsToDict(Protocol):
    def to_dict(self) -> dict[str, Any]: ...


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, Any],
    counters: SupportsToDict,
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
