"""SQLite history of fix attempts.

The database lives at ``{project_root}/.sitemend/fixes.db``. Rollback data
can carry the prior contents of configuration files, so it is
Fernet-encrypted before it hits disk.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from sitemend.core.crypto import Sealer
from sitemend.core.errors import BackupError, StoreError, ValidationError
from sitemend.core.models import (
    Change,
    FixRecord,
    FixStatus,
    ManualInstructions,
    Outcome,
    SafetyAssessment,
    ValidationResult,
    rollback_from_dict,
    rollback_to_dict,
)

logger = logging.getLogger(__name__)

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS fixes (
    fix_id            TEXT PRIMARY KEY,
    vulnerability_id  TEXT NOT NULL,
    strategy_type     TEXT,
    fix_type          TEXT NOT NULL DEFAULT '',
    status            TEXT NOT NULL,
    outcome           TEXT,
    actions_taken     TEXT NOT NULL DEFAULT '[]',
    changes_made      TEXT NOT NULL DEFAULT '[]',
    rollback_data     BLOB,
    backup_id         TEXT,
    validation_data   TEXT,
    safety_assessment TEXT,
    instructions      TEXT,
    error_message     TEXT,
    error_kind        TEXT,
    created_at        TEXT NOT NULL,
    started_at        TEXT NOT NULL,
    completed_at      TEXT,
    rolled_back_at    TEXT
);

CREATE INDEX IF NOT EXISTS idx_fixes_vuln ON fixes(vulnerability_id);
CREATE INDEX IF NOT EXISTS idx_fixes_started ON fixes(started_at);
"""

_COLUMNS = (
    "fix_id",
    "vulnerability_id",
    "strategy_type",
    "fix_type",
    "status",
    "outcome",
    "actions_taken",
    "changes_made",
    "rollback_data",
    "backup_id",
    "validation_data",
    "safety_assessment",
    "instructions",
    "error_message",
    "error_kind",
    "started_at",
    "completed_at",
    "rolled_back_at",
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _dump(value: dict[str, Any] | None) -> str | None:
    return json.dumps(value) if value is not None else None


class FixRecordStore:
    """Thread-safe SQLite store for :class:`FixRecord` history.

    Usage::

        store = FixRecordStore(get_sitemend_dir(project))
        store.insert(record)
        store.update(record)
        recent = store.list_recent(limit=20)
    """

    def __init__(self, sitemend_dir: Path, encrypt: bool = True) -> None:
        self._sitemend_dir = sitemend_dir
        self._db_path = sitemend_dir / "fixes.db"
        self._sealer = Sealer(sitemend_dir, enabled=encrypt)
        self._lock = threading.Lock()
        self._init_db()

    # ------------------------------------------------------------------
    # Database bootstrap
    # ------------------------------------------------------------------

    def _init_db(self) -> None:
        try:
            with self._connect() as conn:
                conn.executescript(_SCHEMA_SQL)
        except sqlite3.Error as e:
            raise StoreError(f"cannot open {self._db_path}: {e}") from e

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=10)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _to_row(self, record: FixRecord) -> dict[str, Any]:
        rollback = None
        if record.rollback_data is not None:
            raw = json.dumps(rollback_to_dict(record.rollback_data)).encode("utf-8")
            rollback = self._sealer.seal(raw)
        return {
            "fix_id": record.fix_id,
            "vulnerability_id": record.vulnerability_id,
            "strategy_type": record.strategy_type,
            "fix_type": record.fix_type,
            "status": record.status.value,
            "outcome": record.outcome.value if record.outcome else None,
            "actions_taken": json.dumps(record.actions_taken),
            "changes_made": json.dumps([c.to_dict() for c in record.changes_made]),
            "rollback_data": rollback,
            "backup_id": record.backup_id,
            "validation_data": _dump(record.validation.to_dict() if record.validation else None),
            "safety_assessment": _dump(record.safety.to_dict() if record.safety else None),
            "instructions": _dump(record.instructions.to_dict() if record.instructions else None),
            "error_message": record.error,
            "error_kind": record.error_kind,
            "started_at": record.start_time.isoformat(),
            "completed_at": _iso(record.end_time),
            "rolled_back_at": _iso(record.rolled_back_at),
        }

    def _from_row(self, row: sqlite3.Row) -> FixRecord:
        rollback = None
        if row["rollback_data"] is not None:
            try:
                raw = self._sealer.open(row["rollback_data"])
                rollback = rollback_from_dict(json.loads(raw))
            except (BackupError, ValidationError, ValueError) as e:
                raise StoreError(f"rollback data for fix {row['fix_id']} unreadable: {e}") from e

        validation = json.loads(row["validation_data"]) if row["validation_data"] else None
        safety = json.loads(row["safety_assessment"]) if row["safety_assessment"] else None
        instructions = json.loads(row["instructions"]) if row["instructions"] else None
        return FixRecord(
            vulnerability_id=row["vulnerability_id"],
            fix_id=row["fix_id"],
            strategy_type=row["strategy_type"],
            fix_type=row["fix_type"],
            status=FixStatus(row["status"]),
            outcome=Outcome(row["outcome"]) if row["outcome"] else None,
            actions_taken=json.loads(row["actions_taken"]),
            changes_made=[Change.from_dict(c) for c in json.loads(row["changes_made"])],
            rollback_data=rollback,
            backup_id=row["backup_id"],
            safety=SafetyAssessment.from_dict(safety) if safety else None,
            validation=ValidationResult.from_dict(validation) if validation else None,
            instructions=ManualInstructions.from_dict(instructions) if instructions else None,
            error=row["error_message"],
            error_kind=row["error_kind"],
            start_time=datetime.fromisoformat(row["started_at"]),
            end_time=_parse_dt(row["completed_at"]),
            rolled_back_at=_parse_dt(row["rolled_back_at"]),
        )

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def insert(self, record: FixRecord) -> str:
        """Persist a new record.  Returns the fix id."""
        row = self._to_row(record)
        row["created_at"] = datetime.now().isoformat()
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        try:
            with self._lock, self._connect() as conn:
                conn.execute(f"INSERT INTO fixes ({columns}) VALUES ({placeholders})", tuple(row.values()))
        except sqlite3.Error as e:
            raise StoreError(f"cannot insert fix {record.fix_id}: {e}") from e
        return record.fix_id

    def update(self, record: FixRecord) -> bool:
        """Overwrite a stored record.  Returns ``True`` if a row was changed."""
        row = self._to_row(record)
        assignments = ", ".join(f"{col} = ?" for col in _COLUMNS if col != "fix_id")
        params = [row[col] for col in _COLUMNS if col != "fix_id"] + [record.fix_id]
        try:
            with self._lock, self._connect() as conn:
                cur = conn.execute(f"UPDATE fixes SET {assignments} WHERE fix_id = ?", params)
                return cur.rowcount > 0
        except sqlite3.Error as e:
            raise StoreError(f"cannot update fix {record.fix_id}: {e}") from e

    def save(self, record: FixRecord) -> str:
        """Insert or update, whichever applies."""
        if not self.update(record):
            self.insert(record)
        return record.fix_id

    def get(self, fix_id: str) -> FixRecord | None:
        """Retrieve a single record by fix id."""
        with self._lock, self._connect() as conn:
            row = conn.execute("SELECT * FROM fixes WHERE fix_id = ?", (fix_id,)).fetchone()
        return self._from_row(row) if row is not None else None

    def list_recent(self, limit: int = 50) -> list[FixRecord]:
        """Return recent records, newest first."""
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM fixes ORDER BY started_at DESC, created_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._from_row(row) for row in rows]

    def for_vulnerability(self, vulnerability_id: str) -> list[FixRecord]:
        """All attempts for one vulnerability, newest first."""
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM fixes WHERE vulnerability_id = ? ORDER BY started_at DESC",
                (vulnerability_id,),
            ).fetchall()
        return [self._from_row(row) for row in rows]

    def counts(self) -> dict[str, dict[str, int]]:
        """Record counts grouped by status and by outcome."""
        with self._lock, self._connect() as conn:
            by_status = conn.execute("SELECT status, COUNT(*) AS cnt FROM fixes GROUP BY status").fetchall()
            by_outcome = conn.execute(
                "SELECT outcome, COUNT(*) AS cnt FROM fixes WHERE outcome IS NOT NULL GROUP BY outcome"
            ).fetchall()
        return {
            "status": {row["status"]: row["cnt"] for row in by_status},
            "outcome": {row["outcome"]: row["cnt"] for row in by_outcome},
        }

    def record_count(self) -> int:
        with self._lock, self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS cnt FROM fixes").fetchone()
        return row["cnt"] if row else 0
