"""Append-only, hash-chained run ledger backed by SQLite.

The run ledger is the source of truth.  Run summaries and ``status``
output are projections of it; they do not compute truth, they display it.

Design:
- Append-only: only ``append()`` writes; no update, no delete.
- Hash-chained per run: each entry includes SHA-256 of the previous entry.
- WAL journal mode for concurrent readers.
- Appends are serialized in-process so concurrent rollouts of one run
  cannot fork the chain.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path

from harborline.core.hasher import compute_entry_hash
from harborline.models.ledger import LedgerEntry


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS run_ledger (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id            TEXT NOT NULL UNIQUE,
    run_id              TEXT NOT NULL,
    branch              TEXT NOT NULL,
    revision            TEXT NOT NULL,
    step                TEXT NOT NULL,
    state_transition    TEXT NOT NULL DEFAULT '',
    outcome             TEXT NOT NULL DEFAULT '',
    detail              TEXT NOT NULL DEFAULT '',
    timestamp_utc       TEXT NOT NULL,
    artifact_refs_json  TEXT NOT NULL DEFAULT '[]',
    payload_json        TEXT NOT NULL DEFAULT '{}',
    previous_entry_hash TEXT NOT NULL DEFAULT '',
    entry_hash          TEXT NOT NULL UNIQUE
);
"""

_CREATE_IDX_RUN = """
CREATE INDEX IF NOT EXISTS idx_run_id ON run_ledger(run_id, id);
"""

_CREATE_IDX_BRANCH = """
CREATE INDEX IF NOT EXISTS idx_branch ON run_ledger(branch, id);
"""

_COLUMNS = (
    "id, entry_id, run_id, branch, revision, step, state_transition, outcome, "
    "detail, timestamp_utc, artifact_refs_json, payload_json, "
    "previous_entry_hash, entry_hash"
)


class LedgerIntegrityError(RuntimeError):
    """Raised when the hash chain is broken."""


class RunLedger:
    """Append-only, hash-chained run ledger.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._append_lock = threading.Lock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_LEDGER)
            conn.execute(_CREATE_IDX_RUN)
            conn.execute(_CREATE_IDX_BRANCH)
            conn.commit()

    # ------------------------------------------------------------------
    # Core: append-only write
    # ------------------------------------------------------------------

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Append an entry to the ledger, computing hash chain links.

        Returns the entry with ``previous_entry_hash`` and ``entry_hash``
        set.  This is the ONLY write method.
        """
        with self._append_lock:
            previous_hash = self._get_latest_hash(entry.run_id)

            entry_dict = entry.model_dump(mode="json")
            entry_dict["previous_entry_hash"] = previous_hash
            entry_dict["entry_hash"] = ""
            entry_hash = compute_entry_hash(entry_dict)

            sealed = entry.model_copy(
                update={
                    "previous_entry_hash": previous_hash,
                    "entry_hash": entry_hash,
                }
            )
            self._insert(sealed)
        return sealed

    def _insert(self, entry: LedgerEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO run_ledger
                    (entry_id, run_id, branch, revision, step, state_transition,
                     outcome, detail, timestamp_utc, artifact_refs_json,
                     payload_json, previous_entry_hash, entry_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.entry_id,
                    entry.run_id,
                    entry.branch,
                    entry.revision,
                    entry.step,
                    entry.state_transition,
                    entry.outcome,
                    entry.detail,
                    entry.timestamp_utc.isoformat()
                    if isinstance(entry.timestamp_utc, datetime)
                    else entry.timestamp_utc,
                    json.dumps(entry.artifact_references),
                    json.dumps(entry.payload, sort_keys=True),
                    entry.previous_entry_hash,
                    entry.entry_hash,
                ),
            )
            conn.commit()

    def _get_latest_hash(self, run_id: str) -> str:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT entry_hash FROM run_ledger WHERE run_id = ? ORDER BY id DESC LIMIT 1",
                (run_id,),
            ).fetchone()
        return row[0] if row else ""

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def get_run_entries(self, run_id: str) -> list[LedgerEntry]:
        """Return all ledger entries for a run, ordered chronologically."""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM run_ledger WHERE run_id = ? ORDER BY id ASC",
                (run_id,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_latest(self, run_id: str) -> LedgerEntry | None:
        """Return the most recent ledger entry for a run, or None."""
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM run_ledger WHERE run_id = ? ORDER BY id DESC LIMIT 1",
                (run_id,),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def get_all_run_ids(self, branch: str | None = None) -> list[str]:
        """Return distinct run_ids, most recently started first."""
        query = "SELECT run_id, MIN(id) AS first_id FROM run_ledger"
        params: tuple = ()
        if branch is not None:
            query += " WHERE branch = ?"
            params = (branch,)
        query += " GROUP BY run_id ORDER BY first_id DESC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self, run_id: str) -> bool:
        """Verify the hash chain integrity for a run.

        Walks all entries in order, recomputes each entry_hash, and
        verifies that previous_entry_hash links match.

        Returns True if the chain is valid, raises LedgerIntegrityError
        otherwise.
        """
        prev_hash = ""
        for entry in self.get_run_entries(run_id):
            if entry.previous_entry_hash != prev_hash:
                raise LedgerIntegrityError(
                    f"Chain broken at entry {entry.entry_id}: "
                    f"expected previous_hash={prev_hash!r}, "
                    f"got {entry.previous_entry_hash!r}"
                )

            expected_hash = compute_entry_hash(entry.model_dump(mode="json"))
            if entry.entry_hash != expected_hash:
                raise LedgerIntegrityError(
                    f"Tampered entry {entry.entry_id}: "
                    f"expected hash={expected_hash!r}, "
                    f"got {entry.entry_hash!r}"
                )

            prev_hash = entry.entry_hash

        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: tuple) -> LedgerEntry:
        (
            _id,
            entry_id,
            run_id,
            branch,
            revision,
            step,
            state_transition,
            outcome,
            detail,
            timestamp_utc,
            artifact_refs_json,
            payload_json,
            previous_entry_hash,
            entry_hash,
        ) = row
        return LedgerEntry(
            entry_id=entry_id,
            run_id=run_id,
            branch=branch,
            revision=revision,
            step=step,
            state_transition=state_transition,
            outcome=outcome,
            detail=detail,
            timestamp_utc=timestamp_utc,
            artifact_references=json.loads(artifact_refs_json),
            payload=json.loads(payload_json),
            previous_entry_hash=previous_entry_hash,
            entry_hash=entry_hash,
        )
