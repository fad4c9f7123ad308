"""Cross-process claims on branches and targets, backed by SQLite.

Every CI job builds its own Orchestrator, so the at-most-one-run-per-branch
rule and the one-rollout-per-target rule have to live in the state
database all jobs share.  A claim is one row keyed by ``(kind, key)``;
taking it runs under ``BEGIN IMMEDIATE`` so two processes cannot both see
the row as free.

Claims older than ``ttl_seconds`` are stale and may be taken over.  That
bounds how long a crashed process can keep a branch or target blocked.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

_CREATE_CLAIMS = """
CREATE TABLE IF NOT EXISTS claims (
    kind        TEXT NOT NULL,
    key         TEXT NOT NULL,
    run_id      TEXT NOT NULL,
    claimed_at  REAL NOT NULL,
    PRIMARY KEY (kind, key)
);
"""


class ClaimKind(str, Enum):
    BRANCH = "branch"
    TARGET = "target"


class ClaimStore:
    """Exclusive, expiring claims shared by every process on one database.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  May be shared with the run
        ledger; the tables do not overlap.
    ttl_seconds:
        Age after which a claim is stale.
    clock:
        Wall-clock seconds; must agree across processes.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ttl = ttl_seconds
        self._clock = clock
        conn = self._connect()
        try:
            conn.execute(_CREATE_CLAIMS)
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode; transactions are opened explicitly.
        conn = sqlite3.connect(
            str(self._db_path), timeout=30.0, isolation_level=None, check_same_thread=False
        )
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def claim(self, kind: ClaimKind, key: str, run_id: str) -> str | None:
        """Claim *key* for *run_id*.

        Returns None when the claim is taken (or already held by
        *run_id*), otherwise the run_id of the live holder.
        """
        now = self._clock()
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT run_id, claimed_at FROM claims WHERE kind = ? AND key = ?",
                (kind.value, key),
            ).fetchone()
            if row is not None and row[0] != run_id:
                holder, claimed_at = row
                if now - claimed_at < self._ttl:
                    conn.execute("ROLLBACK")
                    return holder
                logger.warning(
                    "Taking over stale %s claim on %s from %s (%.0fs old)",
                    kind.value,
                    key,
                    holder,
                    now - claimed_at,
                )
            conn.execute(
                """
                INSERT INTO claims (kind, key, run_id, claimed_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(kind, key) DO UPDATE SET
                    run_id = excluded.run_id,
                    claimed_at = excluded.claimed_at
                """,
                (kind.value, key, run_id, now),
            )
            conn.execute("COMMIT")
            return None
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def release(self, kind: ClaimKind, key: str, run_id: str) -> None:
        """Drop the claim on *key* if *run_id* still holds it."""
        conn = self._connect()
        try:
            conn.execute(
                "DELETE FROM claims WHERE kind = ? AND key = ? AND run_id = ?",
                (kind.value, key, run_id),
            )
        finally:
            conn.close()

    def holder(self, kind: ClaimKind, key: str) -> str | None:
        """Return the run_id holding a live claim on *key*, or None."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT run_id, claimed_at FROM claims WHERE kind = ? AND key = ?",
                (kind.value, key),
            ).fetchone()
        finally:
            conn.close()
        if row is None or self._clock() - row[1] >= self._ttl:
            return None
        return row[0]
