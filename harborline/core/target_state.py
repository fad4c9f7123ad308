"""Last confirmed digest per deployment target, backed by SQLite.

Only the Rollout Coordinator writes here, and only on the committed
transition, so a reader never sees a digest that has not passed a
health check.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

_CREATE_TARGETS = """
CREATE TABLE IF NOT EXISTS target_state (
    name          TEXT PRIMARY KEY,
    digest        TEXT NOT NULL,
    run_id        TEXT NOT NULL DEFAULT '',
    confirmed_at  TEXT NOT NULL
);
"""


class TargetStateStore:
    """Confirmed-digest records keyed by target name.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  May be shared with the run
        ledger; the tables do not overlap.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(_CREATE_TARGETS)
            conn.commit()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def current_digest(self, name: str) -> str:
        """Return the last confirmed digest for *name*, or ``""``."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT digest FROM target_state WHERE name = ?", (name,)
            ).fetchone()
        return row[0] if row else ""

    def confirm(self, name: str, digest: str, *, run_id: str = "") -> None:
        """Record *digest* as the health-confirmed digest of *name*."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO target_state (name, digest, run_id, confirmed_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    digest = excluded.digest,
                    run_id = excluded.run_id,
                    confirmed_at = excluded.confirmed_at
                """,
                (name, digest, run_id, datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()
