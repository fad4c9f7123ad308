"""Run ledger entry model (append-only, hash-chained).

The run ledger is the source of truth for every pipeline run:
- Append-only (no UPDATE, no DELETE)
- Hash-chained (each entry links to the previous one of the same run)
- One entry per run state transition or step outcome
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class LedgerEntry(BaseModel):
    """A single entry in the append-only run ledger."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    branch: str
    revision: str
    step: str  # "run" for state transitions, otherwise the step name
    state_transition: str = ""  # "from->to", e.g. "received->building"
    outcome: str = ""  # StepOutcome value for step entries
    detail: str = ""
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    artifact_references: list[str] = []
    payload: dict[str, Any] = {}
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed on append, seals this entry
