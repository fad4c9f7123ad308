"""Unit tests for the append-only, hash-chained run ledger."""

from __future__ import annotations

from harborline.core.run_ledger import RunLedger
from harborline.models.ledger import LedgerEntry


def _entry(run_id: str, step: str = "run", **kw) -> LedgerEntry:
    return LedgerEntry(run_id=run_id, branch=kw.pop("branch", "master"), revision="abc", step=step, **kw)


class TestAppend:
    def test_append_seals_entry(self, ledger: RunLedger):
        sealed = ledger.append(_entry("r1", state_transition="->received"))
        assert sealed.entry_hash
        assert sealed.previous_entry_hash == ""

    def test_chain_links_per_run(self, ledger: RunLedger):
        first = ledger.append(_entry("r1"))
        ledger.append(_entry("r2"))
        second = ledger.append(_entry("r1", step="build", outcome="succeeded"))
        assert second.previous_entry_hash == first.entry_hash

    def test_round_trip(self, ledger: RunLedger):
        ledger.append(
            _entry(
                "r1",
                step="build",
                outcome="succeeded",
                artifact_references=["sha256:aa"],
                payload={"artifact": {"digest": "sha256:aa"}},
            )
        )
        [entry] = ledger.get_run_entries("r1")
        assert entry.artifact_references == ["sha256:aa"]
        assert entry.payload == {"artifact": {"digest": "sha256:aa"}}
        assert ledger.get_latest("r1") == entry

    def test_get_latest_unknown_run(self, ledger: RunLedger):
        assert ledger.get_latest("missing") is None


class TestQueries:
    def test_run_ids_newest_first(self, ledger: RunLedger):
        for run_id in ("r1", "r2", "r3"):
            ledger.append(_entry(run_id))
        ledger.append(_entry("r1", step="build", outcome="succeeded"))
        assert ledger.get_all_run_ids() == ["r3", "r2", "r1"]

    def test_run_ids_by_branch(self, ledger: RunLedger):
        ledger.append(_entry("r1", branch="master"))
        ledger.append(_entry("r2", branch="development"))
        assert ledger.get_all_run_ids("development") == ["r2"]


class TestVerify:
    def test_valid_chain(self, ledger: RunLedger):
        for step in ("run", "build", "publish"):
            ledger.append(_entry("r1", step=step))
        assert ledger.verify_chain("r1")

    def test_empty_run_is_valid(self, ledger: RunLedger):
        assert ledger.verify_chain("nothing")

    def test_persists_across_instances(self, ledger: RunLedger, tmp_dir):
        ledger.append(_entry("r1"))
        reopened = RunLedger(tmp_dir / "state.db")
        reopened.append(_entry("r1", step="build"))
        assert reopened.verify_chain("r1")
        assert len(reopened.get_run_entries("r1")) == 2
