"""Tests for the failed-cell ledger."""

import json
from datetime import datetime

from services.ingest.pipeline.failure_ledger import FailureLedger


class TestFailureLedger:
    def test_record(self):
        ledger = FailureLedger()
        entry = ledger.record("cell-1", "HTTP 403")
        assert entry.cell_id == "cell-1"
        assert entry.error == "HTTP 403"
        assert datetime.fromisoformat(entry.timestamp).tzinfo is not None
        assert len(ledger) == 1

    def test_records_is_a_copy(self):
        ledger = FailureLedger()
        ledger.record("cell-1", "boom")
        ledger.records.clear()
        assert len(ledger) == 1

    def test_empty_ledger_writes_nothing(self, tmp_path):
        out = tmp_path / "failed"
        assert FailureLedger().save(out) is None
        assert not out.exists()

    def test_save_writes_json(self, tmp_path):
        ledger = FailureLedger()
        ledger.record("cell-1", "HTTP 403")
        ledger.record("cell-2", "timeout")

        path = ledger.save(tmp_path / "failed")

        assert path.parent == tmp_path / "failed"
        assert path.name.startswith("failed-cells-")
        assert path.suffix == ".json"
        data = json.loads(path.read_text())
        assert [d["cellId"] for d in data] == ["cell-1", "cell-2"]
        assert data[0]["error"] == "HTTP 403"
        assert set(data[0]) == {"cellId", "error", "timestamp"}
