"""
Failure ledger: cells that failed during a run.

Kept in memory while the run is going and written once at the end to a
timestamped JSON file. Never touches the primary store.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from services.ingest.types import FailureRecord

logger = logging.getLogger(__name__)


class FailureLedger:
    def __init__(self):
        self._records: list[FailureRecord] = []

    def record(self, cell_id: str, error: str) -> FailureRecord:
        entry = FailureRecord(
            cell_id=cell_id,
            error=error,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        self._records.append(entry)
        return entry

    @property
    def records(self) -> list[FailureRecord]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def save(self, directory: Path) -> Optional[Path]:
        """Write the ledger to <directory>/failed-cells-<timestamp>.json. None if empty."""
        if not self._records:
            return None

        directory.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        path = directory / f"failed-cells-{stamp}.json"

        with open(path, "w") as f:
            json.dump([r.to_dict() for r in self._records], f, indent=2)

        logger.warning("Failed cells saved to: %s", path)
        return path
