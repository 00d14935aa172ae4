"""Persistence helpers for experiment metadata and captured data."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Literal, Optional

import pandas as pd

from ..config import settings
from .models import ExperimentRecord

logger = logging.getLogger(__name__)


class ExperimentRepository:
    """Handles storage of run metadata JSON next to the captured CSV files."""

    def __init__(self, root: Path | None = None) -> None:
        self.root = Path(root or settings.storage.output_dir)
        self.data_dir = self.root / "data"
        self.metadata_dir = self.root / "metadata"

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.metadata_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Record persistence
    # ------------------------------------------------------------------
    def save_record(self, record: ExperimentRecord) -> ExperimentRecord:
        """Persist run metadata to disk, overwriting earlier saves of the same run."""

        metadata_path = self.metadata_dir / f"{record.base_name}.json"
        record.metadata_path = metadata_path
        self._write_json(metadata_path, record.model_dump(mode="json"))
        return record

    def list_records(self, limit: int = 50) -> List[ExperimentRecord]:
        """Return run records sorted by newest first."""

        records = [self._read_record(path) for path in self.metadata_dir.glob("exp_*.json")]
        records = [rec for rec in records if rec is not None]
        records.sort(key=lambda rec: rec.timestamp, reverse=True)
        return records[:limit]

    def load_record(self, record_id: str) -> Optional[ExperimentRecord]:
        """Load a specific run record by identifier."""

        for path in self.metadata_dir.glob(f"exp_*_{record_id[:8]}.json"):
            record = self._read_record(path)
            if record is not None and record.id == record_id:
                return record
        return None

    def load_dataframe(self, record: ExperimentRecord, kind: Literal["dc", "ac"] = "dc") -> pd.DataFrame:
        """Load the captured data of a run into a DataFrame."""

        path = record.data_files.get(kind)
        if path is None:
            raise FileNotFoundError(f"Run {record.id} has no {kind.upper()} data file")
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Data file {path} is missing")
        return pd.read_csv(path)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _write_json(self, path: Path, payload: dict) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        tmp_path.replace(path)

    def _read_record(self, path: Path) -> Optional[ExperimentRecord]:
        try:
            with path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
            record = ExperimentRecord.model_validate(payload)
        except (OSError, ValueError) as exc:
            logger.warning("Skipping unreadable run metadata %s: %s", path, exc)
            return None
        record.metadata_path = path
        return record
