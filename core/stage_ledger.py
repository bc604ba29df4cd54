"""Per-position stage ledger with atomic writes and backup recovery.

Holds, for each open position, the contract count at entry and the highest
profit stage already dispatched. Entries are written when an opening order
is dispatched (pending until the exchange position shows up), advanced only
after a stage order succeeds, and dropped once the instrument is flat.
"""

import json
import os
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from core.logging_utils import get_logger
from core.models import Position, PositionSide

logger = get_logger(__name__)


@dataclass
class StageRecord:
    instrument: str
    side: PositionSide
    original_contracts: float
    stage: int = 0
    opened_at: Optional[datetime] = None   # None until the exchange position is seen
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "instrument": self.instrument,
            "side": self.side.value,
            "original_contracts": self.original_contracts,
            "stage": self.stage,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StageRecord":
        def _ts(value):
            return datetime.fromisoformat(value) if value else None

        return cls(
            instrument=data["instrument"],
            side=PositionSide(data["side"]),
            original_contracts=float(data["original_contracts"]),
            stage=int(data.get("stage", 0)),
            opened_at=_ts(data.get("opened_at")),
            updated_at=_ts(data.get("updated_at")),
        )


class StageLedger:
    """Stage counters keyed by instrument. ``path=None`` keeps it in memory."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self.backup_path = self.path.with_suffix(".json.bak") if self.path else None
        self._records: dict[str, StageRecord] = {}
        if self.path:
            self._load()

    def get(self, instrument: str) -> Optional[StageRecord]:
        return self._records.get(instrument)

    def match(self, position: Position) -> Optional[StageRecord]:
        """Record belonging to this exact position, or None.

        A pending record (opened_at unset) on the same side adopts the
        position's open time. A record for an older position is dropped.
        """
        record = self._records.get(position.instrument)
        if record is None:
            return None
        if record.side is not position.side:
            self.discard(position.instrument)
            return None
        if record.opened_at is None:
            record.opened_at = position.opened_at
            record.original_contracts = max(record.original_contracts, position.contracts)
            self._touch(record)
            return record
        if record.opened_at != position.opened_at:
            logger.info("[LEDGER] %s: stale record from %s dropped", position.instrument,
                        record.opened_at.isoformat())
            self.discard(position.instrument)
            return None
        return record

    def open_pending(self, instrument: str, side: PositionSide, contracts: float) -> StageRecord:
        record = StageRecord(instrument=instrument, side=side, original_contracts=contracts)
        self._records[instrument] = record
        self._touch(record)
        return record

    def adopt(self, position: Position, stage: int, original_contracts: float) -> StageRecord:
        """Start tracking a position first seen without a record."""
        record = StageRecord(
            instrument=position.instrument,
            side=position.side,
            original_contracts=original_contracts,
            stage=stage,
            opened_at=position.opened_at,
        )
        self._records[position.instrument] = record
        self._touch(record)
        logger.info("[LEDGER] %s: adopted at stage %d, original %.4f contracts",
                    position.instrument, stage, original_contracts)
        return record

    def advance(self, instrument: str, stage: int) -> None:
        record = self._records.get(instrument)
        if record is None or stage <= record.stage:
            return
        record.stage = stage
        self._touch(record)

    def discard(self, instrument: str) -> None:
        if self._records.pop(instrument, None) is not None:
            self._save()

    def retain_only(self, instruments: set[str]) -> None:
        """Drop records whose instrument no longer holds a position.

        Pending records survive: their position may not be visible yet.
        """
        stale = [
            key for key, record in self._records.items()
            if key not in instruments and record.opened_at is not None
        ]
        for key in stale:
            self._records.pop(key)
        if stale:
            self._save()

    def all(self) -> list[StageRecord]:
        return list(self._records.values())

    def _touch(self, record: StageRecord) -> None:
        record.updated_at = datetime.now(timezone.utc)
        self._save()

    # Persistence

    def _save(self) -> bool:
        if not self.path:
            return True
        data = {key: record.to_dict() for key, record in self._records.items()}
        return self._atomic_write(data)

    def _load(self) -> None:
        data = self._safe_read()
        if not data:
            return
        for key, raw in data.items():
            try:
                self._records[key] = StageRecord.from_dict(raw)
            except (KeyError, ValueError) as e:
                logger.warning("[LEDGER] Skipping malformed record %s: %s", key, e)

    def _atomic_write(self, data: dict) -> bool:
        """Write to a temp file in the same directory, then rename."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.exists():
            try:
                shutil.copy2(self.path, self.backup_path)
            except OSError as e:
                logger.warning("[LEDGER] Failed to create backup: %s", e)

        temp_path = None
        try:
            temp_fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".ledger_", suffix=".tmp")
            with os.fdopen(temp_fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(temp_path, self.path)
            temp_path = None
            return True
        except OSError as e:
            logger.error("[LEDGER] Atomic write failed: %s", e)
            return False
        finally:
            if temp_path is not None and os.path.exists(temp_path):
                os.unlink(temp_path)

    def _safe_read(self) -> Optional[dict]:
        """Read the ledger, falling back to the backup on corruption."""
        for candidate in (self.path, self.backup_path):
            if not candidate.exists():
                continue
            try:
                content = candidate.read_text().strip()
                if content:
                    return json.loads(content)
            except (OSError, json.JSONDecodeError) as e:
                logger.error("[LEDGER] Failed to read %s: %s", candidate, e)
        return None
