"""
Backfill checkpoint.

A backfill walks [range_start, range_end] oldest first, one phase per record
kind (shipments, then fulfillments). The checkpoint records the phase and the
createDate of the newest row written so far; it is stored as JSON in the
BACKFILL_CHECKPOINT property and only ever moves forward.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple
import json

from shipsync.services import property_store as props
from shipsync.services.property_store import PropertyStore
from shipsync.utils.logger import log

PHASES: Tuple[str, ...] = ("shipments", "fulfillments")


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class BackfillCheckpoint:
    range_start: datetime
    range_end: datetime
    cursor: datetime
    phase: str = PHASES[0]
    phases: List[str] = field(default_factory=lambda: list(PHASES))
    rows_written: int = 0
    rows_skipped: int = 0
    chunks: int = 0
    consecutive_failures: int = 0
    started_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def position(self) -> Tuple[int, datetime]:
        """Ordering key: later phase wins, then later cursor."""
        return (self.phases.index(self.phase), self.cursor)

    def next_phase(self) -> Optional[str]:
        index = self.phases.index(self.phase) + 1
        return self.phases[index] if index < len(self.phases) else None

    def to_dict(self) -> dict:
        return {
            "range_start": self.range_start.isoformat(),
            "range_end": self.range_end.isoformat(),
            "cursor": self.cursor.isoformat(),
            "phase": self.phase,
            "phases": list(self.phases),
            "rows_written": self.rows_written,
            "rows_skipped": self.rows_skipped,
            "chunks": self.chunks,
            "consecutive_failures": self.consecutive_failures,
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BackfillCheckpoint":
        return cls(
            range_start=_dt(data["range_start"]),
            range_end=_dt(data["range_end"]),
            cursor=_dt(data.get("cursor") or data["range_start"]),
            phase=data.get("phase", PHASES[0]),
            phases=list(data.get("phases") or PHASES),
            rows_written=int(data.get("rows_written", 0)),
            rows_skipped=int(data.get("rows_skipped", 0)),
            chunks=int(data.get("chunks", 0)),
            consecutive_failures=int(data.get("consecutive_failures", 0)),
            started_at=_dt(data.get("started_at")) or datetime.utcnow(),
            updated_at=_dt(data.get("updated_at")) or datetime.utcnow(),
        )


class CheckpointStore:
    """Load, create, advance and clear the single backfill checkpoint."""

    def __init__(self, store: Optional[PropertyStore] = None):
        self.store = store or PropertyStore()

    def load(self) -> Optional[BackfillCheckpoint]:
        raw = self.store.get(props.BACKFILL_CHECKPOINT)
        if not raw:
            return None
        try:
            return BackfillCheckpoint.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            log.error(f"Backfill checkpoint is unreadable, ignoring it: {e}")
            return None

    def create(self, range_start: datetime, range_end: datetime, phases: Optional[List[str]] = None) -> BackfillCheckpoint:
        checkpoint = BackfillCheckpoint(
            range_start=range_start,
            range_end=range_end,
            cursor=range_start,
            phase=(phases or PHASES)[0],
            phases=list(phases or PHASES),
        )
        self._write(checkpoint)
        log.info(f"Backfill checkpoint created: {range_start} -> {range_end}")
        return checkpoint

    def _write(self, checkpoint: BackfillCheckpoint) -> None:
        checkpoint.updated_at = datetime.utcnow()
        self.store.set(props.BACKFILL_CHECKPOINT, json.dumps(checkpoint.to_dict()))

    def save(self, checkpoint: BackfillCheckpoint) -> bool:
        """
        Persist the checkpoint unless that would move it backwards.

        Returns False (and leaves the stored checkpoint alone) on regression,
        or when the backfill was cancelled in the meantime.
        """
        current = self.load()
        if current is None:
            log.warning("Backfill checkpoint no longer exists, not saving progress")
            return False
        if checkpoint.position < current.position:
            log.bind(stored=current.to_dict(), rejected=checkpoint.to_dict()).warning(
                "Refusing to move backfill checkpoint backwards"
            )
            return False
        self._write(checkpoint)
        return True

    def advance(
        self,
        checkpoint: BackfillCheckpoint,
        cursor: Optional[datetime] = None,
        rows_written: int = 0,
        rows_skipped: int = 0,
    ) -> BackfillCheckpoint:
        """Record a successfully written batch."""
        if cursor is not None and cursor > checkpoint.cursor:
            checkpoint.cursor = cursor
        checkpoint.rows_written += rows_written
        checkpoint.rows_skipped += rows_skipped
        checkpoint.consecutive_failures = 0
        self.save(checkpoint)
        return checkpoint

    def start_phase(self, checkpoint: BackfillCheckpoint, phase: str) -> BackfillCheckpoint:
        checkpoint.phase = phase
        checkpoint.cursor = checkpoint.range_start
        self.save(checkpoint)
        log.info(f"Backfill moving on to {phase}")
        return checkpoint

    def clear(self) -> bool:
        removed = self.store.delete(props.BACKFILL_CHECKPOINT)
        if removed:
            log.info("Backfill checkpoint cleared")
        return removed
