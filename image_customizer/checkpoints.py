from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckpointRecord:
    build_id: str
    sequence: int
    stage: str
    timestamp: str
    state_data: Dict[str, Any] = field(default_factory=dict)


class CheckpointStore:
    """Append-only JSON-lines log of completed build stages.

    Records are never rewritten. Within one build, stages must be appended
    in the order given by ``stage_order``.
    """

    def __init__(self, path: str | Path, *, stage_order: Sequence[str]) -> None:
        self.path = Path(path)
        self.stage_order = list(stage_order)
        self._lock = threading.Lock()

    def records(self, build_id: Optional[str] = None) -> List[CheckpointRecord]:
        if not self.path.exists():
            return []
        out: List[CheckpointRecord] = []
        for n, line in enumerate(self.path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                data = json.loads(line)
                rec = CheckpointRecord(**data)
            except (json.JSONDecodeError, TypeError):
                # A torn final line from a crash mid-write is the expected case here.
                logger.warning("Ignoring unreadable checkpoint line %d in %s", n, self.path)
                continue
            if build_id is None or rec.build_id == build_id:
                out.append(rec)
        return out

    def latest(self, build_id: str) -> Optional[CheckpointRecord]:
        recs = self.records(build_id)
        return recs[-1] if recs else None

    def completed_stages(self, build_id: str) -> List[str]:
        return [r.stage for r in self.records(build_id)]

    def last_build_id(self) -> Optional[str]:
        recs = self.records()
        return recs[-1].build_id if recs else None

    def append(self, build_id: str, stage: str, state_data: Optional[Dict[str, Any]] = None) -> CheckpointRecord:
        if stage not in self.stage_order:
            raise ValueError(f"Unknown stage {stage!r}")

        with self._lock:
            previous = self.latest(build_id)
            if previous is not None:
                if self.stage_order.index(stage) <= self.stage_order.index(previous.stage):
                    raise ValueError(
                        f"Stage {stage} cannot follow {previous.stage} in build {build_id}"
                    )

            rec = CheckpointRecord(
                build_id=build_id,
                sequence=(previous.sequence + 1) if previous else 1,
                stage=stage,
                timestamp=datetime.now(timezone.utc).isoformat(),
                state_data=dict(state_data or {}),
            )
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(asdict(rec), sort_keys=True, default=str) + "\n")
                f.flush()
                os.fsync(f.fileno())

        logger.info("Checkpoint %s #%d: %s", build_id, rec.sequence, stage)
        return rec
