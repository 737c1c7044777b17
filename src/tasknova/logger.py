"""JSONL event log for one client run.

Every component (ledger, stores, sync, agent) writes structured events here.
Each run gets its own directory under ``logs_dir`` and ``logs_dir/latest``
points at the most recent one, so the status API can tail it.
"""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Iterator


def _encode(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


def iter_jsonl(path: Path, limit: int | None = None) -> Iterator[dict[str, Any]]:
    """Yield the decoded objects among the last ``limit`` lines, skipping bad ones."""
    if not path.exists():
        return
    lines = path.read_text(encoding="utf-8").splitlines()
    if limit is not None:
        lines = lines[-limit:] if limit > 0 else []
    for raw in lines:
        try:
            item = json.loads(raw)
        except json.JSONDecodeError:
            continue
        if isinstance(item, dict):
            yield item


class EventLogger:
    def __init__(
        self,
        *,
        logs_dir: str,
        run_id: str,
        event_file_name: str = "events.jsonl",
    ) -> None:
        self.logs_dir = Path(logs_dir)
        self.run_id = run_id
        self.run_dir = self.logs_dir / run_id
        self.output_path = self.run_dir / event_file_name
        self.sequence = 0

        # Reopening a run id appends to its log instead of truncating it.
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.output_path.touch(exist_ok=True)
        self._point_latest()

    def _point_latest(self) -> None:
        latest = self.logs_dir / "latest"
        if latest.is_symlink() or latest.exists():
            latest.unlink()
        latest.symlink_to(self.run_id)

    def log(self, event_type: str, data: dict[str, Any]) -> None:
        self.sequence += 1
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "run_id": self.run_id,
            "sequence": self.sequence,
            "event_type": event_type,
            **data,
        }
        line = json.dumps(entry, ensure_ascii=True, default=_encode)
        with self.output_path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    def read_recent(self, n: int = 50, *, event_type: str | None = None) -> list[dict[str, Any]]:
        items = list(iter_jsonl(self.output_path, n))
        if event_type is not None:
            items = [item for item in items if item.get("event_type") == event_type]
        return items
