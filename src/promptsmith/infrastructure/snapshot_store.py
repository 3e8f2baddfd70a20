from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, Optional
import json
import logging


logger = logging.getLogger(__name__)


class SnapshotStore:
    """Keeps the latest ``{artifacts, turns}`` snapshot of each session in one JSON file."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _now(self) -> str:
        return datetime.now(UTC).isoformat().replace("+00:00", "Z")

    def _read_all(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        data = json.loads(self._path.read_text(encoding="utf-8"))
        return data if isinstance(data, dict) else {}

    def write(self, session_id: str, snapshot: Dict[str, Any]) -> None:
        """Persist best-effort; failures are logged, never raised."""
        try:
            existing = self._read_all()
            existing[str(session_id)] = dict(snapshot, saved_at=self._now())
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(existing, indent=2, ensure_ascii=False), encoding="utf-8")
        except (OSError, ValueError) as exc:
            logger.warning("snapshot_write_failed", extra={"path": str(self._path), "err": str(exc)})

    def load(self, session_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self._read_all().get(str(session_id))
        except (OSError, ValueError) as exc:
            logger.warning("snapshot_read_failed", extra={"path": str(self._path), "err": str(exc)})
            return None
