"""Persist a room's SessionState into a single pretty-printed JSON file."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from session_state import DEFAULT_MAP, SessionState

LOG = logging.getLogger(__name__)


def _atomic_write_text(path: Path, text: str) -> None:
    """Write via a temp file in the same directory, then replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=path.name, suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


class SnapshotStore:
    """Load-at-start / save-on-demand snapshot file for one room."""

    def __init__(
        self,
        path: Path,
        logger: Optional[logging.Logger] = None,
        default_map: str = DEFAULT_MAP,
    ) -> None:
        self._path = Path(path)
        self._logger = logger or LOG
        self._default_map = default_map

    @property
    def path(self) -> Path:
        return self._path

    def default_state(self) -> SessionState:
        return SessionState(current_map=self._default_map)

    def load(self) -> SessionState:
        if not self._path.exists():
            return self.default_state()
        try:
            raw: Any = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            self._logger.warning("Failed to read snapshot %s: %s; using defaults.", self._path, exc)
            return self.default_state()
        if not isinstance(raw, dict):
            self._logger.warning("Snapshot %s is not a JSON object; using defaults.", self._path)
            return self.default_state()
        state = SessionState.from_dict(raw, default_map=self._default_map, logger=self._logger)
        self._logger.info("Snapshot loaded from %s (map=%s).", self._path, state.current_map)
        return state

    def save(self, state: SessionState) -> bool:
        payload: Dict[str, Any] = state.to_dict()
        try:
            _atomic_write_text(self._path, json.dumps(payload, indent=2, sort_keys=True))
        except (OSError, TypeError, ValueError) as exc:
            self._logger.warning("Failed to save snapshot %s: %s", self._path, exc)
            return False
        self._logger.info("Snapshot written to %s.", self._path)
        return True
