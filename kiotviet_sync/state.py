"""Track the last successful sync per entity to enable incremental runs."""

from __future__ import annotations

import json
import os
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class StateTracker:
    """JSON file holding ``{entity: {"last_sync_time": iso, "last_sync_id": str}}``"""

    def __init__(self, state_file: str = os.path.join("state", "kiotviet_sync_state.json")):
        self.state_file = state_file
        self.state = self._load_state()

    def _load_state(self) -> Dict[str, Any]:
        if os.path.exists(self.state_file):
            try:
                with open(self.state_file, "r", encoding="utf-8") as f:
                    return json.load(f)
            except (OSError, ValueError) as e:
                logger.error("state_load_failed", state_file=self.state_file, error=str(e))
        return {}

    def save_state(self) -> None:
        try:
            directory = os.path.dirname(self.state_file)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.state_file, "w", encoding="utf-8") as f:
                json.dump(self.state, f, indent=2, default=str)
            logger.debug("state_saved", state_file=self.state_file)
        except OSError as e:
            logger.error("state_save_failed", state_file=self.state_file, error=str(e))

    def get_last_sync_time(self, entity: str) -> Optional[datetime]:
        timestamp = self.state.get(entity, {}).get("last_sync_time")
        if not timestamp:
            return None
        try:
            return datetime.fromisoformat(timestamp)
        except ValueError:
            logger.warning("state_timestamp_invalid", entity=entity, value=timestamp)
            return None

    def set_last_sync_time(self, entity: str, timestamp: datetime, sync_id: Optional[str] = None) -> None:
        entry = self.state.setdefault(entity, {})
        entry["last_sync_time"] = timestamp.isoformat()
        if sync_id:
            entry["last_sync_id"] = sync_id
        self.save_state()
