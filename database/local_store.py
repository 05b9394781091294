"""
Local snapshot store.

Keeps the whole AppData aggregate in one JSON document on disk so the
tracker keeps working offline. The remote store, when configured, is a
mirror of this data; the local snapshot is written after every change
either way.

Reading never raises: a missing, unreadable or corrupt snapshot yields
the default data set.
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional, Union

from outreach_engine import AppData, default_app_data

logger = logging.getLogger(__name__)

STORAGE_KEY = "leadpulse_data_v2"
DEFAULT_DATA_DIR = "~/.leadpulse"


class LocalStore:
    """
    JSON file store for a single AppData snapshot.

    Usage:
        store = LocalStore()                      # $LEADPULSE_DATA_DIR or ~/.leadpulse
        store = LocalStore(data_dir="/tmp/leads")
        data = store.load()
        store.save(data)
    """

    def __init__(self, data_dir: Optional[Union[str, Path]] = None, storage_key: str = STORAGE_KEY):
        if data_dir is None:
            data_dir = os.environ.get("LEADPULSE_DATA_DIR", DEFAULT_DATA_DIR)
        self.data_dir = Path(data_dir).expanduser()
        self.storage_key = storage_key

    @property
    def path(self) -> Path:
        return self.data_dir / f"{self.storage_key}.json"

    def load(self) -> AppData:
        """Read the snapshot, falling back to defaults on any problem."""
        if not self.path.exists():
            logger.debug("No local snapshot at %s, using defaults", self.path)
            return default_app_data()

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError(f"expected a JSON object, got {type(raw).__name__}")
            return AppData.from_dict(raw)
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Ignoring unreadable local snapshot %s: %s", self.path, e)
            return default_app_data()

    def save(self, data: AppData) -> None:
        """Write the snapshot, replacing the previous one atomically."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(data.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)
        logger.debug(
            "Saved %d leads and %d templates to %s",
            len(data.leads),
            len(data.templates),
            self.path,
        )
