"""
Snapshot persistence

<snapshot_dir>/latest.json is the merge base for the next incremental run;
every save also writes a dated backup (crm_YYYYMMDD.json) and, when
configured, mirrors latest.json to the directory the front end serves.
"""
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from crmpulse.config import Settings, get_settings
from crmpulse.connectors.errors import SnapshotError
from crmpulse.models.snapshot import Snapshot
from crmpulse.utils.helpers import parse_timestamp, utc_now
from crmpulse.utils.logger import log

LATEST_FILENAME = "latest.json"


class SnapshotStore:
    """Reads and atomically writes snapshot JSON files"""

    def __init__(self, snapshot_dir: str, public_dir: Optional[str] = None):
        self.snapshot_dir = Path(snapshot_dir)
        self.public_dir = Path(public_dir) if public_dir else None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "SnapshotStore":
        settings = settings or get_settings()
        return cls(settings.snapshot_dir, settings.public_snapshot_dir)

    @property
    def latest_path(self) -> Path:
        return self.snapshot_dir / LATEST_FILENAME

    def load_latest(self) -> Optional[Dict[str, Any]]:
        """
        Raw payload of latest.json.

        Returns None when the file does not exist or cannot be decoded; the
        caller decides whether the payload is usable.
        """
        path = self.latest_path
        if not path.exists():
            log.info(f"No previous snapshot at {path}")
            return None

        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            log.warning(f"Previous snapshot {path} is unreadable, ignoring it: {e}")
            return None

        if not isinstance(payload, dict):
            log.warning(f"Previous snapshot {path} is not a JSON object, ignoring it")
            return None
        return payload

    def save(self, snapshot: Snapshot) -> List[Path]:
        """
        Write latest.json, the dated backup and the public mirror.

        Raises:
            SnapshotError: if any file cannot be written
        """
        content = snapshot.to_json()
        stamp = (parse_timestamp(snapshot.timestamp) or utc_now()).strftime("%Y%m%d")

        targets = [self.latest_path, self.snapshot_dir / f"crm_{stamp}.json"]
        if self.public_dir is not None:
            targets.append(self.public_dir / LATEST_FILENAME)

        for path in targets:
            _write_atomic(path, content)
            log.info(f"Saved: {path}")
        return targets


def _write_atomic(path: Path, content: str):
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".crm_", suffix=".json.tmp")
    except OSError as e:
        raise SnapshotError(f"Cannot write snapshot to {path}: {e}") from e

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(temp_path, path)
    except OSError as e:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise SnapshotError(f"Cannot write snapshot to {path}: {e}") from e
