"""
Durable completion markers for the resumable pipeline.

One JSON file per stage key. A key that has a readable marker file is
complete and its unit of work is skipped on resume; anything else is
redone.
"""

import os
import json
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import quote, unquote

MARKER_SUFFIX = ".done"

# Pipeline stage keys, in orchestrator order.
PREPARED = "prepared"
DISCOVERED = "discovered"
GLOBALS = "globals"
TUNING_CAPTURED = "tuning-captured"
TUNING_APPLIED = "tuning-applied"
DATABASES_CREATED = "databases-created"
DATABASES_MIGRATED = "databases-migrated"
VERIFIED = "verified"
TUNING_REVERTED = "tuning-reverted"
DONE = "done"


def db_key(database: str, step: str = None) -> str:
    """Per-database key: ``db:<name>`` or ``db:<name>:<step>``."""
    if step:
        return f"db:{database}:{step}"
    return f"db:{database}"


class StateStore:
    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.root / (quote(key, safe="") + MARKER_SUFFIX)

    def get(self, key: str):
        """Return the marker record for ``key``, or None if it is not complete."""
        try:
            record = json.loads(self._path(key).read_text())
        except (FileNotFoundError, json.JSONDecodeError, UnicodeDecodeError):
            return None
        if not isinstance(record, dict) or not record.get("complete"):
            return None
        return record

    def is_complete(self, key: str) -> bool:
        return self.get(key) is not None

    def metadata(self, key: str) -> dict:
        record = self.get(key)
        if record is None:
            return {}
        return record.get("metadata") or {}

    def mark_complete(self, key: str, metadata: dict = None):
        """Atomically write the marker; durable once this returns."""
        record = {
            "key": key,
            "complete": True,
            "completed_at": datetime.now(timezone.utc).isoformat(),
            "metadata": metadata or {},
        }
        payload = json.dumps(record, indent=2, sort_keys=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=".tmp-", suffix=MARKER_SUFFIX)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._path(key))
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise
        self._sync_dir()

    def _sync_dir(self):
        try:
            dir_fd = os.open(self.root, os.O_RDONLY)
        except OSError:
            return  # platforms without directory handles
        try:
            os.fsync(dir_fd)
        except OSError:
            pass
        finally:
            os.close(dir_fd)

    def keys(self) -> list[str]:
        found = []
        for path in sorted(self.root.glob("*" + MARKER_SUFFIX)):
            if path.name.startswith(".tmp-"):
                continue
            key = unquote(path.name[: -len(MARKER_SUFFIX)])
            if self.is_complete(key):
                found.append(key)
        return found
