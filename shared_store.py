"""Snapshot file shared with other processes (widget, `quotamon usage`).

The owning process is the only writer. Readers may race a write, so every read
failure is reported as "no data yet".
"""

import json
import logging
import os
import tempfile
from pathlib import Path

from models import Snapshot, decode_snapshot, encode_snapshot

log = logging.getLogger(__name__)


class SharedStore:
    def __init__(self, path: Path):
        self.path = path

    def save_metrics(self, metrics: Snapshot):
        """Write the whole snapshot atomically (temp file + rename)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".usage-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(encode_snapshot(metrics), f, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
        log.debug("Shared snapshot written: %s", self.path)

    def load_metrics(self) -> Snapshot:
        try:
            raw = json.loads(self.path.read_text())
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            log.debug("Could not read shared snapshot %s: %s", self.path, exc)
            return {}
        return decode_snapshot(raw)
