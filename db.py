import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from models import ServiceKind, Snapshot, UsageMetrics, decode_snapshot

log = logging.getLogger(__name__)


def _get_conn(path: Path) -> sqlite3.Connection:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.execute("""
        CREATE TABLE IF NOT EXISTS snapshots (
            service TEXT NOT NULL,
            data TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (service)
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT NOT NULL,
            value TEXT NOT NULL,
            PRIMARY KEY (key)
        )
    """)
    conn.commit()
    return conn


def save_snapshot(path: Path, metrics: Snapshot):
    """Replace the stored snapshot with `metrics` in a single transaction."""
    now = datetime.now(timezone.utc).isoformat()
    conn = _get_conn(path)
    try:
        with conn:
            conn.execute("DELETE FROM snapshots")
            conn.executemany(
                "INSERT INTO snapshots (service, data, updated_at) VALUES (?, ?, ?)",
                [
                    (kind.value, json.dumps(m.to_wire()), now)
                    for kind, m in metrics.items()
                ],
            )
    finally:
        conn.close()


def load_snapshot(path: Path) -> Snapshot:
    """Best-effort read: a missing or corrupt cache is an empty snapshot."""
    if not path.exists():
        return {}
    try:
        conn = _get_conn(path)
        try:
            rows = conn.execute("SELECT service, data FROM snapshots").fetchall()
        finally:
            conn.close()
    except sqlite3.Error as exc:
        log.warning("Could not read cache %s: %s", path, exc)
        return {}

    raw = {}
    for service, data in rows:
        try:
            raw[service] = json.loads(data)
        except json.JSONDecodeError:
            log.debug("Skipping corrupt cache row for %s", service)
    return decode_snapshot(raw)


def get_service(path: Path, kind: ServiceKind) -> UsageMetrics | None:
    return load_snapshot(path).get(kind)


def get_setting(path: Path, key: str) -> str | None:
    try:
        conn = _get_conn(path)
        try:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
    except sqlite3.Error as exc:
        log.warning("Could not read setting %s: %s", key, exc)
        return None
    return row[0] if row else None


def set_setting(path: Path, key: str, value: str):
    conn = _get_conn(path)
    try:
        with conn:
            conn.execute(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)", (key, value),
            )
    finally:
        conn.close()
