import base64
import io
import json
import sqlite3
import subprocess
import urllib.error

import pytest

from collectors.base import Collector
from credentials import CredentialStore
from manager import UsageDataManager
from shared_store import SharedStore


def make_jwt(claims: dict) -> str:
    payload = base64.urlsafe_b64encode(json.dumps(claims).encode()).rstrip(b"=").decode()
    return f"eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9.{payload}.c2lnbmF0dXJl"


def header(req, name: str) -> str | None:
    """urllib stores header names capitalized ("Chatgpt-account-id")."""
    return req.get_header(name.capitalize())


def make_state_db(path, token=None, table="ItemTable"):
    """A minimal editor key-value database, optionally holding a session token."""
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.execute(f"CREATE TABLE {table} (key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)")
    conn.execute(f"INSERT INTO {table} VALUES ('other/key', 'x')")
    if token is not None:
        conn.execute(f"INSERT INTO {table} VALUES ('cursorAuth/accessToken', ?)", (token,))
    conn.commit()
    conn.close()


class FakeResponse:
    def __init__(self, body: bytes, status: int = 200):
        self._body = body
        self.status = status

    def read(self) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeHTTP:
    """Stands in for urllib.request.urlopen, replaying queued responses in order."""

    def __init__(self):
        self.responses = []
        self.requests = []

    def reply(self, body=None, status: int = 200):
        self.responses.append((body, status))

    def fail(self, exc: Exception):
        self.responses.append((exc, None))

    def __call__(self, req, timeout=None):
        self.requests.append(req)
        body, status = self.responses.pop(0)
        if isinstance(body, Exception):
            raise body
        raw = body if isinstance(body, bytes) else json.dumps(body).encode()
        if status >= 400:
            raise urllib.error.HTTPError(req.full_url, status, "error", {}, io.BytesIO(raw))
        return FakeResponse(raw, status)


@pytest.fixture
def http(monkeypatch):
    fake = FakeHTTP()
    monkeypatch.setattr("urllib.request.urlopen", fake)
    return fake


class FakeSecurity:
    """Minimal in-memory imitation of the macOS `security` command."""

    def __init__(self, items: dict | None = None):
        self.items = dict(items or {})
        self.calls = []

    def __call__(self, args, **kwargs):
        self.calls.append(args)
        cmd, rest = args[1], args[2:]
        opts = {}
        i = 0
        while i < len(rest):
            flag = rest[i]
            if flag in ("-s", "-a") or (flag == "-w" and cmd == "add-generic-password"):
                opts[flag] = rest[i + 1]
                i += 2
            else:
                i += 1
        key = (opts.get("-s"), opts.get("-a"))

        if cmd == "find-generic-password":
            if key in self.items:
                return subprocess.CompletedProcess(args, 0, stdout=self.items[key] + "\n", stderr="")
            return subprocess.CompletedProcess(args, 44, stdout="", stderr="item could not be found")
        if cmd == "add-generic-password":
            self.items[key] = opts["-w"]
            return subprocess.CompletedProcess(args, 0, stdout="", stderr="")
        if cmd == "delete-generic-password":
            found = self.items.pop(key, None) is not None
            return subprocess.CompletedProcess(args, 0 if found else 44, stdout="", stderr="")
        raise AssertionError(f"unexpected security command {cmd}")


@pytest.fixture
def security():
    return FakeSecurity()


class FakeCollector(Collector):
    """Returns (or raises) queued results; the last one repeats."""

    def __init__(self, service, *results, has_access: bool = True):
        super().__init__()
        self.service = service
        self.results = list(results)
        self.has_access = has_access
        self.calls = 0

    def check_access(self) -> bool:
        return self.has_access

    def _fetch(self):
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def make_manager(tmp_path, security):
    def _make(*collectors, **kwargs):
        return UsageDataManager(
            {c.service: c for c in collectors},
            CredentialStore(runner=security),
            cache_path=tmp_path / "usage.db",
            shared=SharedStore(tmp_path / "cached_usage_metrics.json"),
            **kwargs,
        )
    return _make
