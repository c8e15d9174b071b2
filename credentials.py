"""Local credential discovery.

Each source answers "is there a usable credential on this machine?" without
touching the network. Absence is the normal state for tools that are not
installed or not logged in, so every loader returns None instead of raising.
"""

import logging
import os
import pwd
import sqlite3
import subprocess
from collections.abc import Callable
from contextlib import closing
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from models import ServiceKind
from tokens import account_id_from_token

log = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]

SECURITY_TIMEOUT = 5


def real_home() -> Path:
    """Home directory of the account, even when $HOME points at a sandbox container."""
    try:
        return Path(pwd.getpwuid(os.getuid()).pw_dir)
    except KeyError:
        pass
    home = os.environ.get("HOME")
    if home:
        return Path(home)
    return Path.home()


def _security(args: list[str], runner: Runner) -> subprocess.CompletedProcess | None:
    """Run the macOS `security` tool; None when it is missing or hangs."""
    try:
        return runner(
            ["security", *args],
            capture_output=True, text=True, timeout=SECURITY_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        log.debug("security %s failed: %s", args[0], exc)
        return None


# -- Claude Code: keychain entry ------------------------------------------------


class ClaudeAiOAuth(BaseModel):
    access_token: str = Field(alias="accessToken", min_length=1)
    refresh_token: str | None = Field(default=None, alias="refreshToken")
    expires_at: int | None = Field(default=None, alias="expiresAt")
    scopes: list[str] = []
    subscription_type: str | None = Field(default=None, alias="subscriptionType")
    rate_limit_tier: str | None = Field(default=None, alias="rateLimitTier")


class ClaudeCodeKeychainPayload(BaseModel):
    claude_ai_oauth: ClaudeAiOAuth = Field(alias="claudeAiOauth")


@dataclass(frozen=True)
class ClaudeCodeCredential:
    access_token: str = field(repr=False)
    subscription_type: str | None = None
    rate_limit_tier: str | None = None

    @property
    def plan(self) -> str | None:
        if self.subscription_type and self.rate_limit_tier:
            return f"{self.subscription_type} ({self.rate_limit_tier})"
        return self.subscription_type or self.rate_limit_tier


class KeychainSource:
    """OAuth token that Claude Code keeps in the login keychain."""

    def __init__(self, service: str = "Claude Code-credentials", runner: Runner = subprocess.run):
        self.service = service
        self.runner = runner

    def load(self) -> ClaudeCodeCredential | None:
        result = _security(["find-generic-password", "-s", self.service, "-w"], self.runner)
        if result is None or result.returncode != 0:
            if result is not None:
                log.debug("Keychain lookup failed: %s", result.stderr.strip())
            return None

        try:
            payload = ClaudeCodeKeychainPayload.model_validate_json(result.stdout.strip())
        except ValidationError as exc:
            log.warning("Keychain entry %r has an unexpected shape: %s", self.service, exc.errors()[:1])
            return None

        oauth = payload.claude_ai_oauth
        return ClaudeCodeCredential(
            access_token=oauth.access_token,
            subscription_type=oauth.subscription_type,
            rate_limit_tier=oauth.rate_limit_tier,
        )


# -- Codex CLI: ~/.codex/auth.json ------------------------------------------------


class CodexTokens(BaseModel):
    id_token: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    account_id: str | None = None


class CodexAuthFile(BaseModel):
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    tokens: CodexTokens | None = None
    last_refresh: str | None = None


@dataclass(frozen=True)
class CodexCredential:
    access_token: str = field(repr=False)
    account_id: str


class AuthFileSource:
    """Tokens written by `codex login`. The account id is not optional."""

    def __init__(self, path: Path | None = None):
        self._path = path

    @property
    def path(self) -> Path:
        return self._path or real_home() / ".codex" / "auth.json"

    def load(self) -> CodexCredential | None:
        path = self.path
        if not path.is_file():
            log.debug("Codex auth file not found at %s", path)
            return None

        try:
            auth = CodexAuthFile.model_validate_json(path.read_bytes())
        except OSError as exc:
            log.warning("Could not read %s: %s", path, exc)
            return None
        except ValidationError as exc:
            log.warning("Failed to parse %s: %s", path, exc.errors()[:1])
            return None

        tokens = auth.tokens
        if tokens is None or not tokens.access_token:
            log.debug("No access token in %s", path)
            return None
        if not tokens.account_id:
            # Without the account header the usage API answers with free-plan data.
            log.warning("Access token in %s has no account_id; ignoring it", path)
            return None

        log.debug("Codex access token found (length: %d)", len(tokens.access_token))
        return CodexCredential(access_token=tokens.access_token, account_id=tokens.account_id)


# -- Cursor: state.vscdb -------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseLayout:
    """Where an editor keeps its key-value store, relative to the home directory."""

    candidates: tuple[str, ...]
    search_roots: tuple[str, ...] = ()
    filename: str = "state.vscdb"
    table: str = "ItemTable"
    key: str = "cursorAuth/accessToken"


CURSOR_LAYOUT = DatabaseLayout(
    candidates=(
        "Library/Application Support/Cursor/User/globalStorage/state.vscdb",
        "Library/Application Support/Cursor/state.vscdb",
        ".config/Cursor/User/globalStorage/state.vscdb",
        "Library/Application Support/Cursor/User/workspaceStorage/state.vscdb",
        "Library/Application Support/Cursor/globalStorage/state.vscdb",
    ),
    search_roots=(
        "Library/Application Support/Cursor",
        ".config/Cursor",
    ),
)


@dataclass(frozen=True)
class CursorCredential:
    user_id: str
    token: str = field(repr=False)


class StateDatabaseSource:
    """Session token Cursor stores in its SQLite state database."""

    def __init__(self, layout: DatabaseLayout = CURSOR_LAYOUT, home: Path | None = None):
        self.layout = layout
        self._home = home

    @property
    def home(self) -> Path:
        return self._home or real_home()

    def locate(self, deep_scan: bool = False) -> Path | None:
        home = self.home
        for rel in self.layout.candidates:
            path = home / rel
            if path.is_file():
                log.debug("Found database at %s", path)
                return path

        if deep_scan:
            for rel in self.layout.search_roots:
                root = home / rel
                if not root.is_dir():
                    continue
                for path in sorted(root.rglob(self.layout.filename)):
                    if path.is_file():
                        log.debug("Found database via recursive search at %s", path)
                        return path
        return None

    def _read_value(self, path: Path) -> str | None:
        uri = f"{path.as_uri()}?mode=ro"
        query = f'SELECT value FROM "{self.layout.table}" WHERE key = ?'
        try:
            with closing(sqlite3.connect(uri, uri=True)) as conn:
                row = conn.execute(query, (self.layout.key,)).fetchone()
        except sqlite3.Error as exc:
            log.warning("Could not read %s: %s", path, exc)
            return None

        if row is None or row[0] is None:
            log.debug("No %s row in %s", self.layout.key, path)
            return None
        value = row[0]
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        return str(value).strip().strip('"') or None

    def load(self, deep_scan: bool = False) -> CursorCredential | None:
        path = self.locate(deep_scan=deep_scan)
        if path is None:
            # Not installed is a normal state; only a full scan miss is worth noting.
            if deep_scan:
                log.info("Cursor database not found after scanning %s", ", ".join(self.layout.search_roots))
            return None

        if not os.access(path, os.R_OK):
            log.warning("Database %s is not readable", path)
            return None

        token = self._read_value(path)
        if token is None:
            return None

        user_id = account_id_from_token(token)
        if user_id is None:
            log.warning("Failed to extract user id from Cursor session token")
            return None

        log.debug("Retrieved Cursor token for user %s...", user_id[:8])
        return CursorCredential(user_id=user_id, token=token)


# -- user-supplied secrets -----------------------------------------------------------


class CredentialStore:
    """Secrets the user hands us (the Admin API key), kept in the login keychain.

    Values passed as `preset` (from settings/environment) are used as-is and never
    written to the keychain.
    """

    def __init__(
        self,
        service: str = "ai-quota-monitor",
        runner: Runner = subprocess.run,
        preset: dict[ServiceKind, str] | None = None,
    ):
        self.service = service
        self.runner = runner
        self._preset = {k: v for k, v in (preset or {}).items() if v}
        self._cache: dict[ServiceKind, str | None] = {}

    def get(self, kind: ServiceKind) -> str | None:
        if kind in self._preset:
            return self._preset[kind]
        if kind not in self._cache:
            result = _security(
                ["find-generic-password", "-s", self.service, "-a", kind.value, "-w"], self.runner,
            )
            value = result.stdout.strip() if result is not None and result.returncode == 0 else ""
            self._cache[kind] = value or None
        return self._cache[kind]

    def set(self, kind: ServiceKind, value: str) -> bool:
        value = value.strip()
        if not value:
            raise ValueError("credential must not be empty")

        result = _security(
            ["add-generic-password", "-U", "-s", self.service, "-a", kind.value, "-w", value],
            self.runner,
        )
        if result is None or result.returncode != 0:
            log.warning("Could not store credential for %s in keychain", kind.value)
            return False
        self._cache[kind] = value
        return True

    def remove(self, kind: ServiceKind):
        self._preset.pop(kind, None)
        self._cache[kind] = None
        _security(["delete-generic-password", "-s", self.service, "-a", kind.value], self.runner)

    def is_configured(self, kind: ServiceKind) -> bool:
        return self.get(kind) is not None

