import asyncio
import logging
import sqlite3
from contextlib import suppress
from datetime import datetime, timezone
from pathlib import Path

import db
from collectors.anthropic_admin import AnthropicAdminCollector
from collectors.base import Collector, NotAuthenticated, ServiceError, UpstreamError
from collectors.claude import ClaudeCodeCollector
from collectors.codex import CodexCollector
from collectors.cursor import CursorCollector
from config import Settings, get_settings
from credentials import CredentialStore
from models import (
    LIMIT_SLOTS,
    ProviderState,
    RefreshInterval,
    ServiceKind,
    Snapshot,
    UsageAlert,
    UsageMetrics,
    UsageStatus,
)
from shared_store import SharedStore

log = logging.getLogger(__name__)

ALERT_WARNING_PERCENT = 90.0
ALERT_LIMIT_PERCENT = 100.0
INTERVAL_SETTING = "refresh_interval"


def merge(previous: Snapshot, fresh: Snapshot) -> Snapshot:
    """Overlay freshly fetched metrics on the previous snapshot.

    A provider that failed this round keeps its previous entry if it had one and
    stays absent otherwise; a provider that succeeded is replaced outright.
    """
    merged = {**previous, **fresh}
    return {kind: merged[kind] for kind in sorted(merged, key=lambda k: k.sort_rank)}


def check_alerts(metrics: Snapshot) -> list[UsageAlert]:
    """Limits at or past the notification thresholds (90% warning, 100% reached)."""
    alerts = []
    for kind in sorted(metrics, key=lambda k: k.sort_rank):
        m = metrics[kind]
        for slot in LIMIT_SLOTS:
            limit = getattr(m, slot)
            if limit is None:
                continue
            pct = limit.percentage
            if pct >= ALERT_LIMIT_PERCENT:
                alerts.append(UsageAlert(
                    service=kind, slot=slot, percentage=pct, level=UsageStatus.CRITICAL,
                    title=f"{kind.display_name} Limit Reached",
                    body="You've reached your usage limit",
                ))
            elif pct >= ALERT_WARNING_PERCENT:
                alerts.append(UsageAlert(
                    service=kind, slot=slot, percentage=pct, level=UsageStatus.WARNING,
                    title=f"{kind.display_name} Usage Warning",
                    body=f"You're at {int(pct)}% of your limit",
                ))
    return alerts


class UsageDataManager:
    """Owns the snapshot: fetches every configured provider, merges, persists, reschedules."""

    def __init__(
        self,
        collectors: dict[ServiceKind, Collector],
        store: CredentialStore,
        cache_path: Path,
        shared: SharedStore,
        refresh_interval: RefreshInterval = RefreshInterval.FIFTEEN_MINUTES,
        resource_timeout: float = 60.0,
    ):
        self.collectors = collectors
        self.store = store
        self.cache_path = cache_path
        self.shared = shared
        self.resource_timeout = resource_timeout

        self.metrics: Snapshot = {}
        self.errors: dict[ServiceKind, str] = {}
        self.last_error: str | None = None
        self.last_refreshed: datetime | None = None
        self.is_loading = False

        self._lock = asyncio.Lock()
        self._timer: asyncio.Task | None = None
        self._running = False

        stored = db.get_setting(cache_path, INTERVAL_SETTING)
        self._interval = RefreshInterval.from_seconds(stored) if stored is not None else refresh_interval

        self.load_cached()

    # -- cache ---------------------------------------------------------------

    def load_cached(self):
        """Populate the snapshot from disk before any network activity."""
        self.metrics = db.load_snapshot(self.cache_path) or self.shared.load_metrics()
        log.info("Loaded %d cached provider(s)", len(self.metrics))

    def _persist(self):
        try:
            db.save_snapshot(self.cache_path, self.metrics)
        except (sqlite3.Error, OSError) as exc:
            log.error("Could not write cache %s: %s", self.cache_path, exc)
        try:
            self.shared.save_metrics(self.metrics)
        except OSError as exc:
            log.error("Could not write shared snapshot %s: %s", self.shared.path, exc)

    # -- providers -----------------------------------------------------------

    def is_configured(self, kind: ServiceKind) -> bool:
        collector = self.collectors.get(kind)
        return collector is not None and collector.has_access

    def check_access(self, kind: ServiceKind | None = None, deep_scan: bool = False) -> list[ProviderState]:
        """Re-run the local credential checks (no network I/O).

        `deep_scan` lets collectors that support it search beyond their known paths.
        """
        kinds = [kind] if kind is not None else list(self.collectors)
        for k in kinds:
            collector = self.collectors.get(k)
            if collector is not None:
                if deep_scan and collector.supports_deep_scan:
                    collector.check_access(deep_scan=True)
                else:
                    collector.check_access()
        return self.provider_states()

    def set_credential(self, kind: ServiceKind, value: str) -> bool:
        stored = self.store.set(kind, value)
        if kind in self.collectors:
            self.collectors[kind].check_access()
        return stored

    def remove_credential(self, kind: ServiceKind):
        self.store.remove(kind)
        if kind in self.collectors:
            self.collectors[kind].check_access()
        self.errors.pop(kind, None)
        if self.metrics.pop(kind, None) is not None:
            self._persist()

    def provider_states(self) -> list[ProviderState]:
        states = []
        for kind in ServiceKind.ordered():
            collector = self.collectors.get(kind)
            states.append(ProviderState(
                service=kind,
                display_name=kind.display_name,
                configured=collector is not None,
                has_access=self.is_configured(kind),
                plan=collector.plan if collector else None,
                has_data=kind in self.metrics and self.metrics[kind].has_data,
                last_error=self.errors.get(kind),
            ))
        return states

    def next_reset_time(self) -> datetime | None:
        times = [m.earliest_reset for m in self.metrics.values() if m.earliest_reset is not None]
        return min(times) if times else None

    # -- refresh -------------------------------------------------------------

    def _record_error(self, kind: ServiceKind, error: Exception):
        message = str(error) or type(error).__name__
        self.errors[kind] = message
        self.last_error = f"{kind.display_name}: {message}"

    async def _fetch(self, kind: ServiceKind) -> UsageMetrics | None:
        collector = self.collectors[kind]
        try:
            metrics = await asyncio.wait_for(asyncio.to_thread(collector.fetch), self.resource_timeout)
        except ServiceError as exc:
            self._record_error(kind, exc)
            return None
        except asyncio.TimeoutError:
            log.warning("%s fetch exceeded %.0fs", kind.value, self.resource_timeout)
            self._record_error(kind, UpstreamError("Request timed out"))
            return None
        except Exception as exc:
            log.exception("Unexpected error fetching %s", kind.value)
            self._record_error(kind, exc)
            return None
        self.errors.pop(kind, None)
        return metrics

    async def refresh_all(self, scheduled: bool = False) -> Snapshot:
        if scheduled and self._lock.locked():
            log.debug("Refresh already in flight; skipping timer tick")
            return self.metrics

        async with self._lock:
            self.is_loading = True
            self.last_error = None
            try:
                targets = [k for k in ServiceKind.ordered() if self.is_configured(k)]
                results = await asyncio.gather(*(self._fetch(k) for k in targets))
                fresh = {k: m for k, m in zip(targets, results) if m is not None}
                log.info("Refreshed %d/%d provider(s)", len(fresh), len(targets))

                self.metrics = merge(self.metrics, fresh)
                self.last_refreshed = datetime.now(timezone.utc)
                self._persist()
            finally:
                self.is_loading = False
        return self.metrics

    async def refresh(self, kind: ServiceKind) -> UsageMetrics | None:
        async with self._lock:
            self.is_loading = True
            self.last_error = None
            try:
                if not self.is_configured(kind):
                    self._record_error(kind, NotAuthenticated())
                    return self.metrics.get(kind)

                metrics = await self._fetch(kind)
                if metrics is not None:
                    self.metrics = merge(self.metrics, {kind: metrics})
                    self.last_refreshed = datetime.now(timezone.utc)
                    self._persist()
                elif kind not in self.metrics:
                    cached = db.get_service(self.cache_path, kind)
                    if cached is not None:
                        self.metrics = merge(self.metrics, {kind: cached})
            finally:
                self.is_loading = False
            return self.metrics.get(kind)

    # -- scheduling ----------------------------------------------------------

    @property
    def refresh_interval(self) -> RefreshInterval:
        return self._interval

    @property
    def is_scheduled(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def set_refresh_interval(self, interval: RefreshInterval):
        self._interval = interval
        try:
            db.set_setting(self.cache_path, INTERVAL_SETTING, str(interval.value))
        except (sqlite3.Error, OSError) as exc:
            log.error("Could not persist refresh interval: %s", exc)
        if self._running:
            self._reschedule()

    def start(self):
        """Begin periodic refresh. Must be called from a running event loop."""
        self._running = True
        self._reschedule()

    async def stop(self):
        self._running = False
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            with suppress(asyncio.CancelledError):
                await timer

    def _reschedule(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._interval is RefreshInterval.MANUAL:
            log.info("Manual refresh only; no timer scheduled")
            return
        self._timer = asyncio.get_running_loop().create_task(self._tick(self._interval.seconds))
        log.info("Auto refresh every %s", self._interval.display_name)

    async def _tick(self, seconds: float):
        while True:
            await asyncio.sleep(seconds)
            await self.refresh_all(scheduled=True)


def build_manager(settings: Settings | None = None) -> UsageDataManager:
    settings = settings or get_settings()
    store = CredentialStore(
        service=settings.keychain_service,
        preset={ServiceKind.CLAUDE_API: settings.admin_api_key} if settings.admin_api_key else None,
    )
    timeout = settings.request_timeout
    collectors: dict[ServiceKind, Collector] = {
        ServiceKind.CLAUDE_API: AnthropicAdminCollector(store, timeout=timeout),
        ServiceKind.CLAUDE_CODE: ClaudeCodeCollector(timeout=timeout),
        ServiceKind.CODEX_CLI: CodexCollector(timeout=timeout),
        ServiceKind.CURSOR: CursorCollector(timeout=timeout),
    }
    for collector in collectors.values():
        collector.check_access()

    return UsageDataManager(
        collectors,
        store,
        cache_path=settings.cache_db_path,
        shared=SharedStore(settings.shared_path),
        refresh_interval=RefreshInterval.from_seconds(settings.refresh_interval),
        resource_timeout=settings.resource_timeout,
    )
