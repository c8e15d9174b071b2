import logging
from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

log = logging.getLogger(__name__)

NEAR_LIMIT_PERCENT = 80.0
AT_LIMIT_PERCENT = 100.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _assume_utc(value: datetime | None) -> datetime | None:
    """Timestamps without an offset are UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ServiceKind(str, Enum):
    CLAUDE_API = "claude_api"
    CLAUDE_CODE = "claude_code"
    CODEX_CLI = "codex_cli"
    CURSOR = "cursor"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def sort_rank(self) -> int:
        return _SORT_RANKS[self]

    @classmethod
    def parse(cls, value: str) -> "ServiceKind | None":
        """Accept an identifier ("codex_cli") or a display name ("Codex CLI")."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        needle = value.strip().lower()
        for kind in cls:
            if needle in (kind.value, kind.display_name.lower()):
                return kind
        return None

    @classmethod
    def ordered(cls) -> list["ServiceKind"]:
        return sorted(cls, key=lambda k: k.sort_rank)


_DISPLAY_NAMES = {
    ServiceKind.CLAUDE_API: "Claude API",
    ServiceKind.CLAUDE_CODE: "Claude Code",
    ServiceKind.CODEX_CLI: "Codex CLI",
    ServiceKind.CURSOR: "Cursor",
}

_SORT_RANKS = {
    ServiceKind.CLAUDE_CODE: 0,
    ServiceKind.CODEX_CLI: 1,
    ServiceKind.CURSOR: 2,
    ServiceKind.CLAUDE_API: 3,
}


class UsageStatus(str, Enum):
    GOOD = "good"
    WARNING = "warning"
    CRITICAL = "critical"


class RefreshInterval(int, Enum):
    ONE_MINUTE = 60
    TWO_MINUTES = 120
    FIVE_MINUTES = 300
    FIFTEEN_MINUTES = 900
    THIRTY_MINUTES = 1800
    MANUAL = 0

    @property
    def display_name(self) -> str:
        if self is RefreshInterval.MANUAL:
            return "Manual only"
        minutes = self.value // 60
        return "1 minute" if minutes == 1 else f"{minutes} minutes"

    @property
    def seconds(self) -> float:
        return float(self.value)

    @classmethod
    def from_seconds(cls, seconds: int | None) -> "RefreshInterval":
        try:
            return cls(int(seconds))
        except (TypeError, ValueError):
            return cls.FIFTEEN_MINUTES


class UsageLimit(BaseModel):
    """A single quota window: how much of `total` has been used, and when it resets."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    used: float
    total: float
    reset_time: datetime | None = Field(default=None, alias="resetTime")

    @field_validator("reset_time")
    @classmethod
    def reset_time_as_utc(cls, value: datetime | None) -> datetime | None:
        return _assume_utc(value)

    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 0.0
        return min(100.0, max(0.0, self.used / self.total * 100))

    @property
    def remaining(self) -> float:
        return max(0.0, self.total - self.used)

    @property
    def is_near_limit(self) -> bool:
        return self.percentage >= NEAR_LIMIT_PERCENT

    @property
    def is_at_limit(self) -> bool:
        return self.percentage >= AT_LIMIT_PERCENT

    @property
    def status(self) -> UsageStatus:
        if self.is_at_limit:
            return UsageStatus.CRITICAL
        if self.is_near_limit:
            return UsageStatus.WARNING
        return UsageStatus.GOOD


LIMIT_SLOTS = ("session_limit", "weekly_limit", "code_review_limit")


class UsageMetrics(BaseModel):
    """One provider's snapshot. Built fresh on every successful fetch, never mutated."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: UUID = Field(default_factory=uuid4, exclude=True)
    service: ServiceKind
    session_limit: UsageLimit | None = Field(default=None, alias="sessionLimit")
    weekly_limit: UsageLimit | None = Field(default=None, alias="weeklyLimit")
    code_review_limit: UsageLimit | None = Field(default=None, alias="codeReviewLimit")
    last_updated: datetime = Field(default_factory=_utcnow, alias="lastUpdated")

    @field_validator("last_updated")
    @classmethod
    def last_updated_as_utc(cls, value: datetime) -> datetime:
        return _assume_utc(value)

    @property
    def limits(self) -> list[UsageLimit]:
        return [lim for lim in (getattr(self, slot) for slot in LIMIT_SLOTS) if lim is not None]

    @property
    def has_data(self) -> bool:
        return bool(self.limits)

    @property
    def overall_status(self) -> UsageStatus:
        limits = self.limits
        if any(lim.is_at_limit for lim in limits):
            return UsageStatus.CRITICAL
        if any(lim.is_near_limit for lim in limits):
            return UsageStatus.WARNING
        return UsageStatus.GOOD

    @property
    def earliest_reset(self) -> datetime | None:
        times = [lim.reset_time for lim in self.limits if lim.reset_time is not None]
        return min(times) if times else None

    def same_data(self, other: "UsageMetrics") -> bool:
        """Field equality ignoring the per-instance id."""
        return self.model_dump() == other.model_dump()

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# -- snapshot wire format ----------------------------------------------------

Snapshot = dict[ServiceKind, UsageMetrics]


def encode_snapshot(metrics: Snapshot) -> dict[str, dict]:
    return {
        kind.value: metrics[kind].to_wire()
        for kind in sorted(metrics, key=lambda k: k.sort_rank)
    }


def decode_snapshot(raw) -> Snapshot:
    """Decode a stored snapshot, dropping only the entries that fail to parse."""
    if not isinstance(raw, dict):
        log.debug("Snapshot is not an object (%s); treating as empty", type(raw).__name__)
        return {}

    result: Snapshot = {}
    for key, value in raw.items():
        kind = ServiceKind.parse(key)
        if kind is None:
            log.debug("Skipping unknown provider key %r", key)
            continue
        if not isinstance(value, dict):
            log.debug("Skipping %s: entry is not an object", key)
            continue
        try:
            result[kind] = UsageMetrics.model_validate({**value, "service": kind.value})
        except ValidationError as exc:
            log.debug("Skipping %s: %s", key, exc.errors()[:1])
    return result


# -- API views ---------------------------------------------------------------


class LimitView(BaseModel):
    used: float
    total: float
    reset_time: datetime | None = None
    percentage: float
    status: UsageStatus

    @classmethod
    def of(cls, limit: UsageLimit | None) -> "LimitView | None":
        if limit is None:
            return None
        return cls(
            used=limit.used,
            total=limit.total,
            reset_time=limit.reset_time,
            percentage=round(limit.percentage, 1),
            status=limit.status,
        )


class ServiceUsage(BaseModel):
    service: ServiceKind
    display_name: str
    session_limit: LimitView | None = None
    weekly_limit: LimitView | None = None
    code_review_limit: LimitView | None = None
    last_updated: datetime
    overall_status: UsageStatus
    has_data: bool

    @classmethod
    def of(cls, metrics: UsageMetrics) -> "ServiceUsage":
        return cls(
            service=metrics.service,
            display_name=metrics.service.display_name,
            session_limit=LimitView.of(metrics.session_limit),
            weekly_limit=LimitView.of(metrics.weekly_limit),
            code_review_limit=LimitView.of(metrics.code_review_limit),
            last_updated=metrics.last_updated,
            overall_status=metrics.overall_status,
            has_data=metrics.has_data,
        )


class UsageSummary(BaseModel):
    services: list[ServiceUsage] = []
    next_reset: datetime | None = None
    last_refreshed: datetime | None = None
    last_error: str | None = None


class ProviderState(BaseModel):
    service: ServiceKind
    display_name: str
    configured: bool
    has_access: bool
    plan: str | None = None
    has_data: bool = False
    last_error: str | None = None


class UsageAlert(BaseModel):
    service: ServiceKind
    slot: str
    percentage: float
    level: UsageStatus
    title: str
    body: str
