import logging
import urllib.parse
from datetime import datetime

from pydantic import BaseModel, Field

from collectors.base import REQUEST_TIMEOUT, Collector, parse_response
from credentials import CursorCredential, StateDatabaseSource
from models import ServiceKind, UsageLimit, UsageMetrics

log = logging.getLogger(__name__)

USAGE_SUMMARY_URL = "https://cursor.com/api/usage-summary"
DEFAULT_PLAN_TOTAL = 500
SESSION_COOKIE = "WorkosCursorSessionToken"

_HEADERS = {
    "Accept": "*/*",
    "Content-Type": "application/json",
    "Origin": "https://cursor.com",
    "Referer": "https://cursor.com/dashboard?tab=usage",
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36",
}


class PlanUsage(BaseModel):
    used: float | None = None
    limit: float | None = None
    remaining: float | None = None
    included: float | None = None
    bonus: float | None = None
    total: float | None = None


class OnDemandUsage(BaseModel):
    used: float | None = None
    limit: float | None = None
    remaining: float | None = None
    enabled: bool | None = None


class IndividualUsage(BaseModel):
    plan: PlanUsage | None = None
    on_demand: OnDemandUsage | None = Field(default=None, alias="onDemand")


class UsageSummaryResponse(BaseModel):
    billing_cycle_start: str | None = Field(default=None, alias="billingCycleStart")
    billing_cycle_end: str | None = Field(default=None, alias="billingCycleEnd")
    membership_type: str | None = Field(default=None, alias="membershipType")
    limit_type: str | None = Field(default=None, alias="limitType")
    individual_usage: IndividualUsage | None = Field(default=None, alias="individualUsage")
    team_usage: IndividualUsage | None = Field(default=None, alias="teamUsage")


def parse_cycle_end(value: str | None) -> datetime | None:
    """Billing cycle timestamps come with or without fractional seconds."""
    if not value:
        return None
    for fmt in ("%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S%z"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    log.debug("Unparseable billing cycle end: %r", value)
    return None


def session_cookie(credential: CursorCredential) -> str:
    value = urllib.parse.quote(f"{credential.user_id}::{credential.token}", safe="")
    return f"{SESSION_COOKIE}={value}"


def summary_to_metrics(summary: UsageSummaryResponse) -> UsageMetrics:
    reset_time = parse_cycle_end(summary.billing_cycle_end)
    individual = summary.individual_usage or IndividualUsage()
    plan = individual.plan or PlanUsage()

    weekly = UsageLimit(
        used=plan.used or 0,
        total=plan.total if plan.total is not None else DEFAULT_PLAN_TOTAL,
        reset_time=reset_time,
    )

    session = None
    on_demand = individual.on_demand
    if on_demand is not None and on_demand.enabled:
        used = on_demand.used or 0
        limit = on_demand.limit or 0
        if used > 0 or limit > 0:
            session = UsageLimit(
                used=used,
                total=limit if limit > 0 else used * 1.5,
                reset_time=reset_time,
            )

    return UsageMetrics(service=ServiceKind.CURSOR, session_limit=session, weekly_limit=weekly)


class CursorCollector(Collector):
    """Cursor plan usage, authenticated with the session token from state.vscdb."""

    service = ServiceKind.CURSOR
    supports_deep_scan = True

    def __init__(self, source: StateDatabaseSource | None = None, timeout: float = REQUEST_TIMEOUT):
        super().__init__(timeout)
        self.source = source or StateDatabaseSource()

    def check_access(self, deep_scan: bool = False) -> bool:
        self.has_access = self.source.load(deep_scan=deep_scan) is not None
        if not self.has_access:
            self.plan = None
        return self.has_access

    def _credential(self) -> CursorCredential | None:
        # The recursive scan is slow, so only fall back to it when the known paths miss.
        return self.source.load(deep_scan=False) or self.source.load(deep_scan=True)

    def _fetch(self) -> UsageMetrics:
        credential = self._credential()
        if credential is None:
            log.info("No Cursor access token found after full scan")
            raise self._not_authenticated()
        self.has_access = True

        headers = {**_HEADERS, "Cookie": session_cookie(credential)}
        body = self._get_json(USAGE_SUMMARY_URL, headers=headers)
        summary = parse_response(UsageSummaryResponse, body)
        self.plan = summary.membership_type

        metrics = summary_to_metrics(summary)
        log.debug(
            "Cursor plan usage: %s / %s",
            metrics.weekly_limit.used, metrics.weekly_limit.total,
        )
        return metrics
