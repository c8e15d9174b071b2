import logging
from datetime import datetime

from pydantic import BaseModel

from collectors.base import BROWSER_USER_AGENT, REQUEST_TIMEOUT, Collector, parse_response
from credentials import AuthFileSource
from models import ServiceKind, UsageLimit, UsageMetrics

log = logging.getLogger(__name__)

USAGE_API_URL = "https://chatgpt.com/backend-api/wham/usage"


class LimitWindow(BaseModel):
    used_percent: float = 0.0
    limit_window_seconds: int | None = None
    reset_after_seconds: int | None = None
    reset_at: datetime | None = None  # epoch seconds upstream

    def to_limit(self) -> UsageLimit:
        return UsageLimit(used=self.used_percent, total=100.0, reset_time=self.reset_at)


class RateLimit(BaseModel):
    allowed: bool = True
    limit_reached: bool = False
    primary_window: LimitWindow | None = None
    secondary_window: LimitWindow | None = None


class Credits(BaseModel):
    has_credits: bool = False
    unlimited: bool = False
    balance: float | None = None


class WhamUsageResponse(BaseModel):
    plan_type: str | None = None
    rate_limit: RateLimit | None = None  # null for free / never-used accounts
    code_review_rate_limit: RateLimit | None = None
    credits: Credits | None = None


def _limit(window: LimitWindow | None) -> UsageLimit | None:
    return window.to_limit() if window is not None else None


class CodexCollector(Collector):
    """Codex CLI windows, using the tokens in ~/.codex/auth.json."""

    service = ServiceKind.CODEX_CLI

    def __init__(self, source: AuthFileSource | None = None, timeout: float = REQUEST_TIMEOUT):
        super().__init__(timeout)
        self.source = source or AuthFileSource()

    def check_access(self) -> bool:
        self.has_access = self.source.load() is not None
        return self.has_access

    def _fetch(self) -> UsageMetrics:
        credential = self.source.load()
        if credential is None:
            raise self._not_authenticated()

        body = self._get_json(
            USAGE_API_URL,
            headers={
                "Authorization": f"Bearer {credential.access_token}",
                # Selects the workspace; without it team accounts report the free plan.
                "ChatGPT-Account-Id": credential.account_id,
                "Accept": "*/*",
                "Origin": "https://chatgpt.com",
                "Referer": "https://chatgpt.com/",
                "User-Agent": BROWSER_USER_AGENT,
            },
        )
        usage = parse_response(WhamUsageResponse, body)
        self.has_access = True
        self.plan = usage.plan_type

        rate_limit = usage.rate_limit
        if rate_limit is None:
            log.debug("No rate limit data (free account or no usage yet)")
            return UsageMetrics(service=self.service)

        code_review = usage.code_review_rate_limit
        return UsageMetrics(
            service=self.service,
            session_limit=_limit(rate_limit.primary_window),
            weekly_limit=_limit(rate_limit.secondary_window),
            code_review_limit=_limit(code_review.primary_window if code_review else None),
        )
