import logging
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel

from collectors.base import REQUEST_TIMEOUT, Collector, UpstreamError, parse_response
from credentials import CredentialStore
from models import ServiceKind, UsageLimit, UsageMetrics

log = logging.getLogger(__name__)

USAGE_REPORT_URL = "https://api.anthropic.com/v1/organizations/usage_report/messages"
ANTHROPIC_VERSION = "2023-06-01"
WINDOW = timedelta(days=7)
MAX_PAGES = 10

# The Admin API reports usage but has no quota; this floor keeps the bar readable.
TOTAL_FLOOR = 1_000_000
TOTAL_HEADROOM = 1.5


class CacheCreation(BaseModel):
    ephemeral_1h_input_tokens: int | None = None
    ephemeral_5m_input_tokens: int | None = None


class UsageRow(BaseModel):
    model: str | None = None
    input_tokens: int | None = None
    uncached_input_tokens: int | None = None
    output_tokens: int | None = None
    input_cached_tokens: int | None = None
    cache_read_input_tokens: int | None = None
    cache_creation_input_tokens: int | None = None
    cache_creation: CacheCreation | None = None

    @property
    def tokens(self) -> int:
        counts = [
            self.input_tokens,
            self.uncached_input_tokens,
            self.output_tokens,
            self.input_cached_tokens,
            self.cache_read_input_tokens,
            self.cache_creation_input_tokens,
        ]
        if self.cache_creation is not None:
            counts += [
                self.cache_creation.ephemeral_1h_input_tokens,
                self.cache_creation.ephemeral_5m_input_tokens,
            ]
        return sum(c or 0 for c in counts)


class UsageBucket(UsageRow):
    """A day bucket: either flat counts or a `results` list grouped by model."""

    starting_at: str | None = None
    ending_at: str | None = None
    results: list[UsageRow] = []

    @property
    def tokens(self) -> int:
        return super().tokens + sum(row.tokens for row in self.results)


class UsageReportResponse(BaseModel):
    data: list[UsageBucket] = []
    has_more: bool = False
    next_page: str | None = None


def _iso(ts: datetime) -> str:
    return ts.strftime("%Y-%m-%dT%H:%M:%SZ")


def weekly_limit(used: float, window_start: datetime) -> UsageLimit:
    return UsageLimit(
        used=used,
        total=max(used * TOTAL_HEADROOM, TOTAL_FLOOR),
        reset_time=window_start + WINDOW,
    )


class AnthropicAdminCollector(Collector):
    """Organization token usage over the trailing week, via the Admin API key."""

    service = ServiceKind.CLAUDE_API

    def __init__(self, store: CredentialStore, timeout: float = REQUEST_TIMEOUT):
        super().__init__(timeout)
        self.store = store

    def check_access(self) -> bool:
        self.has_access = self.store.is_configured(self.service)
        return self.has_access

    def _fetch(self) -> UsageMetrics:
        admin_key = self.store.get(self.service)
        if not admin_key:
            raise self._not_authenticated()
        self.has_access = True

        end = datetime.now(timezone.utc).replace(microsecond=0)
        start = end - WINDOW
        params = {
            "starting_at": _iso(start),
            "ending_at": _iso(end),
            "bucket_width": "1d",
            "group_by[]": "model",
        }
        headers = {
            "x-api-key": admin_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

        total_tokens = 0
        for _ in range(MAX_PAGES):
            body = self._get_json(USAGE_REPORT_URL, headers=headers, params=params)
            report = parse_response(UsageReportResponse, body)
            total_tokens += sum(bucket.tokens for bucket in report.data)
            if not (report.has_more and report.next_page):
                break
            params = {**params, "page": report.next_page}
        else:
            raise UpstreamError(f"Usage report still paginated after {MAX_PAGES} pages")

        log.debug("Admin API usage over 7 days: %d tokens", total_tokens)
        return UsageMetrics(service=self.service, weekly_limit=weekly_limit(total_tokens, start))
