import logging
from datetime import datetime

from pydantic import BaseModel

from collectors.base import REQUEST_TIMEOUT, Collector, ParsingError, parse_response
from credentials import ClaudeCodeCredential, KeychainSource
from models import ServiceKind, UsageLimit, UsageMetrics

log = logging.getLogger(__name__)

USAGE_API_URL = "https://api.anthropic.com/api/oauth/usage"
OAUTH_BETA = "oauth-2025-04-20"


class UsageWindow(BaseModel):
    utilization: float = 0.0  # already a percentage
    resets_at: datetime | None = None

    def to_limit(self) -> UsageLimit:
        return UsageLimit(used=self.utilization, total=100.0, reset_time=self.resets_at)


class OAuthUsageResponse(BaseModel):
    five_hour: UsageWindow | None = None
    seven_day: UsageWindow | None = None
    seven_day_sonnet: UsageWindow | None = None
    seven_day_opus: UsageWindow | None = None

    @property
    def model_window(self) -> UsageWindow | None:
        return self.seven_day_sonnet or self.seven_day_opus


class ClaudeCodeCollector(Collector):
    """Claude Code subscription windows, using the OAuth token from the keychain."""

    service = ServiceKind.CLAUDE_CODE

    def __init__(self, source: KeychainSource | None = None, timeout: float = REQUEST_TIMEOUT):
        super().__init__(timeout)
        self.source = source or KeychainSource()

    def _remember(self, credential: ClaudeCodeCredential | None):
        self.has_access = credential is not None
        self.plan = credential.plan if credential else None

    def check_access(self) -> bool:
        self._remember(self.source.load())
        return self.has_access

    def _fetch(self) -> UsageMetrics:
        credential = self.source.load()
        if credential is None:
            self._remember(None)
            raise self._not_authenticated()
        self._remember(credential)

        body = self._get_json(
            USAGE_API_URL,
            headers={
                "Authorization": f"Bearer {credential.access_token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
                "anthropic-beta": OAUTH_BETA,
            },
        )
        usage = parse_response(OAuthUsageResponse, body)
        if usage.five_hour is None and usage.seven_day is None and usage.model_window is None:
            raise ParsingError("No usage windows in response")

        metrics = UsageMetrics(
            service=self.service,
            session_limit=usage.five_hour.to_limit() if usage.five_hour else None,
            weekly_limit=usage.seven_day.to_limit() if usage.seven_day else None,
            code_review_limit=usage.model_window.to_limit() if usage.model_window else None,
        )
        log.debug(
            "Claude Code usage: session=%s weekly=%s",
            metrics.session_limit and metrics.session_limit.percentage,
            metrics.weekly_limit and metrics.weekly_limit.percentage,
        )
        return metrics
