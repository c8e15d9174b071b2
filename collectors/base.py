import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request

from pydantic import BaseModel, ValidationError

from models import ServiceKind, UsageMetrics

log = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30.0

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Safari/605.1.15"
)


class ServiceError(Exception):
    default_message = "Service error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class NotAuthenticated(ServiceError):
    default_message = "Not authenticated"


class InvalidRequest(ServiceError):
    default_message = "Invalid request"


class UpstreamError(ServiceError):
    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class ParsingError(ServiceError):
    default_message = "Failed to parse response"


def _describe(reason) -> str:
    if isinstance(reason, TimeoutError):
        return "Request timed out"
    if isinstance(reason, socket.gaierror):
        return "DNS lookup failed"
    if isinstance(reason, ConnectionRefusedError):
        return "Connection refused"
    return str(reason)


def parse_response(model: type[BaseModel], data: dict):
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        log.debug("%s did not match: %s", model.__name__, exc.errors()[:3])
        raise ParsingError() from exc


class Collector:
    """One provider: local credential check plus the authenticated usage request.

    `has_access` and `plan` come from a local-only check and can be refreshed
    without a network call; `fetch()` either returns complete metrics or raises
    a ServiceError.
    """

    service: ServiceKind
    # check_access(deep_scan=True) also runs a slow recursive search
    supports_deep_scan = False

    def __init__(self, timeout: float = REQUEST_TIMEOUT):
        self.timeout = timeout
        self.has_access = False
        self.plan: str | None = None
        self.last_error: ServiceError | None = None

    def check_access(self) -> bool:
        raise NotImplementedError

    def fetch(self) -> UsageMetrics:
        try:
            metrics = self._fetch()
        except ServiceError as exc:
            self.last_error = exc
            log.warning("%s fetch failed: %s", self.service.value, exc)
            raise
        self.last_error = None
        return metrics

    def _fetch(self) -> UsageMetrics:
        raise NotImplementedError

    def _not_authenticated(self) -> NotAuthenticated:
        self.has_access = False
        return NotAuthenticated()

    def _get_json(self, url: str, headers: dict[str, str], params: dict | None = None) -> dict:
        if params:
            url = f"{url}?{urllib.parse.urlencode(params, doseq=True)}"
        try:
            req = urllib.request.Request(url, headers=headers, method="GET")
        except ValueError as exc:
            log.error("Could not build request for %s: %s", url, exc)
            raise InvalidRequest(str(exc)) from exc

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                log.debug("GET %s  status=%s", req.full_url, resp.status)
                body = resp.read()
        except urllib.error.HTTPError as exc:
            if exc.code == 401:
                raise self._not_authenticated() from exc
            text = exc.read().decode("utf-8", errors="replace")
            log.debug("GET %s  status=%s  body=%s", req.full_url, exc.code, text[:200])
            raise UpstreamError(f"HTTP {exc.code}: {text[:100]}", status=exc.code) from exc
        except urllib.error.URLError as exc:
            raise UpstreamError(_describe(exc.reason)) from exc
        except TimeoutError as exc:
            raise UpstreamError("Request timed out") from exc
        except OSError as exc:
            raise UpstreamError(str(exc)) from exc

        try:
            data = json.loads(body)
        except ValueError as exc:
            log.debug("Undecodable body from %s: %r", req.full_url, body[:200])
            raise ParsingError() from exc
        if not isinstance(data, dict):
            raise ParsingError("Expected a JSON object")
        return data
