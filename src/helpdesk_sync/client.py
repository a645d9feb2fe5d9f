"""
Helpdesk API Client

Synchronous HTTP gateway with:
- Fixed auth / content negotiation / site headers
- Retry with exponential backoff for 429, 503 and network failures
- Immediate failure for every other non-2xx status
- A short throttle after each successful call
- One operations log entry per attempt
"""

import time
from datetime import datetime, timedelta
from typing import Any, Callable

import httpx
import structlog
from pydantic import BaseModel, ValidationError
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from helpdesk_sync.errors import FatalSyncError
from helpdesk_sync.models import (
    HDSlaResponse,
    HDTeam,
    HDTeamsResponse,
    HDTicketSearchResponse,
    HDTicketSla,
)
from helpdesk_sync.oplog import OperationLog
from helpdesk_sync.rate_limiter import IntervalThrottle

logger = structlog.get_logger(__name__)

# Sort expressions understood by the search endpoint
SORT_CREATED_ASC = "CreatedDate ASC"
SORT_MODIFIED_ASC = "ModifiedDate ASC"

# Portion of the inter-batch delay applied after every successful call
SUCCESS_THROTTLE_FRACTION = 0.25

BODY_EXCERPT_CHARS = 500

# Smallest step of the API's timestamps
END_RESOLUTION = timedelta(microseconds=1)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class HelpdeskAPIError(FatalSyncError):
    """Base exception for helpdesk API errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
        endpoint: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.endpoint = endpoint

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code:
            return f"{base} (HTTP {self.status_code})"
        return base


class HelpdeskRateLimitError(HelpdeskAPIError):
    """Raised when API rate limit is exceeded (429)."""
    pass


class HelpdeskUnavailableError(HelpdeskAPIError):
    """Raised when the service is temporarily unavailable (503)."""
    pass


class HelpdeskAuthError(HelpdeskAPIError):
    """Raised when authentication fails (401/403)."""
    pass


class HelpdeskNotFoundError(HelpdeskAPIError):
    """Raised when resource not found (404)."""
    pass


class RetryExhaustedError(HelpdeskAPIError):
    """Raised when a retryable failure persists past the attempt ceiling."""
    pass


# ---------------------------------------------------------------------------
# Retry Configuration
# ---------------------------------------------------------------------------

def is_retryable_error(exception: BaseException) -> bool:
    """Determine if an exception should trigger a retry."""
    if isinstance(exception, HelpdeskRateLimitError):
        return True
    if isinstance(exception, HelpdeskUnavailableError):
        return True
    if isinstance(exception, httpx.TransportError):
        return True
    return False


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def parse_response(model: type[BaseModel], data: Any, endpoint: str) -> Any:
    """Validate a decoded body, treating a wrong shape like any other API error."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.error("Malformed API response", endpoint=endpoint, errors=e.error_count())
        raise HelpdeskAPIError(
            f"Malformed response from {endpoint}: {e.error_count()} validation error(s)",
            response_body=str(data)[:BODY_EXCERPT_CHARS],
            endpoint=endpoint,
        ) from e


# ---------------------------------------------------------------------------
# Search filters
# ---------------------------------------------------------------------------

def created_between(start: datetime, end: datetime) -> dict[str, str]:
    """
    Filter facet for tickets created in [start, end).

    The endpoint treats End as inclusive, so the last instant sent is one
    microsecond before `end`.
    """
    last = end - END_RESOLUTION
    return {"Facet": "CreatedDate", "Start": start.isoformat(), "End": last.isoformat()}


def modified_since(since: datetime) -> dict[str, str]:
    """Filter facet for tickets modified at or after `since`."""
    return {"Facet": "ModifiedDate", "Start": since.isoformat()}


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class HelpdeskClient:
    """
    Helpdesk API gateway.

    Example:
        client = HelpdeskClient(
            base_url="https://district.example.com/api/v1.0",
            api_token="your-token",
            site_id="site-guid",
        )

        with client:
            page = client.search_tickets(page=0, page_size=100)
    """

    def __init__(
        self,
        base_url: str,
        api_token: str,
        site_id: str | None = None,
        throttle_ms: int = 1000,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_base: float = 2.0,
        oplog: OperationLog | None = None,
        sleep: Callable[[float], None] = time.sleep,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: API root, e.g. https://host/api/v1.0
            api_token: Bearer token
            site_id: Optional tenant/site id sent as the SiteId header
            throttle_ms: Inter-batch delay; a fraction of it follows each success
            timeout: Request timeout in seconds
            max_retries: Retries after the first attempt for transient errors
            backoff_base: First backoff wait in seconds; doubles per retry
            oplog: Operations log sink (one entry per attempt)
            sleep: Sleep function (injectable for tests)
            transport: Optional httpx transport (tests use MockTransport)
        """
        if not base_url.startswith(("http://", "https://")):
            raise ValueError(f"Invalid base URL '{base_url}'. Must start with http:// or https://")

        if not api_token:
            raise ValueError("API token is required")

        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.site_id = site_id
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.oplog = oplog

        self._sleep = sleep
        self._transport = transport
        self.throttle = IntervalThrottle.from_millis(
            throttle_ms, fraction=SUCCESS_THROTTLE_FRACTION, sleep=sleep,
        )
        self._client: httpx.Client | None = None

        # Request counters for observability
        self._request_count = 0
        self._error_count = 0

        self._log = logger.bind(base_url=self.base_url)

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": "helpdesk-sync/1.0",
        }
        if self.site_id:
            headers["SiteId"] = self.site_id
        return headers

    def _build_client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=self._headers(),
            transport=self._transport,
        )

    def __enter__(self) -> "HelpdeskClient":
        """Open the pooled HTTP client."""
        if self._client is None:
            self._client = self._build_client()
        return self

    def __exit__(self, *args: Any) -> None:
        """Clean up HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    @property
    def client(self) -> httpx.Client:
        """Get HTTP client, creating if needed."""
        if self._client is None:
            self._client = self._build_client()
        return self._client

    def _record(self, endpoint: str, outcome: str, attempt: int, **details: Any) -> None:
        if self.oplog is not None:
            self.oplog.record("api_request", outcome, endpoint=endpoint, attempt=attempt, **details)

    def _raise_for_status(self, response: httpx.Response, endpoint: str) -> None:
        status = response.status_code
        if status < 300:
            return

        self._error_count += 1
        body = response.text[:BODY_EXCERPT_CHARS]

        if status == 429:
            raise HelpdeskRateLimitError(
                "Rate limit exceeded - will retry",
                status_code=status, response_body=body, endpoint=endpoint,
            )
        if status == 503:
            raise HelpdeskUnavailableError(
                "Service unavailable - will retry",
                status_code=status, response_body=body, endpoint=endpoint,
            )
        if status in (401, 403):
            raise HelpdeskAuthError(
                "Authentication failed - check the API token and site id",
                status_code=status, response_body=body, endpoint=endpoint,
            )
        if status == 404:
            raise HelpdeskNotFoundError(
                f"Resource not found: {endpoint}",
                status_code=status, response_body=body, endpoint=endpoint,
            )
        raise HelpdeskAPIError(
            f"API error on {endpoint}: {body[:200]}",
            status_code=status, response_body=body, endpoint=endpoint,
        )

    def _make_request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        payload: Any = None,
    ) -> Any:
        """
        Make a retrying request to the API and decode the JSON body.

        429, 503 and transport errors are retried with waits of
        backoff_base * 2^n seconds; exhaustion raises RetryExhaustedError.
        Any other non-2xx status raises immediately.
        """
        log = self._log.bind(endpoint=endpoint, method=method)
        attempt = 0

        def _before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            log.info(
                "Retrying API request",
                attempt=retry_state.attempt_number,
                wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
                error=str(error),
            )

        def _do_request() -> Any:
            nonlocal attempt
            attempt += 1
            self._request_count += 1

            log.debug("API request", attempt=attempt)

            start_time = time.monotonic()
            try:
                response = self.client.request(method, endpoint, params=params, json=payload)
            except httpx.TransportError as e:
                self._error_count += 1
                self._record(endpoint, "network_error", attempt, error=str(e))
                raise
            elapsed = time.monotonic() - start_time

            log.debug(
                "API response",
                attempt=attempt,
                status_code=response.status_code,
                elapsed_ms=round(elapsed * 1000),
            )

            try:
                self._raise_for_status(response, endpoint)
            except HelpdeskAPIError as e:
                outcome = "retryable_error" if is_retryable_error(e) else "error"
                self._record(
                    endpoint, outcome, attempt,
                    status_code=e.status_code, body=e.response_body,
                )
                raise

            try:
                data = response.json()
            except ValueError as e:
                self._record(endpoint, "error", attempt, status_code=response.status_code, error="invalid json")
                raise HelpdeskAPIError(
                    f"Invalid JSON response: {e}",
                    status_code=response.status_code,
                    response_body=response.text[:BODY_EXCERPT_CHARS],
                    endpoint=endpoint,
                )

            self._record(endpoint, "ok", attempt, status_code=response.status_code)
            self.throttle.pause()
            return data

        retrying = Retrying(
            retry=retry_if_exception(is_retryable_error),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.backoff_base, min=self.backoff_base, max=120),
            sleep=self._sleep,
            before_sleep=_before_sleep,
        )

        try:
            return retrying(_do_request)
        except RetryError as e:
            last = e.last_attempt.exception()
            log.error("API request failed after retries", attempts=attempt, error=str(last))
            raise RetryExhaustedError(
                f"Gave up on {endpoint} after {attempt} attempts: {last}",
                status_code=getattr(last, "status_code", None),
                response_body=getattr(last, "response_body", None),
                endpoint=endpoint,
            ) from last

    # -------------------------------------------------------------------------
    # Tickets
    # -------------------------------------------------------------------------

    def search_tickets(
        self,
        page: int = 0,
        page_size: int = 100,
        filters: list[dict[str, Any]] | None = None,
        sort: str = SORT_CREATED_ASC,
    ) -> HDTicketSearchResponse:
        """
        Fetch one page of the ticket search.

        Pages are zero-based. The response reports the total row count for
        the filter in Paging.TotalRows (or Paging.Total).
        """
        params = {"$p": page, "$s": page_size, "$o": sort}
        data = self._make_request("POST", "/tickets", params=params, payload={"Filters": filters or []})
        return parse_response(HDTicketSearchResponse, data, "/tickets")

    def get_ticket_slas(self, ticket_ids: list[str]) -> list[HDTicketSla]:
        """
        Batched SLA lookup for a list of ticket ids.

        The ids are sent as an OR-list of ticket facets in one request.
        Tickets without an SLA policy come back with a null Sla or not at all.
        """
        if not ticket_ids:
            return []
        payload = {
            "Filters": [{"Facet": "Ticket", "Id": ticket_id} for ticket_id in ticket_ids],
            "FilterOperator": "Or",
        }
        params = {"$s": len(ticket_ids)}
        data = self._make_request("POST", "/tickets/slas", params=params, payload=payload)
        return parse_response(HDSlaResponse, data, "/tickets/slas").items

    # -------------------------------------------------------------------------
    # Reference data
    # -------------------------------------------------------------------------

    def get_all_teams(self) -> list[HDTeam]:
        """Fetch the full teams reference list (small, unpaginated)."""
        data = self._make_request("GET", "/teams/all")
        if isinstance(data, list):
            data = {"Items": data}
        return parse_response(HDTeamsResponse, data, "/teams/all").items

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Get client statistics for monitoring."""
        return {
            "base_url": self.base_url,
            "request_count": self._request_count,
            "error_count": self._error_count,
            "error_rate": round(self._error_count / max(1, self._request_count), 4),
            "throttle": self.throttle.get_stats(),
        }

    def health_check(self) -> dict[str, Any]:
        """Verify API connectivity and credentials."""
        try:
            data = self._make_request("GET", "/users/me")
            return {
                "status": "healthy",
                "user": (data or {}).get("Name", "unknown") if isinstance(data, dict) else "unknown",
                "base_url": self.base_url,
            }
        except HelpdeskAuthError:
            return {"status": "auth_error", "message": "Invalid API token or site id"}
        except HelpdeskAPIError as e:
            return {"status": "error", "message": str(e)}
