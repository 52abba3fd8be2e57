"""HTTP client for the HZPP live train-delay page."""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import httpx
import structlog
from opentelemetry.trace import SpanKind
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from delay_stats.core.config import Settings, settings
from delay_stats.core.errors import FetchError
from delay_stats.core.telemetry import service_span
from delay_stats.schemas.observations import FetchedPayload

logger = structlog.get_logger(__name__)

# Status codes worth retrying: rate limiting and server-side failures
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


# ==================== Pure Helper Functions ====================


def is_retryable_status(status_code: int) -> bool:
    """
    Check whether an HTTP status indicates a transient upstream failure.

    Examples:
        >>> is_retryable_status(503)
        True
        >>> is_retryable_status(404)
        False
    """
    return status_code >= 500 or status_code in RETRYABLE_STATUS_CODES


def is_transient_fetch_error(exc: BaseException) -> bool:
    """Retry predicate: only FetchErrors classified as transient are retried."""
    return isinstance(exc, FetchError) and exc.transient


class ScrapeClient:
    """
    Fetches live status pages, one request per route number.

    Per-route failures never raise: fetch() returns a classified FetchError
    so one unreachable train cannot abort the rest of the cycle.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        base_url: str | None = None,
        api_token: str | None = None,
        timeout_seconds: float | None = None,
        max_attempts: int | None = None,
        backoff_base_seconds: float | None = None,
        backoff_max_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        config: Settings | None = None,
    ) -> None:
        """
        Initialize the scrape client.

        Args:
            http_client: Shared httpx client (owned by the caller)
            base_url: Live delay endpoint; defaults to HZPP_DELAY_URL
            api_token: Optional bearer token; defaults to HZPP_API_TOKEN
            timeout_seconds: Per-request timeout; defaults to FETCH_TIMEOUT_SECONDS
            max_attempts: Total attempts for transient failures; defaults to FETCH_RETRY_ATTEMPTS
            backoff_base_seconds: First retry delay; defaults to FETCH_BACKOFF_BASE_SECONDS
            backoff_max_seconds: Retry delay cap; defaults to FETCH_BACKOFF_MAX_SECONDS
            sleep: Awaitable sleep, replaceable in tests
            config: Settings the defaults are read from; the global settings if omitted
        """
        config = config or settings
        self.http_client = http_client
        self.base_url = base_url or config.HZPP_DELAY_URL
        self.api_token = api_token if api_token is not None else config.HZPP_API_TOKEN
        self.timeout_seconds = timeout_seconds or config.FETCH_TIMEOUT_SECONDS
        self.max_attempts = max_attempts or config.FETCH_RETRY_ATTEMPTS
        self.backoff_base_seconds = (
            backoff_base_seconds if backoff_base_seconds is not None else config.FETCH_BACKOFF_BASE_SECONDS
        )
        self.backoff_max_seconds = (
            backoff_max_seconds if backoff_max_seconds is not None else config.FETCH_BACKOFF_MAX_SECONDS
        )
        self._sleep = sleep

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "text/html"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def _attempt(self, route_number: int, attempt: int) -> FetchedPayload:
        """Run one request. Raises FetchError classified as transient or permanent."""
        try:
            response = await self.http_client.get(
                self.base_url,
                params={"trainId": route_number},
                headers=self._headers(),
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise FetchError(route_number, f"timeout: {e!r}", transient=True, attempts=attempt) from e
        except httpx.TransportError as e:
            raise FetchError(route_number, f"transport error: {e!r}", transient=True, attempts=attempt) from e

        if response.status_code >= 400:
            raise FetchError(
                route_number,
                f"HTTP {response.status_code}",
                transient=is_retryable_status(response.status_code),
                status_code=response.status_code,
                attempts=attempt,
            )

        try:
            body = response.text
        except (UnicodeDecodeError, LookupError) as e:
            raise FetchError(
                route_number,
                f"undecodable body: {e}",
                transient=False,
                status_code=response.status_code,
                attempts=attempt,
            ) from e

        return FetchedPayload(
            route_number=route_number,
            body=body,
            fetched_at=datetime.now(UTC),
            status_code=response.status_code,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        """before_sleep hook: one warning per scheduled retry."""
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "fetch_retry_scheduled",
            route_number=getattr(error, "route_number", None),
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            delay_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            reason=getattr(error, "reason", None),
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base_seconds, min=0, max=self.backoff_max_seconds),
            retry=retry_if_exception(is_transient_fetch_error),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )

    async def fetch(self, route_number: int) -> FetchedPayload | FetchError:
        """
        Fetch the live status page for a route number.

        Transient failures (timeouts, connection errors, 429 and 5xx) are
        retried with bounded exponential backoff; anything else fails at once.

        Args:
            route_number: Public train number

        Returns:
            The payload on success, otherwise the last FetchError
        """
        with service_span(
            "scrape.fetch",
            "hzpp",
            kind=SpanKind.CLIENT,
            **{"scrape.route_number": route_number},
        ) as span:
            try:
                async for attempt in self._retrying():
                    with attempt:
                        payload = await self._attempt(route_number, attempt.retry_state.attempt_number)
            except FetchError as e:
                logger.warning(
                    "fetch_failed",
                    route_number=route_number,
                    attempts=e.attempts,
                    transient=e.transient,
                    status_code=e.status_code,
                    reason=e.reason,
                )
                span.set_attribute("scrape.attempts", e.attempts)
                span.set_attribute("scrape.failed", True)
                return e

            attempts = attempt.retry_state.attempt_number
            span.set_attribute("scrape.attempts", attempts)
            span.set_attribute("scrape.failed", False)
            logger.debug(
                "fetch_succeeded",
                route_number=route_number,
                attempts=attempts,
                size=len(payload.body),
            )
            return payload
