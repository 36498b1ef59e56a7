"""
request_interceptor.py
----------------------
MediFlow Clinical API Client - Request Interceptor
---------------------------------------------------
Gives every outbound call the same lifecycle:

  1. a correlation id (``req_<epoch ms>_<random>``) tracked in the set of
     active requests until the call settles;
  2. a timing span named after the correlation id;
  3. retry with exponential backoff (tenacity ``AsyncRetrying``):
       - 401 / 403 and every other 4xx except 429: fail at once;
       - 5xx, 429, network errors and timeouts: retry until the budget
         (``retries`` extra attempts) is spent;
       - the wait before retry *i* (0-indexed) is ``retry_delay * 2**i``;
       - when the budget is spent the last underlying error is re-raised,
         so callers and the classifier below still see its status code;
  4. on terminal failure, an ``ApiErrorContext`` report to the monitoring
     boundary, followed by status-specific side effects: a 401 evicts the
     credential and sends the user to the login entry point, other known
     statuses and network codes push a user-facing message;
  5. the original error is re-raised to the caller.

Retries are invisible to the caller; only the final value or the terminal
error is observable.  An optional ``cancel_event`` in the request options
stops the loop before the next attempt or in the middle of a backoff wait.

Project: MediFlow Clinical API Client
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional, TypeVar, Union

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from api_config import ClientSettings
from api_models import ApiErrorContext, RequestOptions
from api_transport import NETWORK_ERROR, TIMEOUT
from monitoring import ErrorLogger, PerformanceMonitor

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# User-facing messages
# ---------------------------------------------------------------------------

ACCESS_DENIED_MESSAGE = "Access denied. Insufficient permissions."
NOT_FOUND_MESSAGE = (
    "The requested resource was not found. "
    "Please check the URL or contact support if this persists."
)
CONFLICT_MESSAGE = "This resource already exists. Please check your data and try again."
VALIDATION_MESSAGE = "Please check your input data and try again."
RATE_LIMITED_MESSAGE = "Too many requests. Please wait a moment before trying again."
SERVER_ERROR_MESSAGE = "Server error. Please try again later or contact support."
UNAVAILABLE_MESSAGE = "Service temporarily unavailable. Please try again in a few moments."
NETWORK_ERROR_MESSAGE = "Network error. Please check your internet connection and try again."
TIMEOUT_MESSAGE = "Request timed out. Please try again."
GENERIC_MESSAGE = "An unexpected error occurred. Please try again or contact support."

STATUS_MESSAGES: Dict[int, str] = {
    403: ACCESS_DENIED_MESSAGE,
    404: NOT_FOUND_MESSAGE,
    409: CONFLICT_MESSAGE,
    422: VALIDATION_MESSAGE,
    429: RATE_LIMITED_MESSAGE,
    500: SERVER_ERROR_MESSAGE,
    502: UNAVAILABLE_MESSAGE,
    503: UNAVAILABLE_MESSAGE,
    504: UNAVAILABLE_MESSAGE,
}

CODE_MESSAGES: Dict[str, str] = {
    NETWORK_ERROR: NETWORK_ERROR_MESSAGE,
    TIMEOUT: TIMEOUT_MESSAGE,
}


class RequestCancelledError(Exception):
    """Raised when a request's cancel event fires; never retried."""


class UserFacingError(Exception):
    """A message shown to the user, reported so it can be correlated later."""


# ---------------------------------------------------------------------------
# Classification helpers
# ---------------------------------------------------------------------------

def error_status(error: BaseException) -> Optional[int]:
    """HTTP status carried by *error*, if any."""
    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(error, "status", None)
    return status if isinstance(status, int) else None


def is_retryable(error: BaseException) -> bool:
    """
    Whether another attempt could succeed after *error*.

    Client errors (4xx other than 429) fail fast; so do cancellation and
    anything that is not an ``Exception`` (``asyncio.CancelledError``).
    """
    if not isinstance(error, Exception) or isinstance(error, RequestCancelledError):
        return False
    status = error_status(error)
    if status in (401, 403):
        return False
    if status is not None and 400 <= status < 500 and status != 429:
        return False
    return True


def user_message_for(error: BaseException) -> str:
    """Message shown to the user for a non-401 terminal failure."""
    status = error_status(error)
    if status in STATUS_MESSAGES:
        return STATUS_MESSAGES[status]
    code = getattr(error, "code", None)
    if status is None and code in CODE_MESSAGES:
        return CODE_MESSAGES[code]
    return GENERIC_MESSAGE


# ---------------------------------------------------------------------------
# Side-effect capabilities
# ---------------------------------------------------------------------------

class Notifier:
    """
    The "show message" channel.  Messages are logged and handed to *sink*
    (a toast / banner adapter) when one is configured.
    """

    def __init__(self, sink: Optional[Callable[[str], None]] = None) -> None:
        self._sink = sink

    def show_message(self, message: str) -> None:
        logger.warning("User notice: %s", message)
        if self._sink is not None:
            self._sink(message)


class SessionHandler:
    """
    Session capability used after a 401.

    Args:
        on_clear:    Drops the stored credential (the client wires this to
                     ``ApiTransport.set_token(None)``).
        on_navigate: Receives the login URL; a UI adapter performs the
                     actual navigation.
        login_url:   Login entry point.
    """

    def __init__(
        self,
        *,
        on_clear: Optional[Callable[[], None]] = None,
        on_navigate: Optional[Callable[[str], None]] = None,
        login_url: str = "/login",
    ) -> None:
        self._on_clear = on_clear
        self._on_navigate = on_navigate
        self.login_url = login_url

    def clear_credentials(self) -> None:
        if self._on_clear is not None:
            self._on_clear()
        logger.info("SessionHandler: stored credential cleared after 401.")

    def navigate_to_login(self) -> None:
        logger.info("SessionHandler: redirecting to %s.", self.login_url)
        if self._on_navigate is not None:
            self._on_navigate(self.login_url)


# ---------------------------------------------------------------------------
# Interceptor
# ---------------------------------------------------------------------------

SleepFn = Callable[[float], Awaitable[Any]]


class RequestInterceptor:
    """
    Wraps zero-argument request thunks with identification, timing, retry
    and failure reporting.

    Args:
        settings:     Retry defaults and reporting switches.
        error_logger: Monitoring sink for error reports.
        performance:  Timing span recorder.
        notifier:     User-facing message channel.
        session:      401 handling (credential eviction, login redirect).
        sleep:        Async sleep used for backoff waits; tests inject a
                      recorder instead of waiting for real.
    """

    def __init__(
        self,
        *,
        settings: Optional[ClientSettings] = None,
        error_logger: Optional[ErrorLogger] = None,
        performance: Optional[PerformanceMonitor] = None,
        notifier: Optional[Notifier] = None,
        session: Optional[SessionHandler] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.settings = settings or ClientSettings()
        self.error_logger = error_logger or ErrorLogger()
        self.performance = performance or PerformanceMonitor(self.settings.slow_request_ms)
        self.notifier = notifier or Notifier()
        self.session = session or SessionHandler(login_url=self.settings.login_url)
        self._sleep = sleep
        self._active_requests: set[str] = set()

    # ── Introspection ────────────────────────────────────────────────────────

    @property
    def active_requests(self) -> FrozenSet[str]:
        return frozenset(self._active_requests)

    @property
    def active_count(self) -> int:
        return len(self._active_requests)

    @staticmethod
    def generate_request_id() -> str:
        return f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def intercept(
        self,
        request_fn: Callable[[], Awaitable[T]],
        options: Union[RequestOptions, Dict[str, Any], None] = None,
    ) -> T:
        """
        Run *request_fn* under the full request lifecycle and return its value.

        Raises:
            RequestCancelledError: if the options' cancel event fired.
            Exception:             the terminal error of the last attempt,
                                   after it has been reported.
        """
        opts = RequestOptions.coerce(options)
        request_id = self.generate_request_id()
        label = f"api_request_{request_id}"

        self._active_requests.add(request_id)
        start = self.performance.start_timing(label)
        try:
            return await self._execute_with_retry(request_fn, opts)
        except RequestCancelledError:
            logger.info("RequestInterceptor: %s cancelled.", request_id)
            raise
        except Exception as exc:
            self.handle_api_error(exc, request_id, opts)
            raise
        finally:
            self.performance.end_timing(label, start)
            self._active_requests.discard(request_id)

    async def _execute_with_retry(
        self,
        request_fn: Callable[[], Awaitable[T]],
        options: RequestOptions,
    ) -> T:
        retries = options.retries if options.retries is not None else self.settings.retries
        delay_ms = (
            options.retry_delay_ms
            if options.retry_delay_ms is not None
            else self.settings.retry_delay_ms
        )
        cancel_event = options.cancel_event

        retrying = AsyncRetrying(
            stop=stop_after_attempt(retries + 1),
            wait=wait_exponential(multiplier=delay_ms / 1000.0, exp_base=2, min=0),
            retry=retry_if_exception(is_retryable),
            sleep=self._backoff_sleep(cancel_event),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if cancel_event is not None and cancel_event.is_set():
                    raise RequestCancelledError("Request cancelled before attempt.")
                result = await request_fn()
        return result

    def _backoff_sleep(self, cancel_event: Optional[asyncio.Event]) -> SleepFn:
        if cancel_event is None:
            return self._sleep

        async def _sleep_unless_cancelled(seconds: float) -> None:
            if cancel_event.is_set():
                raise RequestCancelledError("Request cancelled before backoff.")
            sleeper = asyncio.ensure_future(self._sleep(seconds))
            waiter = asyncio.ensure_future(cancel_event.wait())
            done, pending = await asyncio.wait(
                {sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            if waiter in done:
                raise RequestCancelledError("Request cancelled during backoff.")

        return _sleep_unless_cancelled

    # ── Failure handling ─────────────────────────────────────────────────────

    def handle_api_error(
        self,
        error: BaseException,
        request_id: str,
        options: RequestOptions,
    ) -> ApiErrorContext:
        """Report a terminal failure, then apply its side effects."""
        status = error_status(error)
        context = ApiErrorContext(
            request_id=request_id,
            timestamp=datetime.now(timezone.utc).isoformat(),
            url=getattr(error, "url", None) or "unknown",
            method=getattr(error, "method", None) or "unknown",
            status=status,
            response=getattr(error, "response", None),
            options=options.reporting_dict(),
        )
        self.error_logger.log(
            error,
            tags={
                "type": "api_error",
                "status": str(status) if status is not None else "unknown",
                "endpoint": context.url,
            },
            extra=context.model_dump(),
        )
        try:
            self.handle_specific_errors(error)
        except Exception:
            # Side effects must never replace the error the caller is about to see.
            logger.exception("RequestInterceptor: side effect failed for %s.", request_id)
        return context

    def handle_specific_errors(self, error: BaseException) -> Optional[str]:
        """Apply the side effect for *error*; return the user message shown, if any."""
        if error_status(error) == 401:
            self.handle_unauthorized()
            return None
        message = user_message_for(error)
        self.show_user_error(message)
        return message

    def handle_unauthorized(self) -> None:
        self.session.clear_credentials()
        self.session.navigate_to_login()

    def show_user_error(self, message: str) -> None:
        self.notifier.show_message(message)
        if self.settings.show_user_friendly_errors:
            self.error_logger.log(
                UserFacingError(message),
                tags={"type": "user_error"},
                extra={"message": message},
            )
