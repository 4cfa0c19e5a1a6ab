from __future__ import annotations

import asyncio
import errno
import logging
import re
import socket
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from destinyrag.core.config import get_settings
from destinyrag.core.errors import (
    LLMCancelledError,
    LLMResponseError,
    LLMTimeoutError,
    LLMUpstreamError,
    ProviderConfigError,
)


logger = logging.getLogger(__name__)


RETRYABLE_STATUS_CODES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})
RETRYABLE_ERROR_CODES = frozenset({"ECONNRESET", "ETIMEDOUT", "EAI_AGAIN"})
_RETRYABLE_MESSAGE_RE = re.compile(r"timeout|temporar|unavailable|exceed|quota|rate", re.IGNORECASE)

# Local deadline, cancellation, payload and configuration errors propagate unretried.
_NEVER_RETRY = (LLMTimeoutError, LLMCancelledError, LLMResponseError, ProviderConfigError)


@dataclass(frozen=True)
class RetryPolicy:
    # Attempts include the first call; delay grows linearly with the attempt number.
    max_attempts: int
    base_delay_ms: int


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_attempts=settings.llm_max_retries,
        base_delay_ms=settings.llm_retry_delay_ms,
    )


def error_status(exc: BaseException) -> int | str | None:
    # google.api_core exceptions expose the HTTP status as `code`; httpx-style errors as status_code.
    for attr in ("status_code", "status", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
    return None


def error_code(exc: BaseException) -> str | None:
    code = getattr(exc, "code", None)
    if isinstance(code, str) and not code.isdigit():
        return code
    if isinstance(exc, socket.gaierror) and exc.errno == socket.EAI_AGAIN:
        return "EAI_AGAIN"
    if isinstance(exc, OSError) and exc.errno:
        return errno.errorcode.get(exc.errno)
    if isinstance(exc, TimeoutError):
        return "ETIMEDOUT"
    return None


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (_NEVER_RETRY, asyncio.CancelledError)):
        return False
    status = error_status(exc)
    if isinstance(status, int) and status in RETRYABLE_STATUS_CODES:
        return True
    if error_code(exc) in RETRYABLE_ERROR_CODES:
        return True
    return bool(_RETRYABLE_MESSAGE_RE.search(str(exc)))


def to_upstream_error(
    exc: BaseException, *, operation: str, attempt: int, retryable: bool
) -> LLMUpstreamError:
    status = error_status(exc)
    code = error_code(exc)
    details = [operation, f"attempt {attempt}"]
    if status:
        details.append(f"status {status}")
    if code:
        details.append(f"code {code}")
    message = str(exc) or exc.__class__.__name__
    return LLMUpstreamError(
        f"Gemini request failed ({', '.join(details)}): {message}",
        operation=operation,
        attempts=attempt,
        status=status,
        code=code,
        retryable=retryable,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    operation: str,
    policy: RetryPolicy | None = None,
    retryable: Callable[[BaseException], bool] | None = None,
) -> Any:
    # Linear backoff; the last failure is wrapped with the attempt count for callers and logs.
    policy = policy or default_retry_policy()
    retryable = retryable or is_retryable
    max_attempts = max(policy.max_attempts, 1)
    attempt = 1
    while True:
        try:
            return await func()
        except _NEVER_RETRY:
            raise
        except Exception as exc:  # noqa: BLE001 - classified and wrapped below
            can_retry = retryable(exc)
            if not can_retry or attempt >= max_attempts:
                logger.warning(
                    "llm_call_failed operation=%s attempt=%s retryable=%s error=%s",
                    operation,
                    attempt,
                    can_retry,
                    exc,
                )
                raise to_upstream_error(
                    exc, operation=operation, attempt=attempt, retryable=can_retry
                ) from exc
            delay_ms = policy.base_delay_ms * attempt
            logger.info(
                "llm_call_retry operation=%s attempt=%s delay_ms=%s", operation, attempt, delay_ms
            )
            await asyncio.sleep(delay_ms / 1000.0)
            attempt += 1


async def run_with_timeout(
    func: Callable[[], Awaitable[Any]],
    *,
    operation: str,
    timeout_ms: int | None = None,
    cancel_event: asyncio.Event | None = None,
) -> Any:
    # Race the upstream call against the local deadline and the caller's cancel signal.
    if not timeout_ms and cancel_event is None:
        return await func()
    if cancel_event is not None and cancel_event.is_set():
        raise LLMCancelledError(f"{operation} aborted before execution.")

    call = asyncio.ensure_future(func())
    waiters: set[asyncio.Future[Any]] = {call}
    cancel_waiter: asyncio.Future[Any] | None = None
    if cancel_event is not None:
        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        waiters.add(cancel_waiter)
    timeout_s = timeout_ms / 1000.0 if timeout_ms else None
    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        call.cancel()
        raise
    finally:
        if cancel_waiter is not None and not cancel_waiter.done():
            cancel_waiter.cancel()

    if call in done:
        return call.result()
    # Abort the in-flight request; its eventual result is discarded.
    call.cancel()
    if cancel_waiter is not None and cancel_waiter in done:
        raise LLMCancelledError(f"{operation} aborted by caller.")
    raise LLMTimeoutError(f"{operation} timed out after {timeout_ms}ms.")
