##########################################################################################
#
# Script name: backoff.py
#
# Description: Bounded retries with jittered exponential backoff for network and
#              summarization calls, plus the retryable-error classification.
#
##########################################################################################

import asyncio
import errno
import logging
import random
import socket
import ssl
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, TypeVar

import openai
import requests
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from .config import Settings


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)

T = TypeVar('T')

JITTER_RATIO = 0.25
RETRYABLE_STATUS_CODES = {408, 429}
RETRYABLE_ERRNOS = {
    errno.ECONNRESET,
    errno.ETIMEDOUT,
    errno.ECONNREFUSED,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    errno.ECONNABORTED,
    errno.EPIPE,
}
RETRYABLE_SERVICE_TYPES = {'rate_limit_error', 'server_error', 'rate_limit_exceeded'}


# ****************************************************************************************
# Functions
# ****************************************************************************************


def _exception_chain(exc: BaseException):
    seen = set()
    current = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _is_tls_failure(exc: BaseException) -> bool:
    return any(
        isinstance(item, (ssl.SSLError, ssl.CertificateError, requests.exceptions.SSLError))
        for item in _exception_chain(exc)
    )


def _status_is_retryable(status: int | None) -> bool:
    if status is None:
        return False
    return status in RETRYABLE_STATUS_CODES or 500 <= status <= 599


def _status_code(exc: BaseException) -> int | None:
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code
    response = getattr(exc, 'response', None)
    status = getattr(response, 'status_code', None)
    if status is None:
        status = getattr(exc, 'status_code', None) or getattr(exc, 'status', None)
    return status if isinstance(status, int) else None


def is_retryable_error(exc: BaseException) -> bool:
    '''
    Transient-infrastructure errors are retryable: connection resets, timeouts,
    DNS and unreachable-host failures, HTTP 408/429/5xx, and rate-limit or
    server-error classifications from the summarization service. TLS and
    certificate failures never are.
    '''
    if _is_tls_failure(exc):
        return False

    if isinstance(exc, (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)):
        return True
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(exc, (socket.gaierror, TimeoutError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, OSError) and exc.errno in RETRYABLE_ERRNOS:
        return True

    if _status_is_retryable(_status_code(exc)):
        return True

    service_type = getattr(exc, 'type', None) or getattr(exc, 'code', None)
    if isinstance(service_type, str) and service_type in RETRYABLE_SERVICE_TYPES:
        return True
    return False


def compute_delay(
    retry_number: int,
    base_delay: float,
    max_delay: float,
    uniform: Callable[[float, float], float] = random.uniform,
) -> float:
    '''
    Delay in seconds before retry `retry_number` (1-indexed):
    min(base * 2**n, max) jittered by +/-25%, never negative.
    '''
    capped = min(base_delay * (2 ** retry_number), max_delay)
    jitter = capped * JITTER_RATIO * uniform(-1.0, 1.0)
    return max(0.0, capped + jitter)


def log_retry(label: str) -> Callable[[BaseException, int, float], None]:
    def _on_retry(exc: BaseException, attempt: int, delay: float) -> None:
        log.warning('%s retry %d after %.2fs: %s', label, attempt, delay, exc)

    return _on_retry


# ****************************************************************************************
# Classes
# ****************************************************************************************


@dataclass(frozen=True)
class BackoffPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    is_retryable: Callable[[BaseException], bool] = is_retryable_error
    on_retry: Callable[[BaseException, int, float], None] | None = None

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> 'BackoffPolicy':
        policy = cls(
            max_attempts=max(0, settings.max_retries),
            base_delay=max(0.0, settings.retry_base_delay_ms / 1000.0),
            max_delay=max(0.0, settings.retry_max_delay_ms / 1000.0),
        )
        return replace(policy, **overrides)


class _JitteredExponentialWait:
    def __init__(self, policy: BackoffPolicy):
        self.policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        return compute_delay(retry_state.attempt_number, self.policy.base_delay, self.policy.max_delay)


def _before_sleep(policy: BackoffPolicy) -> Callable[[RetryCallState], None]:
    def _notify(retry_state: RetryCallState) -> None:
        if policy.on_retry is None:
            return
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        try:
            policy.on_retry(exc, retry_state.attempt_number, delay)
        except Exception as hook_exc:  # noqa: BLE001
            log.warning('on_retry hook raised and was ignored: %s', hook_exc)

    return _notify


async def run_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    '''
    Await `operation()` up to `policy.max_attempts + 1` times.

    A failure that `policy.is_retryable` rejects, or the failure of the final
    attempt, propagates unchanged to the caller. `operation` may be any
    callable returning an awaitable, a plain lambda included.
    '''

    async def _attempt() -> T:
        return await operation()

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts + 1),
        wait=_JitteredExponentialWait(policy),
        retry=retry_if_exception(policy.is_retryable),
        before_sleep=_before_sleep(policy),
        sleep=sleep,
        reraise=True,
    )
    return await retrying(_attempt)
