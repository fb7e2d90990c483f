##########################################################################################
#
# Script name: test_backoff.py
#
# Description: Retry bounds, delay schedule and error classification.
#
##########################################################################################

import errno
import ssl

import pytest
import requests

from feed_digest.backoff import BackoffPolicy, compute_delay, is_retryable_error, run_with_backoff
from feed_digest.config import Settings


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _http_error(status: int) -> requests.HTTPError:
    response = requests.Response()
    response.status_code = status
    return requests.HTTPError(f'{status} error', response=response)


def _failing(errors: list[Exception], result: str = 'ok'):
    calls = {'count': 0}

    async def _operation() -> str:
        calls['count'] += 1
        if errors:
            raise errors.pop(0)
        return result

    return _operation, calls


@pytest.mark.parametrize('retry_number', [1, 2, 3, 4, 5, 8])
def test_delay_stays_within_jitter_bounds(retry_number: int) -> None:
    base, cap = 1.0, 30.0
    expected = min(base * 2 ** retry_number, cap)
    low = compute_delay(retry_number, base, cap, uniform=lambda a, b: a)
    high = compute_delay(retry_number, base, cap, uniform=lambda a, b: b)

    assert low == pytest.approx(expected * 0.75)
    assert high == pytest.approx(expected * 1.25)
    assert 0 <= compute_delay(retry_number, base, cap) <= cap * 1.25


def test_delay_never_negative() -> None:
    assert compute_delay(1, 0.0, 0.0) == 0.0


@pytest.mark.asyncio
async def test_non_retryable_error_is_attempted_once() -> None:
    operation, calls = _failing([ValueError('bad input')])
    sleep = RecordingSleep()

    with pytest.raises(ValueError):
        await run_with_backoff(operation, BackoffPolicy(max_attempts=3), sleep=sleep)

    assert calls['count'] == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_transient_errors_are_retried_until_success() -> None:
    operation, calls = _failing([requests.ConnectionError('reset'), _http_error(503)])
    sleep = RecordingSleep()
    policy = BackoffPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0)

    assert await run_with_backoff(operation, policy, sleep=sleep) == 'ok'
    assert calls['count'] == 3
    assert len(sleep.delays) == 2
    assert 1.5 <= sleep.delays[0] <= 2.5
    assert 3.0 <= sleep.delays[1] <= 5.0


@pytest.mark.asyncio
async def test_retries_are_exhausted_and_last_error_propagates() -> None:
    errors = [requests.Timeout(f'timeout {n}') for n in range(10)]
    operation, calls = _failing(errors)
    sleep = RecordingSleep()

    with pytest.raises(requests.Timeout, match='timeout 2'):
        await run_with_backoff(operation, BackoffPolicy(max_attempts=2, base_delay=0.01), sleep=sleep)

    assert calls['count'] == 3
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_on_retry_hook_sees_each_retry_and_its_errors_are_ignored() -> None:
    seen = []

    def _hook(exc, attempt, delay):
        seen.append((type(exc).__name__, attempt))
        raise RuntimeError('hook broke')

    operation, calls = _failing([_http_error(429), _http_error(500)])
    policy = BackoffPolicy(max_attempts=3, base_delay=0.01, on_retry=_hook)

    assert await run_with_backoff(operation, policy, sleep=RecordingSleep()) == 'ok'
    assert seen == [('HTTPError', 1), ('HTTPError', 2)]


@pytest.mark.asyncio
async def test_plain_callable_returning_an_awaitable_is_awaited() -> None:
    operation, calls = _failing([requests.ConnectionError('reset')], result='fetched')
    policy = BackoffPolicy(max_attempts=2, base_delay=0.01)

    result = await run_with_backoff(lambda: operation(), policy, sleep=RecordingSleep())

    assert result == 'fetched'
    assert calls['count'] == 2


def test_policy_from_settings_converts_milliseconds() -> None:
    settings = Settings(max_retries=5, retry_base_delay_ms=250, retry_max_delay_ms=4000)
    policy = BackoffPolicy.from_settings(settings)

    assert policy.max_attempts == 5
    assert policy.base_delay == 0.25
    assert policy.max_delay == 4.0


@pytest.mark.parametrize(
    'error, expected',
    [
        (requests.ConnectionError('connection reset'), True),
        (requests.Timeout('read timed out'), True),
        (_http_error(503), True),
        (_http_error(429), True),
        (_http_error(408), True),
        (_http_error(404), False),
        (_http_error(401), False),
        (ConnectionResetError(errno.ECONNRESET, 'reset'), True),
        (TimeoutError('timed out'), True),
        (requests.exceptions.SSLError('certificate verify failed'), False),
        (ssl.SSLError('handshake failure'), False),
        (ValueError('not transient'), False),
    ],
)
def test_retryable_classification(error: Exception, expected: bool) -> None:
    assert is_retryable_error(error) is expected


def test_tls_failure_wrapped_in_connection_error_is_not_retryable() -> None:
    try:
        try:
            raise ssl.SSLCertVerificationError('certificate verify failed')
        except ssl.SSLError as inner:
            raise requests.ConnectionError('wrapped') from inner
    except requests.ConnectionError as outer:
        assert is_retryable_error(outer) is False
