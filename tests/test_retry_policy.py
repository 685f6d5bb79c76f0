import pytest

from bulkqueue.services.producers import (
    AlreadyExistsError,
    ErrorKind,
    InvalidItemError,
    ProduceResult,
    TransientProducerError,
)
from bulkqueue.services.retry_policy import UNKNOWN_ERROR, RetryPolicy
from bulkqueue.utils.metrics import get_counter


class Recorder:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def policy(sleeps):
    async def record_sleep(seconds):
        sleeps.append(seconds)

    return RetryPolicy(max_retries=3, base_delay=2.0, sleep=record_sleep)


async def test_success_first_try(policy, sleeps):
    fn = Recorder(ProduceResult.ok("rev-1"))
    result = await policy.call(fn)
    assert result.success and result.review_id == "rev-1"
    assert fn.calls == 1
    assert sleeps == []


async def test_already_exists_stops_after_one_call(policy, sleeps):
    fn = Recorder(AlreadyExistsError())
    result = await policy.call(fn)
    assert fn.calls == 1
    assert result.error_kind == ErrorKind.ALREADY_EXISTS
    assert sleeps == []


async def test_invalid_item_is_not_retried(policy):
    fn = Recorder(InvalidItemError("validation failed: missing title"))
    result = await policy.call(fn)
    assert fn.calls == 1
    assert result.error_kind == ErrorKind.INVALID
    assert result.error == "validation failed: missing title"


async def test_always_failing_call_is_attempted_max_retries_times(policy, sleeps):
    fn = Recorder(RuntimeError("connection reset"))
    result = await policy.call(fn, item="Hades")
    assert fn.calls == 3
    assert not result.success
    assert result.error == "connection reset"
    assert result.error_kind == ErrorKind.TRANSIENT
    # No sleep after the last attempt
    assert sleeps == [2.0, 4.0]
    assert get_counter("producer.retry") == 2


async def test_transient_then_success(policy, sleeps):
    fn = Recorder(TransientProducerError("HTTP 503"), ProduceResult.ok("rev-2"))
    result = await policy.call(fn)
    assert fn.calls == 2
    assert result.review_id == "rev-2"
    assert sleeps == [2.0]


async def test_returned_transient_result_is_retried(policy):
    fn = Recorder(ProduceResult.transient("rate limited"), ProduceResult.ok("rev-3"))
    result = await policy.call(fn)
    assert fn.calls == 2
    assert result.success


async def test_returned_already_exists_result_passes_through(policy):
    fn = Recorder(ProduceResult.already_exists())
    result = await policy.call(fn)
    assert fn.calls == 1
    assert result.error_kind == ErrorKind.ALREADY_EXISTS


async def test_untyped_already_exists_result_is_not_retried(policy, sleeps):
    fn = Recorder(ProduceResult(success=False, error="Already exists"))
    result = await policy.call(fn)
    assert fn.calls == 1
    assert result.kind == ErrorKind.ALREADY_EXISTS
    assert sleeps == []


async def test_untyped_already_exists_exception_is_a_skip(policy):
    fn = Recorder(RuntimeError("Already exists"))
    result = await policy.call(fn)
    assert fn.calls == 1
    assert result.error_kind == ErrorKind.ALREADY_EXISTS


async def test_untyped_invalid_exception_is_not_retried(policy, sleeps):
    fn = Recorder(ValueError("invalid ASIN"))
    result = await policy.call(fn)
    assert fn.calls == 1
    assert result.error_kind == ErrorKind.INVALID
    assert result.error == "invalid ASIN"
    assert sleeps == []


async def test_empty_error_falls_back_to_unknown(policy):
    fn = Recorder(ProduceResult(success=False, error=None, error_kind=ErrorKind.TRANSIENT))
    result = await policy.call(fn)
    assert result.error == UNKNOWN_ERROR


def test_backoff_doubles():
    policy = RetryPolicy(max_retries=4, base_delay=2.0)
    assert [policy.backoff(n) for n in range(3)] == [2.0, 4.0, 8.0]


def test_max_retries_must_be_positive():
    with pytest.raises(ValueError):
        RetryPolicy(max_retries=0)
