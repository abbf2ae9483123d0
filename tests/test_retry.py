import pytest

from axconfig.core.errors import ConfigurationError, ProtocolTimeout, ValueMismatch
from axconfig.core.retry import try_and_retry


@pytest.mark.asyncio
async def test_try_and_retry_returns_first_success() -> None:
    calls = []

    async def task():
        calls.append(1)
        if len(calls) < 3:
            raise ProtocolTimeout("no answer")
        return "ok"

    assert await try_and_retry(task, attempts=3, interval=0) == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_try_and_retry_reraises_last_error() -> None:
    attempts = []

    async def task():
        attempts.append(1)
        raise ValueMismatch(f"attempt {len(attempts)}")

    with pytest.raises(ValueMismatch, match="attempt 2"):
        await try_and_retry(task, attempts=2, interval=0)
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_try_and_retry_does_not_retry_configuration_errors() -> None:
    attempts = []

    async def task():
        attempts.append(1)
        raise ConfigurationError("bad rate")

    with pytest.raises(ConfigurationError):
        await try_and_retry(task, attempts=5, interval=0)
    assert len(attempts) == 1
