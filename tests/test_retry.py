import pytest

from odata_grid.core.errors import ParseError, RemoteError, TransportError
from odata_grid.core.schemas import FailedResponse, FailureKind, QueryDescriptor
from odata_grid.core.discovery.retry import compute_delay, execute_with_retry, retry

DESCRIPTOR = QueryDescriptor(entity_logical_name="task", query_string="tasks?$top=1")


class FlakyClient:
    """Raises the queued errors in order, then succeeds."""

    def __init__(self, errors):
        self.errors = list(errors)
        self.calls = 0

    async def retrieve_multiple(self, query_string, timeout=None):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return {"entities": [{"taskId": "T-1"}], "next_link": None, "total_count": 1}


def remote(status_code: int) -> RemoteError:
    return RemoteError(FailedResponse(status_code=status_code))


def test_compute_delay_is_capped():
    assert compute_delay(1, 0.1, 5.0, 2.0) == 0.1
    assert compute_delay(3, 0.1, 5.0, 2.0) == pytest.approx(0.4)
    assert compute_delay(20, 0.1, 5.0, 2.0) == 5.0


@pytest.mark.asyncio
async def test_retry_succeeds_after_transient_failures():
    client = FlakyClient([TransportError("reset"), TransportError("reset")])

    result = await retry(lambda: client.retrieve_multiple("tasks"), base_delay=0)

    assert result["entities"] == [{"taskId": "T-1"}]
    assert client.calls == 3


@pytest.mark.asyncio
async def test_retry_stops_after_max_attempts():
    client = FlakyClient([TransportError(str(i)) for i in range(5)])

    with pytest.raises(TransportError):
        await retry(lambda: client.retrieve_multiple("tasks"), max_attempts=3, base_delay=0)
    assert client.calls == 3


@pytest.mark.asyncio
async def test_retry_does_not_retry_other_errors():
    client = FlakyClient([ParseError("bad body")])

    with pytest.raises(ParseError):
        await retry(lambda: client.retrieve_multiple("tasks"), base_delay=0)
    assert client.calls == 1


@pytest.mark.asyncio
async def test_execute_with_retry_retries_5xx_and_429():
    client = FlakyClient([remote(503), remote(429)])

    result = await execute_with_retry(DESCRIPTOR, client, base_delay=0)

    assert result.success
    assert client.calls == 3


@pytest.mark.asyncio
async def test_execute_with_retry_returns_client_errors_at_once():
    client = FlakyClient([remote(400)])

    result = await execute_with_retry(DESCRIPTOR, client, base_delay=0)

    assert not result.success
    assert result.failure.status_code == 400
    assert client.calls == 1


@pytest.mark.asyncio
async def test_execute_with_retry_gives_up():
    client = FlakyClient([TransportError("down")] * 4)

    result = await execute_with_retry(DESCRIPTOR, client, max_attempts=2, base_delay=0)

    assert result.error_kind == FailureKind.TRANSPORT
    assert client.calls == 2


@pytest.mark.asyncio
async def test_execute_with_retry_never_retries_validation():
    client = FlakyClient([])
    invalid = QueryDescriptor(entity_logical_name="task", query_string="tasks")

    result = await execute_with_retry(invalid, client, base_delay=0)

    assert result.error_kind == FailureKind.VALIDATION
    assert client.calls == 0
