import pytest

from token_aggregator import http


def test_dumps_loads_round_trip():
    data = http.dumps({"a": 1, "b": [1.5, "x"]})
    assert isinstance(data, bytes)
    assert http.loads(data) == {"a": 1, "b": [1.5, "x"]}
    assert http.loads(data.decode()) == {"a": 1, "b": [1.5, "x"]}


def test_http_error_carries_status():
    err = http.HTTPError(429, "https://example.test/x", "too many")
    assert err.status == 429
    assert "429" in str(err)


@pytest.mark.asyncio
async def test_get_session_is_reused_per_loop():
    await http.close_session()
    s1 = await http.get_session()
    s2 = await http.get_session()
    assert s1 is s2
    await http.close_session()
    assert s1.closed


@pytest.mark.asyncio
async def test_configure_sets_timeout():
    await http.close_session()
    http.configure(timeout=3.5)
    try:
        session = await http.get_session()
        assert session.timeout.total == 3.5
    finally:
        http.configure(timeout=http.DEFAULT_TIMEOUT_SEC)
        await http.close_session()
