"""Tests for RequestExecutor: cache round-trip, admission, retry and status mapping."""
import asyncio

import pytest

from sportsfeed.cache.response_cache import ResponseCache
from sportsfeed.client.executor import RequestExecutor, RetryPolicy
from sportsfeed.client.metrics import CallCounters
from sportsfeed.client.transport import AiohttpTransport, TransportResponse, decode_body
from sportsfeed.descriptors.models import EndpointDescriptor
from sportsfeed.errors import (
    QuotaWeightError,
    RateLimited,
    RemoteError,
    SportsFeedError,
    TransportError,
)
from sportsfeed.governance.rate_limiter import AdmissionController

_FIXTURES_BODY = {"errors": [], "results": 1, "response": [{"fixture": {"id": 1035037}}]}
_PARAMS = {"league": "39", "season": "2024", "timezone": "UTC"}


@pytest.fixture
def fixtures_by_league(football_catalog):
    return football_catalog.get("fixtures-by-league")


# ---------------------------------------------------------------------------
# Cache round-trip
# ---------------------------------------------------------------------------

class TestCaching:
    @pytest.mark.asyncio
    async def test_one_network_call_within_ttl(self, make_executor, fixtures_by_league, clock):
        executor = make_executor(_FIXTURES_BODY)
        first = await executor.execute(fixtures_by_league, _PARAMS)
        clock.advance(3599)
        second = await executor.execute(fixtures_by_league, dict(reversed(list(_PARAMS.items()))))

        assert first == second == _FIXTURES_BODY
        assert len(executor.transport.calls) == 1
        assert executor.counters.network_calls == 1
        assert executor.counters.cache_hits == 1

    @pytest.mark.asyncio
    async def test_second_call_after_ttl(self, make_executor, fixtures_by_league, clock):
        executor = make_executor(_FIXTURES_BODY)
        await executor.execute(fixtures_by_league, _PARAMS)
        clock.advance(3601)
        await executor.execute(fixtures_by_league, _PARAMS)
        assert len(executor.transport.calls) == 2
        assert executor.counters.cache_hits == 0

    @pytest.mark.asyncio
    async def test_different_params_not_shared(self, make_executor, fixtures_by_league):
        executor = make_executor(_FIXTURES_BODY)
        await executor.execute(fixtures_by_league, _PARAMS)
        await executor.execute(fixtures_by_league, {**_PARAMS, "league": "140"})
        assert len(executor.transport.calls) == 2

    @pytest.mark.asyncio
    async def test_policy_none_never_cached(self, make_executor, football_catalog):
        executor = make_executor({"response": {"account": {"email": "a@b.c"}}})
        status = football_catalog.get("status")
        await executor.execute(status, {})
        await executor.execute(status, {})
        assert len(executor.transport.calls) == 2
        assert len(executor.cache) == 0

    @pytest.mark.asyncio
    async def test_explicit_ttl_used(self, make_executor, football_catalog, clock):
        executor = make_executor({"response": []})
        injuries = football_catalog.get("injuries")
        await executor.execute(injuries, {"team": "33"})
        clock.advance(1801)
        await executor.execute(injuries, {"team": "33"})
        assert len(executor.transport.calls) == 2


# ---------------------------------------------------------------------------
# Outbound request
# ---------------------------------------------------------------------------

class TestRequestShape:
    @pytest.mark.asyncio
    async def test_url_params_and_headers(self, make_executor, fixtures_by_league):
        executor = make_executor(_FIXTURES_BODY)
        await executor.execute(fixtures_by_league, _PARAMS)
        call = executor.transport.calls[0]
        assert call["method"] == "GET"
        assert call["url"] == "https://api.test/fixtures"
        assert call["params"] == _PARAMS
        assert call["headers"]["x-apisports-key"] == "test-key"
        assert call["headers"]["Accept"] == "application/json"

    @pytest.mark.asyncio
    async def test_concurrent_executions(self, make_executor, fixtures_by_league):
        executor = make_executor(_FIXTURES_BODY)
        results = await asyncio.gather(*[
            executor.execute(fixtures_by_league, {**_PARAMS, "league": str(league)})
            for league in range(1, 6)
        ])
        assert len(results) == 5
        assert executor.counters.network_calls == 5


# ---------------------------------------------------------------------------
# Retry budget
# ---------------------------------------------------------------------------

class TestRetry:
    @pytest.mark.asyncio
    async def test_two_failures_then_success(self, make_executor, fixtures_by_league, sleeps):
        executor = make_executor(
            TransportError("connection reset"),
            TransportError("connection reset"),
            _FIXTURES_BODY,
        )
        payload = await executor.execute(fixtures_by_league, _PARAMS)
        assert payload == _FIXTURES_BODY
        assert len(executor.transport.calls) == 3
        assert sleeps == [1.0, 2.0]
        assert executor.counters.snapshot()["failures"] == 0

    @pytest.mark.asyncio
    async def test_three_failures_surface(self, make_executor, fixtures_by_league, sleeps):
        executor = make_executor(TransportError("timeout calling https://api.test/fixtures"))
        with pytest.raises(TransportError) as exc_info:
            await executor.execute(fixtures_by_league, _PARAMS)
        assert exc_info.value.endpoint_id == "fixtures-by-league"
        assert len(executor.transport.calls) == 3
        assert sleeps == [1.0, 2.0]
        assert executor.counters.snapshot()["failures"] == 1
        assert len(executor.cache) == 0

    @pytest.mark.asyncio
    async def test_http_errors_not_retried(self, make_executor, fixtures_by_league, sleeps):
        executor = make_executor(503)
        with pytest.raises(RemoteError):
            await executor.execute(fixtures_by_league, _PARAMS)
        assert len(executor.transport.calls) == 1
        assert sleeps == []


# ---------------------------------------------------------------------------
# Status mapping
# ---------------------------------------------------------------------------

class TestStatusMapping:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("endpoint_id", ["status", "leagues", "fixture-events", "players"])
    async def test_429_is_rate_limited_60(self, make_executor, football_catalog, endpoint_id):
        executor = make_executor(429)
        with pytest.raises(RateLimited) as exc_info:
            await executor.execute(football_catalog.get(endpoint_id), {"fixture": "1"})
        assert exc_info.value.retry_after_s == 60
        assert executor.counters.snapshot()["rate_limited"] == 1
        assert len(executor.cache) == 0

    @pytest.mark.asyncio
    async def test_500_is_remote_error(self, make_executor, fixtures_by_league):
        executor = make_executor(TransportResponse(status=500, body="upstream exploded"))
        with pytest.raises(RemoteError) as exc_info:
            await executor.execute(fixtures_by_league, _PARAMS)
        assert exc_info.value.status_code == 500
        assert "upstream exploded" in str(exc_info.value)
        assert executor.counters.network_calls == 0

    @pytest.mark.asyncio
    async def test_long_body_truncated_in_message(self, make_executor, fixtures_by_league):
        executor = make_executor(TransportResponse(status=404, body="x" * 2000))
        with pytest.raises(RemoteError) as exc_info:
            await executor.execute(fixtures_by_league, _PARAMS)
        assert exc_info.value.body == "x" * 2000
        assert "x" * 500 + "..." in str(exc_info.value)
        assert "x" * 501 not in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_invalid_json_body(self, make_executor, fixtures_by_league):
        executor = make_executor(TransportResponse(status=200, body="<html>maintenance</html>"))
        with pytest.raises(RemoteError):
            await executor.execute(fixtures_by_league, _PARAMS)
        assert len(executor.cache) == 0

    @pytest.mark.asyncio
    async def test_any_2xx_is_success(self, make_executor, fixtures_by_league):
        executor = make_executor(TransportResponse(status=203, body='{"response": []}'))
        assert await executor.execute(fixtures_by_league, _PARAMS) == {"response": []}


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------

class TestAdmission:
    @pytest.mark.asyncio
    async def test_local_denial_before_network(self, make_executor, fixtures_by_league):
        executor = make_executor(_FIXTURES_BODY, requests_per_minute=1)
        await executor.execute(fixtures_by_league, _PARAMS)
        with pytest.raises(RateLimited) as exc_info:
            await executor.execute(fixtures_by_league, {**_PARAMS, "league": "140"})
        assert exc_info.value.retry_after_s == 60
        assert len(executor.transport.calls) == 1
        assert executor.counters.snapshot()["rate_limited"] == 1

    @pytest.mark.asyncio
    async def test_cache_hit_bypasses_admission(self, make_executor, fixtures_by_league):
        executor = make_executor(_FIXTURES_BODY, requests_per_minute=1)
        await executor.execute(fixtures_by_league, _PARAMS)
        assert await executor.execute(fixtures_by_league, _PARAMS) == _FIXTURES_BODY

    @pytest.mark.asyncio
    async def test_quota_weight_consumed(self, make_executor):
        heavy = EndpointDescriptor.model_validate({
            "id": "odds", "path": "/odds", "category": "Odds",
            "metadata": {"quotaWeight": 2},
        })
        executor = make_executor({"response": []}, requests_per_minute=3)
        await executor.execute(heavy, {"fixture": "1"})
        with pytest.raises(RateLimited):
            await executor.execute(heavy, {"fixture": "2"})
        assert executor.admission.get_status("test-key")["remaining_minute"] == 1

    @pytest.mark.asyncio
    async def test_weight_beyond_capacity_is_typed(self, make_executor):
        heavy = EndpointDescriptor.model_validate({
            "id": "odds", "path": "/odds", "category": "Odds",
            "metadata": {"quotaWeight": 5},
        })
        executor = make_executor({"response": []}, requests_per_minute=3)
        with pytest.raises(QuotaWeightError) as exc_info:
            await executor.execute(heavy, {"fixture": "1"})
        assert isinstance(exc_info.value, SportsFeedError)
        assert exc_info.value.endpoint_id == "odds"
        assert executor.transport.calls == []


# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------

class TestWiring:
    def test_injected_components_are_kept(self, config, clock, make_transport):
        cache = ResponseCache(max_entries=5, clock=clock)
        admission = AdmissionController(clock=clock)
        transport = make_transport()
        counters = CallCounters("football")
        retry = RetryPolicy(max_attempts=1)

        executor = RequestExecutor(
            config, cache=cache, admission=admission, transport=transport,
            counters=counters, retry=retry,
        )

        assert len(cache) == 0
        assert executor.cache is cache
        assert executor.admission is admission
        assert executor.transport is transport
        assert executor.counters is counters
        assert executor.retry is retry

    def test_defaults_built_from_config(self, config):
        executor = RequestExecutor(config)
        assert isinstance(executor.transport, AiohttpTransport)
        assert executor.retry == RetryPolicy(max_attempts=3, base_delay_s=1.0, multiplier=2.0)
        assert executor.admission.requests_per_minute == 100


# ---------------------------------------------------------------------------
# aiohttp transport body decoding
# ---------------------------------------------------------------------------

class _FakeResponse:
    def __init__(self, status, raw, charset="utf-8"):
        self.status = status
        self.charset = charset
        self._raw = raw

    async def read(self):
        return self._raw

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class _FakeSession:
    closed = False

    def __init__(self, response):
        self.response = response

    def request(self, method, url, params=None, headers=None):
        return self.response


class TestAiohttpTransport:
    def test_decode_body(self):
        assert decode_body('{"name":"Müller"}'.encode("utf-8")) == '{"name":"Müller"}'
        assert decode_body("Müller".encode("latin-1"), "iso-8859-1") == "Müller"
        assert decode_body(b"ok", "no-such-charset") == "ok"

    @pytest.mark.asyncio
    async def test_invalid_utf8_body_does_not_escape(self, config, fixtures_by_league):
        raw = b'{"response": ["\xff\xfe"]}'
        transport = AiohttpTransport(session=_FakeSession(_FakeResponse(200, raw)))
        executor = RequestExecutor(config, transport=transport)

        payload = await executor.execute(fixtures_by_league, _PARAMS)

        assert payload == {"response": ["��"]}
        assert executor.counters.network_calls == 1

    @pytest.mark.asyncio
    async def test_error_status_returned_not_raised(self):
        transport = AiohttpTransport(session=_FakeSession(_FakeResponse(503, b"busy")))
        response = await transport.request("GET", "https://api.test/status", {}, {})
        assert response == TransportResponse(status=503, body="busy")
