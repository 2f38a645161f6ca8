"""Shared pytest fixtures for sportsfeed tests (scripted transport, fake clock, no real API calls)."""
import json
from pathlib import Path
from typing import Any, Dict, List

import pytest

from sportsfeed.cache.response_cache import ResponseCache
from sportsfeed.client.executor import RequestExecutor
from sportsfeed.client.transport import TransportResponse
from sportsfeed.config import EngineConfig
from sportsfeed.descriptors.catalog import DescriptorCatalog
from sportsfeed.governance.rate_limiter import AdmissionController

FOOTBALL_YAML = Path(__file__).resolve().parents[2] / "configs" / "descriptors" / "football.yaml"


class FakeClock:
    """Manually advanced clock, usable wherever a `clock=` callable is accepted."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """
    Replays scripted outcomes in order; the last one repeats forever.

    dict/list → HTTP 200 with that JSON body, int → bare status,
    TransportResponse → returned as-is, exception instance → raised.
    """

    def __init__(self, *outcomes: Any) -> None:
        self.outcomes: List[Any] = list(outcomes) or [{"response": []}]
        self.calls: List[Dict[str, Any]] = []

    async def request(self, method, url, params, headers) -> TransportResponse:
        self.calls.append(
            {"method": method, "url": url, "params": dict(params), "headers": dict(headers)}
        )
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, TransportResponse):
            return outcome
        if isinstance(outcome, int):
            return TransportResponse(status=outcome, body="")
        return TransportResponse(status=200, body=json.dumps(outcome))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def football_catalog():
    catalog = DescriptorCatalog()
    catalog.load_file(FOOTBALL_YAML)
    return catalog


@pytest.fixture
def config():
    return EngineConfig(
        credential_ref="test-key",
        base_url="https://api.test",
        descriptor_path=str(FOOTBALL_YAML),
    )


@pytest.fixture
def make_executor(config, clock, sleeps):
    """Factory: RequestExecutor over a FakeTransport with fake time everywhere."""

    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    def _make(
        *outcomes: Any,
        requests_per_minute: int = 100,
        requests_per_day: int = 10_000,
    ) -> RequestExecutor:
        return RequestExecutor(
            config,
            cache=ResponseCache(clock=clock),
            admission=AdmissionController(requests_per_minute, requests_per_day, clock=clock),
            transport=FakeTransport(*outcomes),
            sleep=record_sleep,
        )

    return _make


@pytest.fixture
def make_transport():
    return FakeTransport
