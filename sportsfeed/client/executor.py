from __future__ import annotations
import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from opentelemetry import trace

from sportsfeed.cache.response_cache import ResponseCache
from sportsfeed.client.metrics import CallCounters
from sportsfeed.client.transport import (
    AiohttpTransport,
    Transport,
    TransportResponse,
    default_headers,
)
from sportsfeed.config import API_KEY_HEADER, EngineConfig
from sportsfeed.descriptors.models import EndpointDescriptor
from sportsfeed.errors import QuotaWeightError, RateLimited, RemoteError, TransportError
from sportsfeed.governance.rate_limiter import AdmissionController

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("sportsfeed.executor")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for transport failures only. HTTP statuses are never retried."""

    max_attempts: int = 3
    base_delay_s: float = 1.0
    multiplier: float = 2.0

    def delay_after(self, attempt: int) -> float:
        """Sleep before attempt+1, where attempt counts from 1."""
        return self.base_delay_s * (self.multiplier ** (attempt - 1))


class RequestExecutor:
    """
    The only component that touches the network.

    Orchestrates: cache check → admission → HTTP call with retry →
    cache write-back. Shared cache/limiter state is internally locked, so
    many execute() calls may be in flight at once; the only wait is the
    backoff sleep of the one request that is retrying.
    """

    def __init__(
        self,
        config: EngineConfig,
        cache: Optional[ResponseCache] = None,
        admission: Optional[AdmissionController] = None,
        transport: Optional[Transport] = None,
        counters: Optional[CallCounters] = None,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.cache = cache if cache is not None else ResponseCache(
            max_entries=config.cache_max_entries
        )
        self.admission = admission if admission is not None else AdmissionController(
            config.requests_per_minute, config.requests_per_day
        )
        self.transport = transport if transport is not None else AiohttpTransport(
            timeout_s=config.timeout_s
        )
        self.counters = counters if counters is not None else CallCounters(config.namespace)
        self.retry = retry if retry is not None else RetryPolicy(
            max_attempts=config.max_attempts,
            base_delay_s=config.base_delay_s,
            multiplier=config.backoff_multiplier,
        )
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def cache_key(self, descriptor: EndpointDescriptor, params: Mapping[str, str]) -> str:
        return self.cache.build_key(self.config.namespace, descriptor.path, params)

    async def execute(
        self, descriptor: EndpointDescriptor, params: Mapping[str, str]
    ) -> Any:
        """
        Produce the parsed JSON payload for one already-validated request.

        Raises:
            RateLimited: local budget exhausted, or the server answered 429.
            TransportError: all attempts failed at the connection level.
            RemoteError: any other non-2xx status, or a 2xx body that is not JSON.
        """
        with tracer.start_as_current_span(
            "executor.execute",
            attributes={
                "endpoint.id": descriptor.id,
                "endpoint.path": descriptor.path,
                "endpoint.namespace": self.config.namespace,
            },
        ) as span:
            # 1. Cache check
            key = self.cache_key(descriptor, params)
            cached = self.cache.get(key)
            if cached is not None:
                self.counters.record_cache_hit()
                span.set_attribute("executor.from_cache", True)
                return json.loads(cached)

            # 2. Admission
            credential = self.config.credential()
            try:
                admission = self.admission.admit(credential, descriptor.metadata.quota_weight)
            except QuotaWeightError as exc:
                exc.endpoint_id = descriptor.id
                raise
            if not admission.allowed:
                self.counters.record_rate_limited("local")
                span.set_attribute("executor.rate_limited", True)
                raise RateLimited(
                    admission.retry_after_s,
                    f"local quota exhausted, retry after {admission.retry_after_s}s",
                    endpoint_id=descriptor.id,
                )

            # 3. Send with retry
            url = self.config.resolved_base_url + descriptor.path
            headers = default_headers(API_KEY_HEADER, credential)
            logger.info("Calling %s %s params=%s", descriptor.http_method.value, url, dict(params))

            fetch_start = time.time()
            response = await self._send_with_retry(descriptor, url, params, headers)
            span.set_attribute("executor.fetch_ms", int((time.time() - fetch_start) * 1000))
            span.set_attribute("executor.http_status", response.status)
            span.set_attribute("executor.from_cache", False)

            # 4. Interpret status
            return self._handle_response(descriptor, key, response)

    # ------------------------------------------------------------------
    # Retry wrapper
    # ------------------------------------------------------------------

    async def _send_with_retry(
        self,
        descriptor: EndpointDescriptor,
        url: str,
        params: Mapping[str, str],
        headers: Dict[str, str],
    ) -> TransportResponse:
        last_exc: Optional[TransportError] = None
        for attempt in range(1, self.retry.max_attempts + 1):
            try:
                with tracer.start_as_current_span(
                    "executor.attempt", attributes={"attempt": attempt}
                ):
                    return await self.transport.request(
                        descriptor.http_method.value, url, params, headers
                    )
            except TransportError as exc:
                last_exc = exc
                if attempt < self.retry.max_attempts:
                    delay = self.retry.delay_after(attempt)
                    logger.warning(
                        "Transport error on %s (attempt %d/%d): %s; sleeping %.2fs",
                        descriptor.id, attempt, self.retry.max_attempts, exc, delay,
                    )
                    await self._sleep(delay)

        self.counters.record_failure("transport")
        logger.error(
            "Giving up on %s after %d attempts: %s",
            descriptor.id, self.retry.max_attempts, last_exc,
        )
        assert last_exc is not None
        last_exc.endpoint_id = descriptor.id
        raise last_exc

    def _handle_response(
        self, descriptor: EndpointDescriptor, key: str, response: TransportResponse
    ) -> Any:
        if response.status == 429:
            self.counters.record_rate_limited("remote")
            raise RateLimited(
                self.config.remote_retry_after_s,
                "remote quota exhausted (HTTP 429)",
                endpoint_id=descriptor.id,
            )

        if not 200 <= response.status < 300:
            self.counters.record_failure("remote")
            raise RemoteError(response.status, response.body, endpoint_id=descriptor.id)

        self.counters.record_network_call()
        try:
            payload = json.loads(response.body)
        except ValueError:
            self.counters.record_failure("decode")
            raise RemoteError(
                response.status, f"invalid JSON body: {response.body}", endpoint_id=descriptor.id
            ) from None

        ttl_s = descriptor.caching.effective_ttl_s
        self.cache.put(key, response.body, ttl_s)
        return payload
