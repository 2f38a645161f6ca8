from __future__ import annotations
import asyncio
import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd
from opentelemetry import trace

from sportsfeed.client.executor import RequestExecutor
from sportsfeed.config import EngineConfig
from sportsfeed.descriptors.catalog import DescriptorCatalog
from sportsfeed.descriptors.models import EndpointDescriptor
from sportsfeed.errors import RateLimited, RemoteError, SportsFeedError
from sportsfeed.flatten.flattener import Cancelled, FlattenResult, flatten
from sportsfeed.validation.params import validate

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("sportsfeed.engine")

Params = Optional[Mapping[str, Any]]

# Envelope keys the API uses to report quota exhaustion with an HTTP 200.
_QUOTA_ERROR_KEYS = ("rateLimit", "requests")


class EndpointEngine:
    """
    Host-facing entry point: (endpoint id, parameters) → rows.

    Flow per call:
      catalog lookup → parameter validation → execute (cache / admission /
      HTTP with retry) → envelope check → flatten → [next page ...]

    The catalog and executor are passed in by the host; nothing here is
    process-global.
    """

    def __init__(self, catalog: DescriptorCatalog, executor: RequestExecutor) -> None:
        self.catalog = catalog
        self.executor = executor

    @classmethod
    def from_config(cls, config: EngineConfig) -> "EndpointEngine":
        catalog = DescriptorCatalog()
        catalog.load_file(config.descriptor_path)
        return cls(catalog, RequestExecutor(config))

    async def close(self) -> None:
        await self.executor.close()

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def fetch_rows(
        self,
        endpoint_id: str,
        params: Params = None,
        cancelled: Optional[Cancelled] = None,
    ) -> FlattenResult:
        """
        Run one logical call and flatten every page it spans.

        Raises:
            EndpointNotFound, ParameterValidationError: before any network call.
            RateLimited, TransportError, RemoteError: from the executor or envelope.
        """
        with tracer.start_as_current_span(
            "engine.fetch_rows", attributes={"endpoint.id": endpoint_id}
        ) as span:
            start = time.time()
            descriptor = self.catalog.get(endpoint_id)
            resolved = validate(descriptor, params)

            result = FlattenResult()
            async for payload in self._pages(descriptor, resolved, cancelled, result):
                partial = flatten(descriptor.response, payload, cancelled=cancelled)
                result.extend(partial.rows)
                result.warnings.extend(partial.warnings)
                result.skipped += partial.skipped
                if partial.cancelled:
                    result.cancelled = True
                    break

            result.normalize()
            span.set_attribute("engine.rows", len(result.rows))
            span.set_attribute("engine.skipped", result.skipped)
            span.set_attribute("engine.total_ms", int((time.time() - start) * 1000))
            logger.info(
                "%s → %d row(s), %d column(s), %d skipped",
                endpoint_id, len(result.rows), len(result.columns), result.skipped,
            )
            return result

    async def fetch_frame(
        self,
        endpoint_id: str,
        params: Params = None,
        cancelled: Optional[Cancelled] = None,
    ) -> pd.DataFrame:
        result = await self.fetch_rows(endpoint_id, params, cancelled)
        return result.to_frame()

    async def fetch_many(
        self,
        calls: Sequence[Tuple[str, Params]],
        concurrency: int = 4,
    ) -> List[Union[FlattenResult, SportsFeedError]]:
        """
        Fan out several calls concurrently, results in input order.

        Engine errors are returned in place of the failed call's result so
        one bad item does not sink the batch; anything else propagates.
        """
        semaphore = asyncio.Semaphore(concurrency)

        async def run(endpoint_id: str, params: Params) -> Union[FlattenResult, SportsFeedError]:
            async with semaphore:
                try:
                    return await self.fetch_rows(endpoint_id, params)
                except SportsFeedError as exc:
                    logger.warning("Batch item %s failed: %s", endpoint_id, exc)
                    return exc

        return list(await asyncio.gather(*[run(eid, p) for eid, p in calls]))

    def stats(self) -> Dict[str, Any]:
        """Read-only diagnostics for the host."""
        return {
            "calls": self.executor.counters.snapshot(),
            "cache": self.executor.cache.get_stats(),
            "rate_limit": self.executor.admission.get_status(self.executor.config.credential()),
            "catalog": {
                "endpoints": self.catalog.count(),
                "version": self.catalog.version,
                "namespace": self.catalog.namespace,
            },
        }

    # ------------------------------------------------------------------
    # Paging and envelope handling
    # ------------------------------------------------------------------

    async def _pages(
        self,
        descriptor: EndpointDescriptor,
        resolved: Dict[str, str],
        cancelled: Optional[Cancelled],
        result: FlattenResult,
    ):
        """
        Yield the payload of every page. Paging is followed only when the
        endpoint supports it and the caller did not pin the page parameter.
        Stopping between pages on cancellation marks `result` as cancelled.
        """
        payload = await self._fetch_checked(descriptor, resolved)
        yield payload

        paging = descriptor.paging
        if not paging.supported or paging.param_name in resolved:
            return

        total = _total_pages(payload)
        last = min(total, paging.max_pages)
        if total > paging.max_pages:
            logger.warning(
                "%s has %d pages; stopping at maxPages=%d",
                descriptor.id, total, paging.max_pages,
            )

        for page in range(2, last + 1):
            if cancelled is not None and cancelled():
                result.cancelled = True
                return
            page_params = dict(resolved)
            page_params[paging.param_name] = str(page)
            yield await self._fetch_checked(descriptor, page_params)

    async def _fetch_checked(
        self, descriptor: EndpointDescriptor, params: Dict[str, str]
    ) -> Any:
        payload = await self.executor.execute(descriptor, params)
        if not isinstance(payload, dict):
            return payload

        errors = payload.get("errors")
        if errors:
            # Error envelopes arrive with HTTP 200; never serve them from cache.
            self.executor.cache.invalidate(self.executor.cache_key(descriptor, params))
            logger.error("API returned errors for %s: %s", descriptor.id, errors)
            if isinstance(errors, dict) and any(k in errors for k in _QUOTA_ERROR_KEYS):
                raise RateLimited(
                    self.executor.config.remote_retry_after_s,
                    f"remote quota exhausted: {errors}",
                    endpoint_id=descriptor.id,
                )
            raise RemoteError(200, errors, endpoint_id=descriptor.id)

        results = payload.get("results")
        if results is not None:
            logger.debug("%s returned %s result(s)", descriptor.id, results)
            if results == 0:
                logger.warning("%s returned no results; check the query parameters", descriptor.id)
        return payload


def _total_pages(payload: Any) -> int:
    paging = payload.get("paging") if isinstance(payload, dict) else None
    if not isinstance(paging, dict):
        return 1
    try:
        return max(1, int(paging.get("total", 1)))
    except (TypeError, ValueError):
        return 1
