import logging
import time

import httpx

from .config import REQUEST_TIMEOUT_MS
from .store import MetricsStore, Outcome

class RequestRecorder:
    """
    httpx.AsyncClient wrapper that records every request into a MetricsStore.

    Status < 400 counts as success, >= 400 or a transport error as failed,
    and httpx timeouts as timeout. Errors still propagate to the caller.
    """
    def __init__(
        self,
        store: MetricsStore,
        timeout_ms: int = REQUEST_TIMEOUT_MS,
        *,
        record_timeout_latency: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.store = store
        self.timeout_ms = timeout_ms
        self.record_timeout_latency = record_timeout_latency
        self._transport = transport
        self._log = logging.getLogger(__name__)
        self._client: httpx.AsyncClient | None = None

    async def start(self):
        self._client = httpx.AsyncClient(timeout=self.timeout_ms / 1000.0, transport=self._transport)

    async def stop(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RequestRecorder":
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.stop()

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        if self._client is None:
            raise RuntimeError("RequestRecorder is not started")
        t0 = time.perf_counter()
        try:
            r = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            elapsed_ms = (time.perf_counter() - t0) * 1000
            latency = elapsed_ms if self.record_timeout_latency else None
            self._finish(url, latency, Outcome.TIMEOUT, error=e)
            raise
        except httpx.TransportError as e:
            self._finish(url, None, Outcome.FAILED, error=e)
            raise
        elapsed_ms = (time.perf_counter() - t0) * 1000
        outcome = Outcome.SUCCESS if r.status_code < 400 else Outcome.FAILED
        self._finish(url, elapsed_ms, outcome, status=r.status_code)
        return r

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    def _finish(self, url: str, latency_ms: float | None, outcome: Outcome, *, status: int = 0, error: Exception | None = None):
        self.store.record_event(url, latency_ms, outcome)
        fields = {
            "url": url,
            "status": status,
            "outcome": outcome.value,
            "latency_ms": round(latency_ms, 1) if latency_ms is not None else None,
        }
        if error is not None:
            fields["error"] = repr(error)
            self._log.warning("request failed", extra={"event": "request.error", "extra_fields": fields})
        else:
            self._log.debug("request", extra={"event": "request.done", "extra_fields": fields})
