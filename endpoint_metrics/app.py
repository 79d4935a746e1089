import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from .config import (
    AUTOSAVE_EVERY, BASE_URL, BIND_HOST, EXPORT_DIR, LOG_LEVEL, MAX_SAMPLES,
    PORT, STORAGE_KEY, STORAGE_PATH,
)
from .export import ChartExporter
from .logging import setup_logging
from .persistence import JsonFileStorage, PersistenceAdapter
from .store import MetricsStore, Outcome

# Query bounds for histogram and export params (ms)
MAX_QUERY_MS = 3_600_000

class EventIn(BaseModel):
    url: str = Field(..., description="Request URL or id, e.g. /wms?LAYERS=roads")
    latency_ms: float | None = Field(None, description="Observed latency; omit for no sample")
    outcome: Outcome = Outcome.SUCCESS

def build_store() -> MetricsStore:
    """Store wired from environment settings."""
    return MetricsStore(
        PersistenceAdapter(JsonFileStorage(STORAGE_PATH), STORAGE_KEY),
        max_samples=MAX_SAMPLES,
        autosave_every=AUTOSAVE_EVERY,
        base_url=BASE_URL,
        exporter=ChartExporter(EXPORT_DIR),
    )

def create_app(store: MetricsStore | None = None) -> FastAPI:
    setup_logging("endpoint-metrics", LOG_LEVEL)
    log = logging.getLogger(__name__)
    app = FastAPI(title="Endpoint Metrics")
    store = store or build_store()
    app.state.store = store
    started_at = time.time()

    # Access log + latency
    @app.middleware("http")
    async def access_logger(request: Request, call_next):
        t0 = time.time()
        response = None
        try:
            response = await call_next(request)
            return response
        finally:
            log.info(
                "access",
                extra={
                    "event": "http.access",
                    "extra_fields": {
                        "path": request.url.path,
                        "method": request.method,
                        "latency_ms": int((time.time() - t0) * 1000),
                        "status": response.status_code if response is not None else 500,
                    },
                },
            )

    # Startup/Shutdown
    @app.on_event("startup")
    async def _startup():
        log.info("loading persisted metrics", extra={"event": "startup"})
        # one worker, so storage writes land in submission order
        store.writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="metrics-writer")
        await _in_writer(store.persistence.load, after=store.apply_loaded)

    @app.on_event("shutdown")
    async def _shutdown():
        log.info("saving metrics", extra={"event": "shutdown"})
        writer, store.writer = store.writer, None
        if writer is not None:
            writer.shutdown(wait=True)
        store.close()

    async def _in_writer(fn, *args, after=None):
        """Run a storage call off the event loop; `after` sees its result back on the loop."""
        result = await asyncio.get_running_loop().run_in_executor(store.writer, fn, *args)
        return after(result) if after else result

    # Endpoints
    @app.post("/events", status_code=202)
    async def record_event(event: EventIn):
        return {"endpoint": store.record_event(event.url, event.latency_ms, event.outcome)}

    @app.get("/endpoints/resolve")
    async def resolve(url: str = Query(..., description="Raw request URL")):
        return {"endpoint": store.resolve_endpoint_key(url)}

    @app.get("/endpoints")
    async def all_snapshots():
        return [{"endpoint": s["endpoint"], "stats": asdict(s["stats"])} for s in store.all_snapshots()]

    @app.get("/endpoints/{endpoint_key}/snapshot")
    async def snapshot(endpoint_key: str):
        stats = store.snapshot(endpoint_key)
        if stats is None:
            raise HTTPException(status_code=404, detail=f"Unknown endpoint '{endpoint_key}'.")
        return asdict(stats)

    @app.get("/endpoints/{endpoint_key}/histogram")
    async def histogram(
        endpoint_key: str,
        bin_size: float = Query(25, gt=0, le=MAX_QUERY_MS, description="Bin width in ms"),
        max_ms: float | None = Query(None, ge=0, le=MAX_QUERY_MS, description="Extend bins up to this latency"),
    ):
        try:
            return asdict(store.histogram(endpoint_key, bin_size, max_ms))
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))

    @app.post("/endpoints/{endpoint_key}/export")
    async def export_histogram(endpoint_key: str, bin_size: float = Query(25, gt=0, le=MAX_QUERY_MS)):
        try:
            result = await store.export_histogram_async(endpoint_key, bin_size)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return asdict(result)

    @app.post("/export")
    async def export_all(bin_size: float = Query(25, gt=0, le=MAX_QUERY_MS)):
        results = []
        for item in await store.export_all_histograms_async(bin_size):
            if item["ok"]:
                item = {**item, "result": asdict(item["result"])}
            results.append(item)
        return results

    @app.post("/persistence/save")
    async def save():
        result = await _in_writer(store.persistence.save, store.dumps())
        return {"ok": result.ok, "error": result.error}

    @app.post("/persistence/load")
    async def load():
        result = await _in_writer(store.persistence.load, after=store.apply_loaded)
        return {"ok": result.ok, "error": result.error, "endpoints": len(store.keys())}

    @app.post("/clear")
    async def clear(persist: bool = Query(False)):
        store.clear()
        if persist:
            await _in_writer(store.persistence.save, store.dumps())
        return {"ok": True}

    @app.get("/health")
    async def health():
        return {"ok": True, "uptime_s": int(time.time() - started_at), "endpoints": len(store.keys())}

    return app

app = create_app()

if __name__ == "__main__":
    # Dev run: python -m endpoint_metrics.app
    import uvicorn

    uvicorn.run(app, host=BIND_HOST, port=PORT)
