from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from .routers import cache, history, metrics, patterns, query
from app.services.pipeline import QueryPipeline, build_pipeline
from app.utils import slog
from app.utils.logging import configure_logging
from app.utils.metrics import record_endpoint
from app.utils.timing import timer


def _install_request_logging(app: FastAPI) -> None:
    """One `request.completed` (or `request.error`) line per HTTP request, plus endpoint timings."""

    @app.middleware("http")
    async def _logging_middleware(request: Request, call_next):
        req_id = slog.new_request_id()
        request.state.request_id = req_id
        client_ip = request.client.host if request.client else None
        path = str(request.url.path)
        with timer() as elapsed:
            try:
                response = await call_next(request)
            except Exception as e:
                slog.log_event(
                    "request.error",
                    request_id=req_id,
                    path=path,
                    method=request.method,
                    latency_ms=elapsed(),
                    client_ip=client_ip,
                    error=str(e),
                    **(getattr(request.state, "log_context", None) or {}),
                )
                raise
            latency_ms = elapsed()

        # routers add actor/qhash/database; request_id stays the one sent back in X-Request-ID
        ctx = dict(getattr(request.state, "log_context", None) or {})
        ctx["request_id"] = req_id
        ctx.setdefault("rate_limited", response.status_code == 429)
        slog.finalize_request_log(
            request_id=req_id,
            method=request.method,
            path=path,
            status=response.status_code,
            latency_ms=latency_ms,
            client_ip=client_ip,
            ctx=ctx,
        )
        record_endpoint(method=request.method, path=path, latency_ms=latency_ms)
        response.headers["X-Request-ID"] = req_id
        return response


def create_app(pipeline: QueryPipeline | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # flush fire-and-forget writes before exit
        app.state.pipeline.background.drain(timeout=5.0)
        app.state.pipeline.background.stop()
        app.state.pipeline.executor.dispose()

    app = FastAPI(title="AskDB", version="0.1.0", lifespan=lifespan)
    # cache + limiter live here, one per app, never as module globals
    app.state.pipeline = pipeline or build_pipeline()
    _install_request_logging(app)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    app.include_router(query.router)
    app.include_router(history.router)
    app.include_router(patterns.router)
    app.include_router(cache.router)
    app.include_router(metrics.router)
    return app


app = create_app()
