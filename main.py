"""
Spendflow API

HTTP surface for the approval routing and budget ledger engine.
"""
import time
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from spendflow import __version__
from spendflow.api import budgets_router, policies_router, requests_router
from spendflow.di.container import container
from spendflow.services.errors import SpendflowError, to_http_exception
from spendflow.services.escalation import EscalationSweeper
from spendflow.services.logging import configure_logging, log_error, log_request, logger
from spendflow.services.metrics import get_metrics, record_error, record_request

app = FastAPI(
    title="Spendflow API",
    description="""
    Spendflow API - Approval Routing & Budget Ledger

    ## Spend requests
    - Policy-driven, multi-stage approval chains with escalation and delegation
    - Separate payment approval before a request can be paid

    ## Budget ledger
    - Append-only commit / spend / release entries per budget line and period
    - Utilization with over-budget justification

    ## Policies
    - Versioned approval and payment policies, resolved by priority and scope
    """,
    version=__version__,
)

app.include_router(requests_router)
app.include_router(budgets_router)
app.include_router(policies_router)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests and record metrics."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_id = request.headers.get("X-User-Id", request.client.host if request.client else "unknown")

        try:
            response = await call_next(request)
            duration_ms = (time.time() - start_time) * 1000

            log_request(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=duration_ms,
                client_id=client_id
            )
            record_request(request.method, request.url.path, response.status_code, duration_ms)

            if response.status_code >= 400:
                record_error(f"http_{response.status_code}", request.url.path)

            return response
        except Exception as e:
            record_error("exception", request.url.path)
            log_error("request_exception", str(e), {"path": request.url.path, "method": request.method})
            raise


app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SpendflowError)
async def spendflow_exception_handler(request: Request, exc: SpendflowError):
    """Handle all SpendflowErrors with structured responses."""
    http_exc = to_http_exception(exc)
    if http_exc.status_code >= 500:
        log_error(exc.code.value, str(exc), exc.context)
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code.value} {exc.message}")
    return JSONResponse(status_code=http_exc.status_code, content=http_exc.detail, headers=http_exc.headers)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log_error(
        "unhandled_exception",
        str(exc),
        {"path": str(request.url.path), "method": request.method},
        exception=exc,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again or contact support.",
        },
    )


@app.on_event("startup")
async def startup_event():
    """Configure logging, open storage, rebuild in-memory state and start the escalation sweep."""
    settings = container.settings()
    configure_logging(settings.log_level, settings.use_json_logs)
    container.db()
    orchestrator = container.orchestrator()
    sweeper = EscalationSweeper(orchestrator.escalations, interval_seconds=settings.escalation_sweep_seconds)
    app.state.escalation_sweeper = sweeper
    await sweeper.start()
    logger.info(
        f"Spendflow started: {len(orchestrator.list_requests())} requests, "
        f"{len(container.catalog().list())} policies"
    )


@app.on_event("shutdown")
async def shutdown_event():
    sweeper = getattr(app.state, "escalation_sweeper", None)
    if sweeper is not None:
        await sweeper.stop()
    container.shutdown()


@app.get("/health", tags=["System"], summary="Health Check")
async def health():
    checks = {}
    try:
        with container.db().connect() as conn:
            conn.execute("SELECT 1")
        checks["database"] = "ok"
    except Exception as exc:  # noqa: BLE001
        checks["database"] = f"error: {exc}"
    status = "healthy" if all(v == "ok" for v in checks.values()) else "degraded"
    sweeper = getattr(app.state, "escalation_sweeper", None)
    return {
        "status": status,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
        "escalation_sweep": sweeper.get_status() if sweeper is not None else {"state": "not_started"},
    }


@app.get("/metrics", tags=["System"], summary="Get Metrics")
async def metrics_endpoint():
    return get_metrics()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
