import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from openledger import __version__
from openledger.api.answer import router as answer_router
from openledger.api.audit import router as audit_router
from openledger.api.deps import build_services
from openledger.api.drift import router as drift_router
from openledger.api.evidence import router as evidence_router
from openledger.api.gates import router as gates_router
from openledger.api.metrics import router as metrics_router
from openledger.api.pipeline import router as pipeline_router
from openledger.api.receipts import router as receipts_router
from openledger.config import settings
from openledger.errors import KBValidationError, OpenLedgerError, PipelineError
from openledger.middleware.logging_config import configure_logging
from openledger.middleware.metrics import PrometheusMiddleware
from openledger.middleware.request_context import RequestContextMiddleware

logger = logging.getLogger("openledger")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level, settings.log_format)
    if settings.consent_store == "database":
        from openledger.database import init_models

        await init_models()
    app.state.services = build_services(settings)
    logger.info("OpenLedger %s started (%s)", __version__, settings.environment)
    yield
    if settings.consent_store == "database":
        from openledger.database import dispose_engine

        await dispose_engine()


app = FastAPI(
    title="OpenLedger",
    description="Offline privacy-compliance pipeline: evidence, audit, drift and answers",
    version=__version__,
    lifespan=lifespan,
)

# ── CORS ─────────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["Content-Type", "X-Request-ID"],
)

# ── Request context middleware (request ID + timing) ─────────────────────────
app.add_middleware(RequestContextMiddleware)

# ── Prometheus metrics middleware ────────────────────────────────────────────
app.add_middleware(PrometheusMiddleware)


@app.exception_handler(KBValidationError)
async def kb_validation_handler(request: Request, exc: KBValidationError):
    return JSONResponse(
        status_code=422,
        content={"detail": "Knowledge base failed validation", "violations": [v.to_dict() for v in exc.violations]},
    )


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    if isinstance(exc.cause, KBValidationError):
        return await kb_validation_handler(request, exc.cause)
    return JSONResponse(status_code=400, content={"detail": str(exc), "stage": exc.stage})


@app.exception_handler(OpenLedgerError)
async def openledger_error_handler(request: Request, exc: OpenLedgerError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return detailed error info in development mode so 500s are debuggable."""
    tb = traceback.format_exc()
    logger.error(
        "Unhandled %s on %s %s: %s\n%s",
        type(exc).__name__, request.method, request.url.path, exc, tb,
    )
    if settings.environment == "development":
        return JSONResponse(
            status_code=500,
            content={"detail": f"{type(exc).__name__}: {exc}", "traceback": tb.splitlines()[-5:]},
        )
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


app.include_router(pipeline_router)
app.include_router(evidence_router)
app.include_router(audit_router)
app.include_router(answer_router)
app.include_router(gates_router)
app.include_router(receipts_router)
app.include_router(drift_router)
app.include_router(metrics_router)


@app.get("/api/health")
async def health_check(request: Request):
    services = getattr(request.app.state, "services", None)
    if services is None:
        return {"status": "starting", "environment": settings.environment}
    tracker = services.registry.tracker
    period = tracker.current_period()
    return {
        "status": "healthy",
        "environment": settings.environment,
        "version": __version__,
        "kb": {
            "frameworks": [f.id for f in services.kb.frameworks],
            "rules": len(services.kb.mapping),
        },
        "answer_provider": services.registry.provider,
        "consent_store": settings.consent_store,
        "active_period": period.id if period else None,
    }
