from __future__ import annotations

from datetime import UTC, datetime
from dotenv import load_dotenv
import logging
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .. import __version__
from ..errors import ConfigurationError, StageConflictError, ValidationError
from ..observability.metrics import metrics_middleware_factory
from .routers.sessions import router as sessions_router

load_dotenv()  # Provider keys (OPENAI_API_KEY, ANTHROPIC_API_KEY, GEMINI_API_KEY) and PROMPTSMITH_* settings

logger = logging.getLogger("promptsmith.api")

app = FastAPI(title="Promptsmith API", version=__version__)

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

app.include_router(sessions_router)
app.include_router(sessions_router, prefix="/api")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StageConflictError)
async def stage_conflict_handler(request: Request, exc: StageConflictError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ConfigurationError)
async def configuration_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    logger.warning("configuration_error", extra={"path": request.url.path, "err": str(exc)})
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.get("/")
def root():
    return {"name": "Promptsmith API", "version": __version__}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "sessions": "in-memory",
        },
    }


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
