from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from core.env import env_csv
from core.logging import setup_logging
from database import ping_database
from web import routers

setup_logging()

app = FastAPI(
    title="Trial Lifecycle API",
    description="Device trials, GitHub-linked extensions, reactivation and conversion tracking.",
    version="0.1.0",
)

origins = list(env_csv("CORS_ALLOW_ORIGINS")) or [
    "http://localhost:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", summary="Health Check", tags=["Default"])
def health_check():
    """Basic liveness check."""
    return {"status": "ok", "message": "Trial lifecycle API is running."}


@app.get("/healthz", include_in_schema=False)
def readiness_check():
    """Readiness check including database connectivity."""
    db_ok, db_error = ping_database()
    payload = {"status": "ok" if db_ok else "unhealthy", "database": {"ok": db_ok}}
    if db_error:
        payload["database"]["error"] = db_error
    status_code = status.HTTP_200_OK if db_ok else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=payload)


@app.get("/metrics", include_in_schema=False)
def prometheus_metrics():
    """Expose Prometheus metrics."""
    try:
        body = generate_latest()
    except ValueError as exc:  # pragma: no cover - collector failure
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "metrics.unavailable", "message": str(exc)},
        ) from exc
    return Response(body, media_type=CONTENT_TYPE_LATEST)


app.include_router(routers.trial.router, prefix="/api/v1")
app.include_router(routers.billing.router, prefix="/api/v1")
app.include_router(routers.admin_trials.router, prefix="/api/v1")
