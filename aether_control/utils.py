from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from .settings import settings

INGEST_PATH = "/api/telemetry"

INGEST_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}

DASHBOARD_METHODS = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]

def is_ingest(request: Request) -> bool:
    return request.url.path.rstrip("/") == INGEST_PATH

def add_cors(app: FastAPI) -> None:
    """Dashboard routes use the configured origin list; the ingest path is open to any origin."""
    origins = [o.strip() for o in settings.cors_origins if o.strip()] or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=False,
        allow_methods=DASHBOARD_METHODS,
        allow_headers=["Content-Type", "Authorization"],
    )

    # registered last so it wraps CORSMiddleware and answers ingest requests first
    @app.middleware("http")
    async def ingest_cors(request: Request, call_next):
        if not is_ingest(request):
            return await call_next(request)
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=INGEST_CORS_HEADERS)
        response = await call_next(request)
        response.headers.update(INGEST_CORS_HEADERS)
        return response
