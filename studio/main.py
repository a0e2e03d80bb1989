import os
import time
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

load_dotenv()

from . import gemini
from . import metrics
from . import supabase_client
from .pipeline import project_router, user_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

CORS_ORIGINS = [o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("API starting up...")
    metrics.set_gauge("start_time", time.time())
    yield
    logger.info("API shutting down...")


app = FastAPI(title="UGC Studio API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def record_request_latency(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    route = request.scope.get("route")
    endpoint = f"{request.method} {getattr(route, 'path', request.url.path)}"
    metrics.record_latency(endpoint, (time.perf_counter() - started) * 1000)
    return response


# ── Error bodies are always {"message": ...} ─────────────────────────────────

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ())[1:])
    message = f"Invalid request: {field} {first.get('msg', '')}".strip()
    return JSONResponse(status_code=400, content={"message": message})


app.include_router(project_router)
app.include_router(user_router)


@app.get("/health")
def health_check():
    """Verify the API is running and credentials are configured."""
    return {
        "status": "ok",
        "gemini_api_key_set": bool(gemini.GEMINI_API_KEY),
        "supabase_configured": supabase_client.is_configured(),
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all API metrics."""
    return metrics.get_snapshot()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("studio.main:app", host="0.0.0.0", port=port, reload=True)
