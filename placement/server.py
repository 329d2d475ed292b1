import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from placement.config import settings
from placement.db.database import close_db, init_db, open_db
from placement.middleware.auth import AuthMiddleware
from placement.services.collaborators import default_collaborators
from placement.services.errors import PlacementError
from placement.services.outbox import run_outbox_worker

logger = logging.getLogger(__name__)

# CORS: use CORS_ORIGINS (comma-separated) or local dev defaults.
if settings.cors_origins:
    _allowed_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
else:
    _allowed_origins = [
        "http://localhost:8000",
        "http://127.0.0.1:8000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    worker = asyncio.create_task(run_outbox_worker(open_db, default_collaborators))
    yield
    worker.cancel()
    with suppress(asyncio.CancelledError):
        await worker
    await close_db()


app = FastAPI(title="Placement Engine", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)
app.add_middleware(AuthMiddleware)


@app.exception_handler(PlacementError)
async def placement_error_handler(request: Request, exc: PlacementError):
    logger.debug(f"{request.method} {request.url.path} -> {exc.status_code} {type(exc).__name__}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": type(exc).__name__},
    )


from placement.routes.assessments import router as assessments_router
from placement.routes.sections import router as sections_router

app.include_router(assessments_router)
app.include_router(sections_router)


@app.get("/health")
async def health_check():
    return {"status": "ok"}
