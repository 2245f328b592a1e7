#=================================================================
# woocatalog/main_app.py
# FastAPI application entry-point.
#=================================================================

import logging, asyncio

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from woocatalog import logging_filters
from woocatalog.routes import router as api_router
from woocatalog.workers.jobs_worker import reset_queue, worker_loop
from woocatalog.sync.schedules import scheduler_loop
from woocatalog.db import dispose_db, init_db
from woocatalog.config import settings

# --- FastAPI instance ---
app = FastAPI(
    title="WooCommerce Catalog Manager",
    description="Bulk CSV import, catalog sync and cross-shop transfer for WooCommerce stores.",
)

# --- Logging setup (console, INFO level) ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s | %(message)s"
)
logger = logging.getLogger("uvicorn.error")
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging_filters.install()

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------- Include routers ----------------
app.include_router(api_router)           # /api/*


# --- Root endpoint ---
@app.get("/")
async def home():
    return {"status": "running", "service": "WooCommerce Catalog Manager"}


# --- Global error handler (keeps full stack trace in logs) ---
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"detail": f"Request failed: {str(exc)}"},
    )


# ---- Background worker + scheduler lifecycle ----
_tasks: list[asyncio.Task] = []
_stop: asyncio.Event | None = None


@app.on_event("startup")
async def _startup():
    await init_db()
    global _stop
    _stop = asyncio.Event()
    reset_queue()
    _tasks.append(asyncio.create_task(worker_loop(_stop)))
    _tasks.append(asyncio.create_task(scheduler_loop(_stop)))


@app.on_event("shutdown")
async def _shutdown():
    if _stop:
        _stop.set()
    for task in _tasks:
        try:
            await asyncio.wait_for(task, timeout=5)
        except asyncio.TimeoutError:
            task.cancel()
    _tasks.clear()
    await dispose_db()
