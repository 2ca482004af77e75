#=================================================================
# catalog_sync/main_app.py
# FastAPI application entry-point.
#=================================================================

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from catalog_sync.config import settings
from catalog_sync.db import Database
from catalog_sync.logging_filters import install_log_filters
from catalog_sync.remote.ideasoft import IdeasoftClient
from catalog_sync.routes import router as api_router
from catalog_sync.store.stage_store import StageStore
from catalog_sync.sync.orchestrator import BatchOrchestrator

# --- FastAPI instance ---
app = FastAPI(
    title="Ideasoft Catalog Sync",
    description="Pushes imported product batches to Ideasoft and keeps them reconciled.",
)

# --- Logging setup (console, INFO level) ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s | %(message)s"
)
logger = logging.getLogger("uvicorn.error")
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
install_log_filters()

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)  # /api/*

# --- Root endpoint ---
@app.get("/")
async def home():
    return {"status": "running", "service": "Ideasoft Catalog Sync"}

# --- Global error handler (keeps full stack trace in logs) ---
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"detail": f"Sync failed: {str(exc)}"},
    )

# ---- Resource lifecycle ----
@app.on_event("startup")
async def _startup():
    db = Database(settings.DATABASE_URL)
    await db.connect()
    store = StageStore(db)
    remote = IdeasoftClient()
    app.state.db = db
    app.state.remote = remote
    app.state.orchestrator = BatchOrchestrator(store, remote)
    if not settings.IDEASOFT_ACCESS_TOKEN:
        logger.warning("[IDEASOFT] IDEASOFT_ACCESS_TOKEN is not set; remote calls will be rejected")
    logger.info("[SYNC] ready (api=%s)", remote.base_url)

@app.on_event("shutdown")
async def _shutdown():
    remote = getattr(app.state, "remote", None)
    if remote is not None:
        await remote.aclose()
    db = getattr(app.state, "db", None)
    if db is not None:
        await db.dispose()

#if __name__ == "__main__":
#    import uvicorn
#
#    uvicorn.run(app, host="0.0.0.0", port=8000)
