import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from civic_issues.core.config import get_settings
from civic_issues.routes.issues import router as issues_router
from civic_issues.services import mongodb_service
from civic_issues.services.issue_pipeline import IssueIntelligencePipeline
from civic_issues.services.issue_store import InMemoryIssueStore, MongoIssueStore
from civic_issues.services.oracle_cache import CachedSimilarityOracle, connect_redis
from civic_issues.services.similarity_oracle import build_similarity_oracle
from civic_issues.utils.timing_middleware import TimingMiddleware, register_command_logger

# --- LOGGING SETUP ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger(__name__)


# --- LIFESPAN CONTEXT MANAGER ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("🚀 Starting Civic Issue Intelligence API...")

    register_command_logger()
    if await mongodb_service.init_db(settings):
        store = MongoIssueStore(mongodb_service.get_db(), mongodb_service.ISSUES_COLLECTION)
        logger.info("✅ MongoDB issue store initialized")
    else:
        store = InMemoryIssueStore()
        logger.warning("⚠️ Falling back to in-memory issue store; data will not survive a restart")

    oracle = build_similarity_oracle(settings)
    redis_client = None
    if oracle.available:
        redis_client = await connect_redis(settings.redis_url)
        if redis_client is not None:
            oracle = CachedSimilarityOracle(oracle, redis_client, ttl=settings.oracle_cache_ttl)
    logger.info(f"🤖 Similarity oracle: {oracle.provider} (available={oracle.available})")

    app.state.store = store
    app.state.pipeline = IssueIntelligencePipeline(store, oracle, settings)
    logger.info("✅ All services initialized - Server ready!")

    yield

    logger.info("🔄 Shutting down...")
    try:
        await app.state.pipeline.drain()
        if redis_client is not None:
            await redis_client.close()
        await mongodb_service.close_db()
        logger.info("✅ All services closed gracefully")
    except Exception as e:
        logger.error(f"❌ Shutdown error: {e}", exc_info=True)


# --- APP INITIALIZATION ---
app = FastAPI(title="Civic Issue Intelligence API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins_list() or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(TimingMiddleware)


# --- REQUEST LOGGING ---
@app.middleware("http")
async def log_requests(request: Request, call_next):
    path = request.url.path
    logger.info(f"📥 {request.method} {path}")
    try:
        return await call_next(request)
    except Exception as e:
        logger.error(f"💥 Error causing 500: {path} - {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.include_router(issues_router, prefix="/api", tags=["Issues"])


# --- HEALTH ---
@app.get("/health")
async def health():
    pipeline = getattr(app.state, "pipeline", None)
    return {
        "status": "online" if pipeline is not None else "starting",
        "database": "mongodb" if mongodb_service.db is not None else "memory",
        "ai": pipeline.oracle.available if pipeline is not None else False,
        "timestamp": datetime.utcnow().isoformat(),
    }


if __name__ == "__main__":
    port = int(os.getenv("PORT", "3001"))
    logger.info(f"Server starting on port {port}")
    uvicorn.run("civic_issues.main:app", host="0.0.0.0", port=port, reload=False, log_level="info")
