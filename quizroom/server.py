"""
quizroom API - live quiz sessions
Owners open a session on a quiz, competitors join with a 6-digit code and
answer over a WebSocket channel, owners close the session and read results.
"""

import asyncio
import json
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Dict

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorClient
from redis.exceptions import RedisError

from quizroom.analytics import AnalyticsEngine
from quizroom.auth import current_user_id, require_self
from quizroom.cache import ResultCache
from quizroom.catalog import QuizCatalog
from quizroom.config import Config, cors_origins
from quizroom.errors import QuizRoomError
from quizroom.ingestion import AnswerIngestion
from quizroom.lifecycle import SessionLifecycle
from quizroom.models import JoinByCode, QuizCreate
from quizroom.realtime import ConnectionManager, LiveEvents
from quizroom.scoring import ScoringEngine
from quizroom.store import DocumentStore, SessionLocks

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

config = Config()

# ============================================================================
# SERVICE GRAPH
# ============================================================================


class Services:
    """Everything a request needs, wired once per process."""

    def __init__(self, db, redis_client, config: Config):
        self.config = config
        self.store = DocumentStore(
            db, timeout=config.STORE_TIMEOUT_SEC, max_items=config.MAX_PARTICIPANTS
        )
        self.cache = ResultCache(redis_client)
        self.locks = SessionLocks()
        self.catalog = QuizCatalog(self.store, self.cache, config)
        self.lifecycle = SessionLifecycle(self.store, self.catalog, self.locks, config)
        self.ingestion = AnswerIngestion(self.store, self.catalog, self.locks)
        self.scoring = ScoringEngine(self.store, self.cache, config)
        self.analytics = AnalyticsEngine(self.store, self.cache, config)
        self.manager = ConnectionManager(heartbeat_sec=config.WS_HEARTBEAT_SEC)
        self.live = LiveEvents(self.manager, self.ingestion)


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(503, "Service not ready")
    return services


# ============================================================================
# LIFESPAN
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Starting quizroom API")

    try:
        mongo_client = AsyncIOMotorClient(
            config.MONGO_URL,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=10000,
            maxPoolSize=200,
            minPoolSize=20,
            maxIdleTimeMS=10000,
            retryWrites=False,
            retryReads=False,
        )
        db = mongo_client[config.DB_NAME]
        await db.command("ping")
        logger.info("✓ MongoDB connected")
    except Exception as e:
        logger.error(f"❌ MongoDB connection failed: {e}")
        raise

    redis_client = aioredis.from_url(
        config.REDIS_URL,
        decode_responses=True,
        socket_timeout=config.STORE_TIMEOUT_SEC,
        socket_connect_timeout=config.STORE_TIMEOUT_SEC,
    )
    try:
        await redis_client.ping()
        logger.info("✓ Redis connected")
    except RedisError as e:
        logger.warning(f"Redis unavailable, caching in memory: {e}")
        await redis_client.aclose()
        redis_client = None

    services = Services(db, redis_client, config)
    try:
        await services.store.ensure_indexes()
        logger.info("✓ Database indexes created")
    except QuizRoomError as e:
        logger.error(f"Index creation error: {e}")

    app.state.services = services
    logger.info("✓ quizroom API ready")

    yield

    logger.info("🛑 Shutting down")
    mongo_client.close()
    if redis_client is not None:
        await redis_client.aclose()
    logger.info("✓ Shutdown complete")


# ============================================================================
# FASTAPI APP
# ============================================================================

app = FastAPI(
    title="quizroom API",
    version="1.0.0",
    description="Live quiz sessions with join codes, real-time answers and analytics",
    lifespan=lifespan,
)
app.state.config = config

_cors_origins = cors_origins(config)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=_cors_origins != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=500)


@app.exception_handler(QuizRoomError)
async def quizroom_error_handler(request: Request, exc: QuizRoomError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "detail": exc.description, "category": exc.category},
    )


def session_view(session: Dict) -> Dict:
    return {k: v for k, v in session.items() if k != "version"}


# ============================================================================
# API ROUTES
# ============================================================================


@app.get("/")
async def root():
    return {
        "name": "quizroom API",
        "version": "1.0.0",
        "status": "active",
        "features": ["join-codes", "live-answers", "results", "analytics"],
    }


@app.get("/health")
async def health(services: Services = Depends(get_services)):
    status = {"status": "healthy", "services": {}}
    try:
        await services.store.ping()
        status["services"]["mongodb"] = "connected"
    except QuizRoomError as e:
        status["services"]["mongodb"] = f"error: {e.description}"
        status["status"] = "degraded"

    if await services.cache.ping():
        status["services"]["cache"] = services.cache.backend
    else:
        status["services"]["cache"] = "unreachable"
        status["status"] = "degraded"

    status["websocket"] = services.manager.get_performance_stats()
    return status


# ---------------------------------------------------------------- quizzes


@app.post("/api/v1/quizzes", status_code=201)
async def create_quiz(
    data: QuizCreate,
    services: Services = Depends(get_services),
    user_id: str = Depends(current_user_id),
):
    try:
        quiz = await services.catalog.create_quiz(user_id, data)
        return {"success": True, "data": {"quiz": quiz}}
    except QuizRoomError:
        raise
    except Exception as e:
        logger.error(f"Create quiz error: {e}")
        raise HTTPException(500, "Failed to create quiz")


@app.get("/api/v1/quizzes")
async def list_quizzes(
    services: Services = Depends(get_services),
    user_id: str = Depends(current_user_id),
):
    try:
        quizzes = await services.catalog.list_quizzes(user_id)
        return {"success": True, "data": {"quizzes": quizzes}}
    except QuizRoomError:
        raise
    except Exception as e:
        logger.error(f"Get quizzes error: {e}")
        raise HTTPException(500, "Failed to fetch quizzes")


@app.get("/api/v1/quizzes/{quiz_id}")
async def get_quiz(
    quiz_id: str,
    services: Services = Depends(get_services),
    user_id: str = Depends(current_user_id),
):
    try:
        quiz = await services.catalog.get_owned(user_id, quiz_id)
        return {"success": True, "data": {"quiz": quiz}}
    except QuizRoomError:
        raise
    except Exception as e:
        logger.error(f"Get quiz error: {e}")
        raise HTTPException(500, "Failed to fetch quiz")


@app.put("/api/v1/quizzes/{quiz_id}")
async def update_quiz(
    quiz_id: str,
    data: QuizCreate,
    services: Services = Depends(get_services),
    user_id: str = Depends(current_user_id),
):
    try:
        quiz = await services.catalog.update_quiz(user_id, quiz_id, data)
        return {"success": True, "data": {"quiz": quiz}}
    except QuizRoomError:
        raise
    except Exception as e:
        logger.error(f"Update quiz error: {e}")
        raise HTTPException(500, "Failed to update quiz")


@app.delete("/api/v1/quizzes/{quiz_id}", status_code=204)
async def delete_quiz(
    quiz_id: str,
    services: Services = Depends(get_services),
    user_id: str = Depends(current_user_id),
):
    try:
        await services.catalog.delete_quiz(user_id, quiz_id)
    except QuizRoomError:
        raise
    except Exception as e:
        logger.error(f"Delete error: {e}")
        raise HTTPException(500, "Failed to delete quiz")


# --------------------------------------------------------------- sessions


@app.post("/api/v1/quizzes/{quiz_id}/sessions", status_code=201)
async def start_session(
    quiz_id: str,
    services: Services = Depends(get_services),
    user_id: str = Depends(current_user_id),
):
    try:
        session = await services.lifecycle.start_session(quiz_id, user_id)
        return {"success": True, "data": {"session": session_view(session)}}
    except QuizRoomError:
        raise
    except Exception as e:
        logger.error(f"Start session error: {e}")
        raise HTTPException(500, "Failed to start session")


@app.get("/api/v1/quizzes/{quiz_id}/sessions")
async def list_sessions(
    quiz_id: str,
    services: Services = Depends(get_services),
    user_id: str = Depends(current_user_id),
):
    try:
        sessions = await services.lifecycle.list_sessions(quiz_id, user_id)
        return {"success": True, "data": {"sessions": sessions}}
    except QuizRoomError:
        raise
    except Exception as e:
        logger.error(f"List sessions error: {e}")
        raise HTTPException(500, "Failed to fetch sessions")


@app.get("/api/v1/quizzes/{quiz_id}/sessions/{session_id}")
async def get_session(
    quiz_id: str,
    session_id: str,
    services: Services = Depends(get_services),
    user_id: str = Depends(current_user_id),
):
    try:
        competitors = await services.lifecycle.session_overview(quiz_id, session_id, user_id)
        return {"success": True, "data": {"competitors": competitors}}
    except QuizRoomError:
        raise
    except Exception as e:
        logger.error(f"Get session error: {e}")
        raise HTTPException(500, "Failed to fetch session")


@app.patch("/api/v1/quizzes/{quiz_id}/sessions/{session_id}", status_code=204)
async def close_session(
    quiz_id: str,
    session_id: str,
    services: Services = Depends(get_services),
    user_id: str = Depends(current_user_id),
):
    try:
        await services.lifecycle.close_session(quiz_id, session_id, user_id)
    except QuizRoomError:
        raise
    except Exception as e:
        logger.error(f"Close session error: {e}")
        raise HTTPException(500, "Failed to close session")


@app.get("/api/v1/quizzes/{quiz_id}/sessions/{session_id}/results")
async def get_results(
    quiz_id: str,
    session_id: str,
    services: Services = Depends(get_services),
    user_id: str = Depends(current_user_id),
):
    try:
        results = await services.scoring.session_results(quiz_id, session_id, user_id)
        return {"success": True, "data": {"results": results}}
    except QuizRoomError:
        raise
    except Exception as e:
        logger.error(f"Results error: {e}")
        raise HTTPException(500, "Failed to fetch results")


@app.get("/api/v1/quizzes/{quiz_id}/sessions/{session_id}/analytics")
async def get_analytics(
    quiz_id: str,
    session_id: str,
    services: Services = Depends(get_services),
    user_id: str = Depends(current_user_id),
):
    try:
        analytics = await services.analytics.analyze(quiz_id, session_id, user_id)
        return {"success": True, "data": analytics}
    except QuizRoomError:
        raise
    except Exception as e:
        logger.error(f"Analytics error: {e}")
        raise HTTPException(500, "Failed to analyze session")


# ------------------------------------------------------------ competitors


@app.post("/api/v1/users/{user_id}/sessions")
async def join_by_code(
    user_id: str,
    data: JoinByCode,
    services: Services = Depends(get_services),
    caller_id: str = Depends(current_user_id),
):
    require_self(user_id, caller_id)
    try:
        session_id = await services.lifecycle.join_by_code(user_id, data.code)
        return {"success": True, "data": {"session": {"id": session_id}}}
    except QuizRoomError:
        raise
    except Exception as e:
        logger.error(f"Join error: {e}")
        raise HTTPException(500, "Failed to join quiz")


@app.get("/api/v1/users/{user_id}/sessions/{session_id}")
async def join_or_resume(
    user_id: str,
    session_id: str,
    services: Services = Depends(get_services),
    caller_id: str = Depends(current_user_id),
):
    require_self(user_id, caller_id)
    try:
        session = await services.ingestion.join_or_resume(session_id, user_id)
        return {"success": True, "data": {"session": session}}
    except QuizRoomError:
        raise
    except Exception as e:
        logger.error(f"Get questions error: {e}")
        raise HTTPException(500, "Failed to load quiz")


@app.patch("/api/v1/users/{user_id}/sessions/{session_id}", status_code=204)
async def finish_session(
    user_id: str,
    session_id: str,
    services: Services = Depends(get_services),
    caller_id: str = Depends(current_user_id),
):
    require_self(user_id, caller_id)
    try:
        await services.ingestion.finish_session(session_id, user_id)
    except QuizRoomError:
        raise
    except Exception as e:
        logger.error(f"Finish error: {e}")
        raise HTTPException(500, "Failed to finish quiz")


@app.get("/api/v1/users/{user_id}/sessions/{session_id}/results")
async def get_my_result(
    user_id: str,
    session_id: str,
    services: Services = Depends(get_services),
    caller_id: str = Depends(current_user_id),
):
    try:
        score = await services.scoring.single_result(session_id, user_id, caller_id)
        return {"success": True, "data": {"score": score}}
    except QuizRoomError:
        raise
    except Exception as e:
        logger.error(f"My result error: {e}")
        raise HTTPException(500, "Failed to fetch result")


# ============================================================================
# LIVE CHANNEL
# ============================================================================


@app.websocket("/ws/{session_id}")
async def websocket_endpoint(websocket: WebSocket, session_id: str):
    services: Services = websocket.app.state.services

    try:
        session = await services.store.find_session(session_id)
    except QuizRoomError as e:
        logger.error(f"WebSocket session lookup failed for {session_id}: {e}")
        await websocket.close(code=1011, reason="Session lookup failed")
        return
    if not session:
        await websocket.close(code=1008, reason="Session not found")
        return

    if not await services.manager.connect(websocket, session_id):
        return

    try:
        while True:
            try:
                data = await asyncio.wait_for(
                    websocket.receive_text(), timeout=services.config.WS_TIMEOUT_SEC
                )
            except asyncio.TimeoutError:
                await websocket.send_json({"type": "ping"})
                continue

            try:
                msg = json.loads(data)
            except (json.JSONDecodeError, ValueError):
                continue
            if not isinstance(msg, dict):
                continue

            await services.live.handle(websocket, session_id, msg)

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: {session_id}")
    except Exception as e:
        logger.error(f"WebSocket error: {e}", exc_info=True)
    finally:
        await services.manager.disconnect(websocket, session_id)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "quizroom.server:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        log_level="info",
        loop="asyncio" if sys.platform == "win32" else "uvloop",
        ws_ping_interval=config.WS_HEARTBEAT_SEC,
        ws_ping_timeout=config.WS_TIMEOUT_SEC,
    )
