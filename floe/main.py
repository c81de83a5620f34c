import asyncio
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings
from .coordination import CoordinationService
from .rate_limiter import RateLimiter
from .registry import RoomRegistry

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def sweep_rate_limiter(limiter: RateLimiter, interval: float):
    while True:
        await asyncio.sleep(interval)
        removed = limiter.sweep()
        if removed:
            logger.debug(f"🧹 Forgot {removed} idle addresses")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    registry = RoomRegistry()
    service = CoordinationService(registry)
    limiter = RateLimiter(settings.rate_limit_max, settings.rate_limit_window)
    started_at = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = asyncio.create_task(sweep_rate_limiter(limiter, settings.rate_limit_sweep_interval))
        logger.info(f"🚀 Coordination service ready, allowed origins: {settings.allowed_origins}")
        try:
            yield
        finally:
            sweeper.cancel()

    app = FastAPI(title="floe coordination service", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.service = service
    app.state.limiter = limiter

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def liveness():
        """Liveness probe"""
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/health")
    async def health():
        return {"status": "healthy", "uptime": time.monotonic() - started_at}

    @app.get("/api/stats")
    async def stats():
        """Room and connection counts, no identifiers"""
        return registry.stats()

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Signaling endpoint: one connection per participant"""
        address = websocket.client.host if websocket.client else "unknown"
        if not limiter.hit(address):
            logger.warning(f"⛔ Too many connection attempts from {address}")
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        connection_id = str(uuid.uuid4())
        await websocket.accept()

        async def send(message: dict):
            await websocket.send_text(json.dumps(message))

        await service.connect(connection_id, send)

        try:
            while True:
                data = await websocket.receive_text()
                try:
                    message_data = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning(f"⚠️ Non-JSON frame from {connection_id}")
                    continue
                if not isinstance(message_data, dict):
                    logger.warning(f"⚠️ Non-object frame from {connection_id}")
                    continue

                logger.debug(f"📨 Received {message_data.get('type')} from {connection_id}")
                await service.handle_message(connection_id, message_data)

        except WebSocketDisconnect:
            logger.info(f"🔌 WebSocket disconnected: {connection_id}")
        except Exception as e:
            logger.error(f"❌ WebSocket error for {connection_id}: {e}")
        finally:
            await service.disconnect(connection_id)

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    settings = app.state.settings
    uvicorn.run("floe.main:app", host=settings.host, port=settings.port, ws_max_size=settings.max_message_size)
