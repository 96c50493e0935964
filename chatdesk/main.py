import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatdesk.config import settings
from chatdesk.database import SessionLocal
from chatdesk.logging_config import get_logger, setup_logging
from chatdesk.routers import ai, conversations, queues, webhook
from chatdesk.services.container import build_services

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="Chatdesk API",
    description="WhatsApp Business inbox with queued AI replies",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(queues.router)
app.include_router(conversations.router)
app.include_router(ai.router)


def _queue_workers_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.queue_workers_enabled


@app.on_event("startup")
async def start_services() -> None:
    services = build_services(settings, SessionLocal)
    app.state.services = services
    if _queue_workers_enabled():
        await services.queue_manager.start()
    logger.info("Services started", extra={"context": {"queues": services.queue_manager.queue_names()}})


@app.on_event("shutdown")
async def stop_services() -> None:
    services = getattr(app.state, "services", None)
    if services is None:
        return
    await services.queue_manager.stop()
    app.state.services = None


@app.get("/health")
async def health():
    return {"status": "ok"}
