import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatsync.core.config import settings
from chatsync.core.database import init_db
from chatsync.core.logging_config import setup_logging
from chatsync.api import chat
from chatsync.services.container import build_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_level, settings.log_file)
    # Tests install their own services before the app starts
    if getattr(app.state, "services", None) is None:
        await init_db()
        app.state.services = build_services()
    logger.info("%s ready (completion backend: %s)", settings.app_name, settings.completion_base_url)
    yield


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["*"],
)

app.include_router(chat.router)


@app.get("/api/health")
async def health_check():
    return {"status": "ok"}
