import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI

from keypool_app.db import init_db_runtime
from keypool_app.routers import admin_router
from keypool_app.settings import (
    get_quota_timezone,
    get_upstream_timeout_seconds,
    validate_settings,
)
from keypool_app.store import SqlPersistence, load_engine_state
from keypool_app.upstream import GeminiUpstream
from keypool_library import DailyClock, KeyPoolEngine
from keypool_library.failure_logger import configure_failure_logger

# Configure logging
logging.basicConfig(level=logging.INFO)

# Load environment variables from .env file
load_dotenv()


def get_root_dir() -> Path:
    return Path(os.getenv("KEYPOOL_ROOT_DIR") or Path.cwd())


# --- Lifespan Management ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the key pool engine from the database and hold it for the app's lifetime."""
    validate_settings()
    root_dir = get_root_dir()

    db_engine, session_maker = await init_db_runtime(root_dir)
    engine = KeyPoolEngine(
        persistence=SqlPersistence(session_maker),
        clock=DailyClock(get_quota_timezone()),
    )
    engine.restore(await load_engine_state(session_maker))
    configure_failure_logger(str(root_dir / "logs"))

    http_client = httpx.AsyncClient(timeout=get_upstream_timeout_seconds())
    app.state.engine = engine
    app.state.upstream = GeminiUpstream(http_client)
    logging.info("Key pool ready with %d keys", len(engine.pool))
    try:
        yield
    finally:
        await http_client.aclose()
        await db_engine.dispose()
        logging.info("Key pool shut down.")


def create_app() -> FastAPI:
    app = FastAPI(lifespan=lifespan)
    app.include_router(admin_router)

    @app.get("/")
    def read_root():
        return {"Status": "Gemini key pool proxy is running"}

    return app


app = create_app()
