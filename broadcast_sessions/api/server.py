"""
Broadcast sessions API server.

Restores the finalize job from its persisted state on startup and halts it
(without changing that state) on shutdown.

Usage:
    python -m broadcast_sessions.api.server
"""
from contextlib import asynccontextmanager
import logging

import uvicorn
from fastapi import FastAPI

from broadcast_sessions.automation.finalize_sessions import FinalizeSessionsJob
from broadcast_sessions.database.session import get_session, init_db
from broadcast_sessions.services.summarizer import SummaryService
from broadcast_sessions.utils.config import load_config
from broadcast_sessions.utils.logger import configure_noise_suppression, setup_pipeline_logging
from .endpoints import create_api

logger = logging.getLogger(__name__)


def build_app(config=None) -> FastAPI:
    config = config or load_config()
    summarizer = SummaryService(config=config)
    job = FinalizeSessionsJob(session_factory=get_session, summarizer=summarizer, config=config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown"""
        init_db()
        await job.restore()
        logger.info(f"Finalize job restored: running={job.is_running}, paused={job.is_paused}")
        yield
        await job.halt()
        await summarizer.close()
        logger.info("Shutting down broadcast sessions API")

    app = FastAPI(
        title="Broadcast Sessions API",
        description="Broadcast session reconstruction, rollups and finalization",
        version="0.1.0",
        lifespan=lifespan,
    )
    return create_api(session_factory=get_session, job=job, config=config, app=app)


def main():
    setup_pipeline_logging()
    configure_noise_suppression()
    config = load_config()
    api_config = config.get('api', {})
    uvicorn.run(
        build_app(config),
        host=api_config.get('host', '0.0.0.0'),
        port=int(api_config.get('port', 8010)),
        log_level="info"
    )


if __name__ == "__main__":
    main()
