"""
encodeflow HTTP service: job control over the orchestrator.

Run with:
    uvicorn encodeflow.main:create_app --factory
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from . import __version__
from .orchestrator import Orchestrator, get_orchestrator
from .routes import control

logger = logging.getLogger(__name__)


def create_app(orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    """
    Build the FastAPI app around an orchestrator.

    With no orchestrator the process-wide one (configured from the
    environment) is used. The orchestrator is shut down with the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("[Service] Shutting down orchestrator")
        app.state.orchestrator.shutdown()

    app = FastAPI(title="encodeflow", version=__version__, lifespan=lifespan)
    app.state.orchestrator = orchestrator or get_orchestrator()
    app.include_router(control.router)

    @app.get("/")
    def root():
        return {"service": "encodeflow", "status": "running"}

    @app.get("/health")
    def health():
        jobs = app.state.orchestrator.list_jobs()
        return {
            "status": "ok",
            "concurrency_limit": app.state.orchestrator.concurrency_limit,
            "jobs": len(jobs),
        }

    return app
