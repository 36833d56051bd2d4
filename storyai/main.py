# storyai/main.py
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storyai.core import config
from storyai.core.errors import ConfigurationError, PersistenceError, TransportError
from storyai.api.routers.health import router as health_router
from storyai.api.routers.ai import router as ai_router
from storyai.services.generation import GenerationService
from storyai.services.settings_store import build_settings_store

logger = logging.getLogger(__name__)


async def _configuration_error(request: Request, exc: ConfigurationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


async def _upstream_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("upstream failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@asynccontextmanager
async def lifespan(app: FastAPI):
    await app.state.generation_service.initialize()
    yield


def create_app(service: Optional[GenerationService] = None) -> FastAPI:
    logging.basicConfig(level=config.LOG_LEVEL)
    app = FastAPI(title="StoryAI Generation Server", version="0.1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # one GenerationService per app, shared through app.state and injected with Depends()
    app.state.generation_service = service or GenerationService(build_settings_store())

    app.add_exception_handler(ConfigurationError, _configuration_error)
    app.add_exception_handler(PersistenceError, _upstream_error)
    app.add_exception_handler(TransportError, _upstream_error)

    app.include_router(health_router)
    app.include_router(ai_router)

    return app


app = create_app()
