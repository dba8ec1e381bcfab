"""
Application entrypoint: FastAPI app with the /api router and a
process-local concentration cache.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from mood_pharma.api.routes import router
from mood_pharma.config import LOG_LEVEL, PK_CACHE_MAX_ENTRIES, PK_CACHE_TTL_SEC
from mood_pharma.core.database import init_db
from mood_pharma.core.pk_cache import ConcentrationCache
from mood_pharma.core.pk_engine import ComputationCancelled, InvalidParameterError

logger = logging.getLogger("pk.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting mood-pharma core...")
    init_db()
    yield
    logger.info("Shutting down, cache stats: %s", app.state.pk_cache.stats())


async def invalid_parameter_handler(request: Request, exc: InvalidParameterError):
    return JSONResponse(status_code=422, content={"detail": str(exc), "field": exc.field})


async def cancelled_handler(request: Request, exc: ComputationCancelled):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


def create_app(cache: ConcentrationCache = None) -> FastAPI:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    app = FastAPI(
        title="Mood/Pharma Core",
        description="PK concentration engine, medication-mood insights and sleep analytics",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.pk_cache = cache or ConcentrationCache(PK_CACHE_MAX_ENTRIES, PK_CACHE_TTL_SEC)
    app.add_exception_handler(InvalidParameterError, invalid_parameter_handler)
    app.add_exception_handler(ComputationCancelled, cancelled_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("mood_pharma.main:app", host="0.0.0.0", port=8000)
