"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pixellite.api.routes import router
from pixellite.config import CORS_ORIGINS, logger as config_logger
from pixellite.db import init_db

logging.getLogger("uvicorn").setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    config_logger.info("PixelLite API started")
    yield
    config_logger.info("PixelLite API shutting down")


app = FastAPI(
    title="PixelLite API",
    description="Compress and enhance photos, keep a local history and back it up to WebDAV.",
    version="1.0.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if CORS_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    from pixellite.config import HOST, PORT
    uvicorn.run("pixellite.main:app", host=HOST, port=PORT, reload=True)
