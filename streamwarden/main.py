from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from .core.config import settings
from .core.database import engine
from .core.pubsub import get_pubsub_service
from .models import Base
from .api.routes import events, poller
from .services.cache_service import get_cache_service
from .services.session_poller import initialize_poller, start_poller, stop_poller

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# Create database tables
Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    cache_service = get_cache_service()
    pubsub_service = get_pubsub_service()
    await pubsub_service.connect()

    initialize_poller(cache_service, pubsub_service)
    await start_poller(enabled=settings.poller_enabled, interval_ms=settings.poll_interval_ms)
    logging.info("Started session poller")

    yield

    # Let the in-flight cycle finish before closing connections
    await stop_poller()
    logging.info("Stopped session poller")

    await pubsub_service.close()
    await cache_service.close()


app = FastAPI(
    title="StreamWarden",
    description="Session tracking for Plex, Jellyfin and Emby servers",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(poller.router, prefix="/api/poller", tags=["Poller"])
app.include_router(events.router, prefix="/api", tags=["Events"])


@app.get("/")
async def root():
    return {"message": "StreamWarden API", "version": "1.0.0"}


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
