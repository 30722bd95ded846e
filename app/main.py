import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.cache import cache
from app.config import settings
from app.errors import install_error_handlers
from app.middleware import RequestContextMiddleware
from app.routers import metrics, posts, users

logger = logging.getLogger(__name__)


def configure_logging(level: str = settings.LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    configure_logging()
    try:
        await cache.connect()
    except Exception as exc:
        # Reads fall through to the database while Redis is down.
        logger.warning("Cache unavailable at startup: %s", exc)
    yield
    # Shutdown
    await cache.disconnect()

app = FastAPI(
    title="Posts API",
    description="Users and posts CRUD backed by SQLAlchemy with a Redis cache-aside layer",
    version="1.0.0",
    lifespan=lifespan,
)

install_error_handlers(app)

# Middleware
app.add_middleware(RequestContextMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(users.router)
app.include_router(posts.router)
app.include_router(metrics.router)

@app.get("/health")
async def health():
    return {"status": "healthy", "version": "1.0.0"}
