from contextlib import asynccontextmanager
from datetime import datetime
import logging

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware

# Load environment variables as early as possible
load_dotenv()

from .core.config import settings
from .database import create_db_and_tables
from .dependencies import get_governor, get_upload_manager
from .exceptions import MediaError, http_exception_handler, media_exception_handler
from .middleware import ErrorHandlingMiddleware, LoggingMiddleware, RequestSizeLimitMiddleware, SecurityMiddleware
from .routers import admin_images_router, images_router

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format=settings.LOG_FORMAT
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info(f"Starting {settings.APP_NAME}...")
    app.state.db_init_ok = True
    app.state.db_init_error = None
    try:
        create_db_and_tables()
        logger.info("Database initialized successfully")
    except Exception as e:
        # Do not crash the app; report via health endpoint
        app.state.db_init_ok = False
        app.state.db_init_error = str(e)
        logger.exception("Database initialization failed")

    governor = get_governor()
    uploads = get_upload_manager()
    if settings.ENABLE_MEMORY_MONITORING:
        await governor.start()
    await uploads.start()
    yield
    # Shutdown
    logger.info(f"Shutting down {settings.APP_NAME}...")
    await uploads.stop()
    await governor.stop()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    docs_url=("/docs" if settings.DOCS_ENABLED else None),
    redoc_url=("/redoc" if settings.DOCS_ENABLED else None),
    openapi_url=("/openapi.json" if settings.DOCS_ENABLED else None)
)

app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(MediaError, media_exception_handler)

app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(LoggingMiddleware)
app.add_middleware(SecurityMiddleware)
app.add_middleware(RequestSizeLimitMiddleware)

# GZip compression
app.add_middleware(GZipMiddleware, minimum_size=settings.GZIP_MIN_SIZE)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["ETag", "X-Image-Variant", "X-Image-Fallback"],
)

app.include_router(images_router.router)
app.include_router(admin_images_router.router)


@app.get("/health")
def health_check():
    governor = get_governor()
    state = governor.last_state
    return {
        "status": "healthy" if getattr(app.state, "db_init_ok", True) else "degraded",
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.utcnow().isoformat(),
        "memory_pressure": state.pressure.value if state else None,
        "active_upload_sessions": get_upload_manager().active_count,
        "database_error": getattr(app.state, "db_init_error", None),
    }


@app.get("/")
def root():
    return {"service": settings.APP_NAME, "version": settings.APP_VERSION}
