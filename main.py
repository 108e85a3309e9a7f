from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from contextlib import asynccontextmanager
import uvicorn
import logging
from dotenv import load_dotenv

# Load environment variables from .env file FIRST, before any other imports
load_dotenv()

# Set SQLAlchemy engine logging to WARNING level to reduce query log noise
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

from config import settings
from app.api.endpoints.tiss import (
    operadoras_router,
    guias_router,
    lotes_router,
    glosas_router,
    certificate_router,
    xml_tools_router,
)
from app.core.error_handling import (
    AppException,
    app_exception_handler,
    general_exception_handler,
    validation_exception_handler,
)
from app.core.monitoring import init_sentry

logger = logging.getLogger(__name__)


def get_cors_origins():
    """Get CORS origins from settings"""
    return [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    logger.info(f"{settings.APP_NAME} starting up ({settings.ENVIRONMENT})")
    if init_sentry():
        logger.info("Sentry monitoring initialized")

    yield

    logger.info(f"{settings.APP_NAME} shutting down")


app = FastAPI(
    title=settings.APP_NAME,
    description="TISS billing protocol engine: guias, lotes, glosas and digital signature",
    version=settings.APP_VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    max_age=3600,
)

app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, general_exception_handler)

# API Version 1 - All endpoints under /api/v1
API_V1_PREFIX = settings.API_V1_PREFIX
app.include_router(operadoras_router, prefix=API_V1_PREFIX)
app.include_router(guias_router, prefix=API_V1_PREFIX)
app.include_router(lotes_router, prefix=API_V1_PREFIX)
app.include_router(glosas_router, prefix=API_V1_PREFIX)
app.include_router(certificate_router, prefix=API_V1_PREFIX)
app.include_router(xml_tools_router, prefix=API_V1_PREFIX)


@app.get("/")
async def root():
    return {
        "message": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": settings.APP_NAME, "version": settings.APP_VERSION}


@app.get(f"{API_V1_PREFIX}/health")
async def api_health_check():
    return {"status": "healthy", "service": settings.APP_NAME, "version": settings.APP_VERSION}


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
