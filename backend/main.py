import os # os needs to be imported before dotenv for getenv to work as expected in some cases
from dotenv import load_dotenv
load_dotenv() # Load .env file at the very beginning

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pharmalink import config
from pharmalink.db import init_db, ensure_indexes
from pharmalink.routes import users, requests, chats, uploads, notifications, admin, health, live
from pharmalink.services.broadcast import start_broadcast_engine, stop_broadcast_engine
from pharmalink.services.expiry_sweeper import start_expiry_sweeper, stop_expiry_sweeper
import logging
from pharmalink.middleware.rate_limiter import RateLimiterMiddleware
from pharmalink.middleware.error_handler import ErrorHandlerMiddleware

# Configure logging
logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


app = FastAPI(
    title="PharmaLink API",
    description="Matches customers looking for medicine with nearby pharmacies in real time",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

@app.on_event("startup")
async def startup_event():
    """Initialize services on startup"""
    await ensure_indexes()
    await start_expiry_sweeper()
    await start_broadcast_engine()
    logger.info("Application startup completed")

@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup services on shutdown"""
    await stop_broadcast_engine()
    await stop_expiry_sweeper()
    logger.info("Application shutdown completed")

# CORS: an explicit origin list is required when allow_credentials=True.
# Multiple origins can be provided via the CORS_ORIGINS environment variable, comma-separated.
logger.info(f"Configuring CORS for origins: {config.CORS_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Per-IP rate limiting (RATE_LIMIT / RATE_LIMIT_WINDOW / REDIS_URL)
app.add_middleware(RateLimiterMiddleware)

# Add error handler middleware (after CORS so errors get CORS headers)
app.add_middleware(ErrorHandlerMiddleware)

# Initialize Database
init_db(app)

# Uploaded prescription and chat images
os.makedirs(config.UPLOAD_DIR, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=config.UPLOAD_DIR), name="uploads")

# Include health check routes (comprehensive monitoring)
app.include_router(health.router, tags=["Health"])
app.include_router(live.router, tags=["Live"])

@app.get("/")
async def root():
    return {
        "message": "Welcome to PharmaLink API",
        "docs": "/docs",
        "health": "/health"
    }

# Include routers with proper /api prefix
app.include_router(users.router, prefix="/api/users", tags=["Users"])
app.include_router(requests.router, prefix="/api/requests", tags=["Requests"])
app.include_router(chats.router, prefix="/api/chats", tags=["Chats"])
app.include_router(uploads.router, prefix="/api/uploads", tags=["Uploads"])
app.include_router(notifications.router, prefix="/api/notifications", tags=["Notifications"])
app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
