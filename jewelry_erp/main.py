from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

# Import database components
from jewelry_erp.database.database import engine, Base

# Import routers
from jewelry_erp.modules.recurring.router import router as recurring_router
from jewelry_erp.modules.batches.router import router as batches_router

# Import models for table creation
import jewelry_erp.modules.customers.models
import jewelry_erp.modules.invoices.models
import jewelry_erp.modules.recurring.models
import jewelry_erp.modules.batches.models

from jewelry_erp.core.config import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.ENVIRONMENT == "production" else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title=f"{settings.BUSINESS_NAME} API",
    description="Recurring invoicing and batch operations for the jewelry ERP",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Add your frontend URLs
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(recurring_router)
app.include_router(batches_router)

# Create database tables (only for development - use migrations in production)
if settings.ENVIRONMENT == "development":
    Base.metadata.create_all(bind=engine)

@app.get("/")
async def read_root():
    return {
        "message": f"{settings.BUSINESS_NAME} API is running",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }

@app.get("/health")
async def health_check():
    return {"status": "healthy", "environment": settings.ENVIRONMENT}

@app.on_event("startup")
async def startup_event():
    logger.info(f"{settings.BUSINESS_NAME} API starting up...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug mode: {settings.DEBUG}")

@app.on_event("shutdown")
async def shutdown_event():
    logger.info(f"{settings.BUSINESS_NAME} API shutting down...")
