"""REST API module for the card vault inventory service.

This module provides HTTP endpoints for:
- Inventory escrow actions (lock, unlock, lane routing, sale completion)
- Integrity checks and operator repairs
- Card instance lookups and inventory statistics
- System health monitoring
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

# Lifecycle management
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    logger.info("Initializing API...")
    # Database setup is handled in __main__.py
    yield
    logger.info("Shutting down API...")

# Create FastAPI app
app = FastAPI(
    title="Card Vault Inventory API",
    description="Inventory escrow and sale-lane API for the card vault marketplace",
    version=API_VERSION,
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, replace with specific origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.get("/")
async def root():
    return {
        "name": "Card Vault Inventory API",
        "version": API_VERSION,
        "status": "running"
    }

# Import and include all routers
from .escrow import router as escrow_router
from .inventory import router as inventory_router
from .system import router as system_router

app.include_router(escrow_router)
app.include_router(inventory_router)
app.include_router(system_router)
