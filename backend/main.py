"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import ledger, statements
from database import init_db
from logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create missing tables on startup."""
    init_db()
    logger.info("Database ready")
    yield


app = FastAPI(
    title="Statement Ledger",
    description="Brokerage statement import into per-owner stock and option lot ledgers",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS configuration for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(statements.router)
app.include_router(ledger.router)


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}
