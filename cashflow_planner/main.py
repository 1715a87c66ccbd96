"""
Main FastAPI application entry point.
"""

import logging

from fastapi import FastAPI

from cashflow_planner.config import get_settings
from cashflow_planner.api import router as api_router

settings = get_settings()

logging.basicConfig(level=settings.log_level)

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Weekly cash-flow timeline, valuation and repayment planning",
    version="0.1.0",
    debug=settings.debug,
)

# Include API routes
app.include_router(api_router, prefix="/api")


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    return {"status": "healthy", "version": "0.1.0"}
