"""
API routes for the cash flow planner.
"""

from fastapi import APIRouter

from cashflow_planner.api import timeline, valuation, plans

router = APIRouter()

# Include sub-routers
router.include_router(timeline.router, prefix="/calculate", tags=["timeline"])
router.include_router(valuation.router, prefix="/calculate", tags=["valuation"])
router.include_router(plans.router, prefix="/calculate", tags=["plans"])
