"""
Valuation API endpoints.

NPV, IRR and discounted payback for an explicit list of dated cash flows.
An IRR that cannot be determined is returned as null with "n/a" for display.
"""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field
from typing import List, Optional
import datetime

from cashflow_planner.calculations import irr
from cashflow_planner.config import get_settings

router = APIRouter()
settings = get_settings()


class CashflowPointInput(BaseModel):
    """A dated, signed cash flow (negative = outflow)."""

    date: datetime.date
    amount: float


class ValuationInput(BaseModel):
    """Input for NPV/IRR calculation."""

    cash_flows: List[CashflowPointInput] = Field(..., min_length=1)
    discount_rate: float = Field(settings.default_discount_rate, gt=-1)


class ValuationResponse(BaseModel):
    """Valuation summary; undefined figures are null."""

    npv: Optional[float]
    irr: Optional[float]
    irr_display: str
    payback_period: Optional[int]
    discounted_payback_period: Optional[int]
    payback_display: str
    total_invested: float
    total_returned: float
    multiple: Optional[float]
    profit: float
    remaining: float


def valuation_response(summary: irr.ValuationSummary) -> ValuationResponse:
    payback = summary.discounted_payback_period
    return ValuationResponse(
        npv=irr.nan_to_none(summary.npv),
        irr=irr.nan_to_none(summary.irr),
        irr_display=irr.format_rate(summary.irr),
        payback_period=summary.payback_period,
        discounted_payback_period=payback,
        payback_display=str(payback) if payback is not None else "not achieved",
        total_invested=round(summary.total_invested, 2),
        total_returned=round(summary.total_returned, 2),
        multiple=irr.nan_to_none(summary.multiple),
        profit=round(summary.profit, 2),
        remaining=round(summary.remaining, 2),
    )


@router.post("/valuation", response_model=ValuationResponse)
async def calculate_valuation(inputs: ValuationInput):
    """Calculate NPV, IRR and discounted payback for dated cash flows."""
    ordered = sorted(inputs.cash_flows, key=lambda point: point.date)
    if ordered[0].amount >= 0:
        raise HTTPException(
            status_code=400,
            detail="The earliest cash flow must be the (negative) investment",
        )

    series = [irr.CashflowPoint(point.date, point.amount) for point in ordered]
    return valuation_response(irr.summarize_valuation(series, inputs.discount_rate))
