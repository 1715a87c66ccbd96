"""
Repayment plan and full-engine API endpoints.
"""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field
from typing import List, Optional

from cashflow_planner.api.timeline import (
    CashFlowResponse,
    TimelineInput,
    WeekResponse,
    timeline_state,
    week_response,
)
from cashflow_planner.api.valuation import ValuationResponse, valuation_response
from cashflow_planner.calculations import cashflow, irr
from cashflow_planner.calculations.engine import recompute
from cashflow_planner.calculations.plan import (
    PlanRequest,
    SuggestedPlan,
    parse_buffer_policy,
    plan_export_rows,
)
from cashflow_planner.config import get_settings

router = APIRouter()
settings = get_settings()


class PlanInput(TimelineInput):
    """Timeline plus the plan settings."""

    investment: float
    target_irr: float = settings.default_target_irr
    installment_count: int = settings.default_installment_count
    buffer_policy: str = "none"
    investment_week_index: int = Field(0, ge=0)
    first_repayment_week_index: Optional[int] = Field(None, ge=0)
    discount_rate: float = Field(settings.default_discount_rate, gt=-1)


class PlanResponse(BaseModel):
    """Suggested schedule with the IRR it achieves."""

    schedule: List[float]
    achieved_irr: Optional[float]
    achieved_irr_display: str
    total_scheduled: float
    buffer_weeks: int
    warnings: List[str]
    weeks: List[WeekResponse]
    export_rows: List[dict]


class EngineResponse(CashFlowResponse):
    """Full recomputation: timeline, valuation and plan."""

    valuation: Optional[ValuationResponse] = None
    plan: Optional[PlanResponse] = None


def _plan_request(inputs: PlanInput) -> PlanRequest:
    try:
        buffer_weeks = parse_buffer_policy(inputs.buffer_policy)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return PlanRequest(
        investment=inputs.investment,
        target_irr=inputs.target_irr,
        installment_count=inputs.installment_count,
        buffer_weeks=buffer_weeks,
        investment_week_index=inputs.investment_week_index,
        first_repayment_week_index=inputs.first_repayment_week_index,
    )


def _plan_response(plan: SuggestedPlan, request: PlanRequest, discount_rate: float) -> PlanResponse:
    return PlanResponse(
        schedule=[round(amount, 2) for amount in plan.schedule],
        achieved_irr=irr.nan_to_none(plan.achieved_irr),
        achieved_irr_display=irr.format_rate(plan.achieved_irr),
        total_scheduled=round(plan.total_scheduled, 2),
        buffer_weeks=request.buffer_weeks,
        warnings=plan.warnings,
        weeks=[week_response(slot) for slot in plan.weeks],
        export_rows=plan_export_rows(plan, request.investment_week_index, discount_rate),
    )


@router.post("/plan", response_model=PlanResponse)
async def calculate_plan(inputs: PlanInput):
    """Suggest a repayment schedule for a target IRR."""
    request = _plan_request(inputs)
    result = recompute(timeline_state(inputs, plan_request=request))
    return _plan_response(result.plan, request, inputs.discount_rate)


@router.post("/engine", response_model=EngineResponse)
async def run_engine(inputs: PlanInput):
    """Recompute the timeline, the valuation of entered repayments and a plan."""
    request = _plan_request(inputs)
    result = recompute(
        timeline_state(
            inputs,
            discount_rate=inputs.discount_rate,
            investment=inputs.investment,
            investment_week_index=inputs.investment_week_index,
            plan_request=request,
        )
    )

    return EngineResponse(
        weeks=[week_response(slot) for slot in result.weeks],
        rows=cashflow.cash_flow_table(result.rows, result.weeks),
        monthly=result.monthly,
        top_rows=result.top_rows,
        negative_weeks=result.negative_weeks,
        warnings=result.warnings,
        valuation=valuation_response(result.valuation) if result.valuation else None,
        plan=_plan_response(result.plan, request, inputs.discount_rate),
    )
