"""
Week timeline and cash-flow API endpoints.

These endpoints take the raw grid handed over by the spreadsheet parser and
return the week table and weekly cash-flow rows.
"""

from fastapi import APIRouter
from pydantic import BaseModel, Field
from typing import Annotated, Any, List, Literal, Optional, Union

from cashflow_planner.calculations import cashflow, weeks
from cashflow_planner.calculations.engine import ColumnMapping, EngineState, recompute
from cashflow_planner.calculations.repayments import Repayment, repayment_from_dict
from cashflow_planner.config import get_settings

router = APIRouter()
settings = get_settings()


class DateRepaymentInput(BaseModel):
    """Repayment on a calendar date."""

    type: Literal["date"]
    explicit_date: str
    amount: float


class WeekRepaymentInput(BaseModel):
    """Repayment against a week label."""

    type: Literal["week"]
    week: str
    amount: float


class UnifiedRepaymentInput(BaseModel):
    """Repayment with both a week index and its date."""

    type: Literal["unified"]
    explicit_date: Optional[str] = None
    week_index: Optional[int] = None
    amount: float


class FrequencyRepaymentInput(BaseModel):
    """Recurring repayment (monthly, quarterly or one-off)."""

    type: Literal["frequency"]
    frequency: str
    amount: float
    start_week_index: int = 0


RepaymentInput = Annotated[
    Union[DateRepaymentInput, WeekRepaymentInput, UnifiedRepaymentInput, FrequencyRepaymentInput],
    Field(discriminator="type"),
]


class MappingInput(BaseModel):
    """Grid location of the week labels and data (all bounds inclusive)."""

    label_row: int = Field(0, ge=0)
    first_column: int = Field(0, ge=0)
    last_column: int = Field(0, ge=0)
    first_data_row: int = Field(1, ge=0)
    last_data_row: int = Field(1, ge=0)
    excluded_columns: List[int] = []
    label_column: int = Field(0, ge=0)

    def to_mapping(self) -> ColumnMapping:
        return ColumnMapping(
            label_row=self.label_row,
            first_column=self.first_column,
            last_column=self.last_column,
            first_data_row=self.first_data_row,
            last_data_row=self.last_data_row,
            excluded_columns=tuple(self.excluded_columns),
            label_column=self.label_column,
        )


class TimelineInput(BaseModel):
    """Grid, mapping, opening balance and repayments."""

    grid: List[List[Any]]
    mapping: MappingInput
    base_year: int = settings.default_base_year
    opening_balance: float = 0.0
    repayments: List[RepaymentInput] = []


class WeekResponse(BaseModel):
    """One resolved week column."""

    index: int
    label: str
    date: str
    source_column: int
    synthetic: bool


class WeeksInput(BaseModel):
    """Header cells to resolve."""

    headers: List[Any]
    base_year: int = settings.default_base_year


class WeeksResponse(BaseModel):
    """Resolved week table."""

    weeks: List[WeekResponse]
    warnings: List[str]


class DetectMappingInput(BaseModel):
    """Raw grid to search for week labels."""

    grid: List[List[Any]]
    base_year: int = settings.default_base_year


class DetectMappingResponse(BaseModel):
    """Detected week-label row and column span, if any."""

    found: bool
    label_row: Optional[int] = None
    first_column: Optional[int] = None
    last_column: Optional[int] = None


class CashFlowResponse(BaseModel):
    """Weekly rows, monthly roll-up and balance warnings."""

    weeks: List[WeekResponse]
    rows: List[dict]
    monthly: List[dict]
    top_rows: List[dict]
    negative_weeks: List[int]
    warnings: List[str]


def week_response(slot: weeks.WeekSlot) -> WeekResponse:
    return WeekResponse(
        index=slot.index,
        label=slot.label,
        date=slot.date.isoformat(),
        source_column=slot.source_column,
        synthetic=slot.synthetic,
    )


def to_repayments(items: List[RepaymentInput]) -> List[Repayment]:
    """Convert request repayments into engine repayments."""
    return [repayment_from_dict(item.model_dump()) for item in items]


def timeline_state(inputs: TimelineInput, **extra) -> EngineState:
    """Engine state for a timeline request."""
    return EngineState(
        grid=inputs.grid,
        mapping=inputs.mapping.to_mapping(),
        base_year=inputs.base_year,
        opening_balance=inputs.opening_balance,
        repayments=tuple(to_repayments(inputs.repayments)),
        **extra,
    )


@router.post("/weeks", response_model=WeeksResponse)
async def resolve_weeks(inputs: WeeksInput):
    """Resolve header cells into dated weeks."""
    resolution = weeks.resolve_week_slots(inputs.headers, inputs.base_year)
    return WeeksResponse(
        weeks=[week_response(slot) for slot in resolution.slots],
        warnings=resolution.warnings,
    )


@router.post("/detect-mapping", response_model=DetectMappingResponse)
async def detect_mapping(inputs: DetectMappingInput):
    """Find the row and columns holding week labels."""
    mapping = weeks.detect_week_header(inputs.grid, inputs.base_year)
    if mapping is None:
        return DetectMappingResponse(found=False)
    return DetectMappingResponse(
        found=True,
        label_row=mapping.label_row,
        first_column=mapping.first_column,
        last_column=mapping.last_column,
    )


@router.post("/cashflows", response_model=CashFlowResponse)
async def calculate_cashflows(inputs: TimelineInput):
    """Calculate weekly income, expenditure, repayments and bank balance."""
    result = recompute(timeline_state(inputs))

    return CashFlowResponse(
        weeks=[week_response(slot) for slot in result.weeks],
        rows=cashflow.cash_flow_table(result.rows, result.weeks),
        monthly=result.monthly,
        top_rows=result.top_rows,
        negative_weeks=result.negative_weeks,
        warnings=result.warnings,
    )
