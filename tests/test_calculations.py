"""
Tests for valuation, plan synthesis and the recompute engine.
"""

import math

import pytest
from datetime import date

from cashflow_planner.calculations.cashflow import CashFlowRow
from cashflow_planner.calculations.engine import ColumnMapping, EngineState, recompute
from cashflow_planner.calculations.irr import (
    CashflowPoint,
    build_cashflow_series,
    calculate_discounted_payback,
    calculate_multiple,
    calculate_profit,
    calculate_xirr,
    calculate_xnpv,
    format_rate,
    nan_to_none,
    summarize_valuation,
)
from cashflow_planner.calculations.plan import (
    PlanContext,
    PlanRequest,
    parse_buffer_policy,
    plan_export_rows,
    synthesize_plan,
)
from cashflow_planner.calculations.repayments import DateRepayment
from cashflow_planner.calculations.weeks import resolve_week_slots


def _context(slots, balances):
    """Plan context with the given closing balance per week."""
    rows = [
        CashFlowRow(i, 0.0, 0.0, 0.0, balance, balance)
        for i, balance in enumerate(balances)
    ]
    return PlanContext(slots=slots, rows=rows, base_year=2025)


def _flush_context(slots):
    return _context(slots, [1_000_000.0] * len(slots))


class TestXIRR:
    """Test date-accurate IRR."""

    def test_one_year_ten_percent(self):
        """Test -100 then +110 one year later is about 10%."""
        series = [
            CashflowPoint(date(2025, 1, 1), -100),
            CashflowPoint(date(2026, 1, 1), 110),
        ]
        assert abs(calculate_xirr(series) - 0.10) < 0.001

    def test_quarterly_repayments(self):
        """Test 120,000 repaid as 3 x 40,000 plus 15,000."""
        series = build_cashflow_series(
            120000,
            date(2025, 1, 6),
            [
                (date(2025, 4, 7), 40000),
                (date(2025, 7, 7), 40000),
                (date(2025, 10, 6), 40000),
                (date(2026, 1, 5), 15000),
            ],
        )
        irr = calculate_xirr(series)
        assert math.isfinite(irr)
        assert irr > 0
        assert abs(calculate_xnpv(series, irr)) < 1e-3

    def test_negative_returns(self):
        """Test repaying less than was invested gives a negative IRR."""
        series = [
            CashflowPoint(date(2025, 1, 1), -100),
            CashflowPoint(date(2026, 1, 1), 40),
            CashflowPoint(date(2027, 1, 1), 40),
            CashflowPoint(date(2028, 1, 1), 10),
        ]
        assert calculate_xirr(series) < 0

    def test_undefined_irr_is_nan(self):
        """Test series with no sign change or no repayments."""
        start = date(2025, 1, 1)
        assert math.isnan(calculate_xirr([CashflowPoint(start, -100)]))
        assert math.isnan(
            calculate_xirr([CashflowPoint(start, 100), CashflowPoint(date(2026, 1, 1), 50)])
        )
        assert math.isnan(
            calculate_xirr([CashflowPoint(start, -100), CashflowPoint(date(2026, 1, 1), -50)])
        )


class TestValuation:
    """Test NPV, payback and summary figures."""

    @pytest.fixture
    def series(self):
        return build_cashflow_series(
            100, date(2025, 1, 1), [(date(2027, 1, 1), 60), (date(2026, 1, 1), 60)]
        )

    def test_series_is_sorted_with_investment_first(self, series):
        assert series[0].amount == -100
        assert [p.date for p in series] == sorted(p.date for p in series)

    def test_repayment_before_investment_raises(self):
        with pytest.raises(ValueError):
            build_cashflow_series(100, date(2025, 6, 1), [(date(2025, 1, 1), 50)])

    def test_xnpv(self, series):
        assert calculate_xnpv(series, 0.0) == pytest.approx(20.0)
        assert calculate_xnpv(series, 0.10) < calculate_xnpv(series, 0.05)
        assert calculate_xnpv([], 0.1) == 0.0

    def test_discounted_payback(self, series):
        assert calculate_discounted_payback(series, 0.0) == 2
        assert calculate_discounted_payback(series, 0.5) is None

    def test_multiple_and_profit(self, series):
        assert calculate_multiple(series) == pytest.approx(1.2)
        assert calculate_profit(series) == pytest.approx(20.0)
        assert math.isnan(calculate_multiple([CashflowPoint(date(2025, 1, 1), 10)]))

    def test_summary(self, series):
        summary = summarize_valuation(series, 0.05)
        assert summary.total_invested == 100
        assert summary.total_returned == 120
        assert summary.irr > 0.05
        assert summary.npv > 0

    def test_undiscounted_payback_and_remaining(self, series):
        summary = summarize_valuation(series, 0.5)
        assert summary.payback_period == 2
        assert summary.discounted_payback_period is None
        assert summary.remaining == pytest.approx(-20.0)

    def test_rate_at_or_below_minus_one(self):
        """Test discounting at -100% or lower is undefined rather than an error."""
        series = build_cashflow_series(100, date(2025, 1, 1), [(date(2026, 1, 1), 10)])
        for rate in (-1.0, -1.5):
            summary = summarize_valuation(series, rate)
            assert math.isnan(summary.npv)
            assert summary.discounted_payback_period is None
            assert summary.remaining == pytest.approx(90.0)

    def test_display_helpers(self):
        assert format_rate(0.1234) == "12.34%"
        assert format_rate(math.nan) == "n/a"
        assert format_rate(None) == "n/a"
        assert nan_to_none(math.nan) is None
        assert nan_to_none(0.0) == 0.0


class TestBufferPolicy:
    """Test buffer policy parsing."""

    def test_named_policies(self):
        assert parse_buffer_policy("none") == 0
        assert parse_buffer_policy("2weeks") == 2
        assert parse_buffer_policy("1month") == 4
        assert parse_buffer_policy("2months") == 8
        assert parse_buffer_policy("Quarter") == 13
        assert parse_buffer_policy(None) == 0

    def test_custom_policy(self):
        assert parse_buffer_policy("custom:6") == 6
        assert parse_buffer_policy("Custom: 3 weeks") == 3

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            parse_buffer_policy("fortnightly")


class TestSynthesizePlan:
    """Test the repayment plan walk."""

    def test_hits_target_irr(self, weekly_slots):
        """Test 12 installments returning 20% land within 1pp of the target."""
        request = PlanRequest(investment=100000, target_irr=0.20, installment_count=12)
        plan = synthesize_plan(request, _flush_context(weekly_slots))

        assert len(plan.payments) == 12
        assert plan.total_scheduled == pytest.approx(120000)
        assert all(amount == pytest.approx(10000) for _, amount in plan.payments)
        assert abs(plan.achieved_irr - 0.20) <= 0.01
        assert plan.warnings == []

    def test_unreachable_buffer(self):
        """Test a 52-week buffer on a 20-week sheet."""
        slots = resolve_week_slots([f"W{n}" for n in range(2, 22)], 2025).slots
        request = PlanRequest(
            investment=100000, target_irr=0.10, installment_count=12, buffer_weeks=52
        )
        plan = synthesize_plan(request, _flush_context(slots))

        weeks = [week for week, _ in plan.payments]
        assert len(weeks) == 10
        assert weeks[0] == 1
        assert all(b - a == 52 for a, b in zip(weeks, weeks[1:]))
        assert len(plan.weeks) > len(slots)
        assert plan.weeks[-1].synthetic is True
        assert any("Stopped after 500 weeks" in w for w in plan.warnings)
        assert any("differs from" in w for w in plan.warnings)

    def test_buffer_is_respected(self, weekly_slots):
        request = PlanRequest(
            investment=1000, target_irr=0.10, installment_count=4, buffer_weeks=4
        )
        plan = synthesize_plan(request, _flush_context(weekly_slots))
        weeks = [week for week, _ in plan.payments]
        assert len(weeks) == 4
        assert all(b - a >= 4 for a, b in zip(weeks, weeks[1:]))

    def test_balance_never_goes_negative(self, weekly_slots):
        """Test scheduled repayments keep every projected balance non-negative."""
        balances = [500.0 * i for i in range(len(weekly_slots))]
        request = PlanRequest(
            investment=5000, target_irr=0.10, installment_count=5,
            first_repayment_week_index=1,
        )
        plan = synthesize_plan(request, _context(weekly_slots, balances))

        assert plan.payments
        for week, balance in enumerate(balances):
            assert balance - sum(plan.schedule[: week + 1]) >= -1e-6

    def test_partial_payment_when_balance_is_tight(self, weekly_slots):
        """Test the 90%, 80%, ... fallback when a full installment does not fit."""
        request = PlanRequest(
            investment=10000, target_irr=0.20, installment_count=2,
            first_repayment_week_index=1,
        )
        plan = synthesize_plan(request, _context(weekly_slots, [5000.0] * len(weekly_slots)))

        assert len(plan.payments) == 1
        assert plan.payments[0][0] == 1
        assert plan.payments[0][1] == pytest.approx(4800)
        assert any("unscheduled" in w for w in plan.warnings)

    def test_existing_negative_balance_blocks_earlier_weeks(self, weekly_slots):
        balances = [1_000_000.0] * len(weekly_slots)
        balances[5] = -100.0
        request = PlanRequest(
            investment=1000, target_irr=0.10, installment_count=4,
            first_repayment_week_index=1,
        )
        plan = synthesize_plan(request, _context(weekly_slots, balances))

        assert [week for week, _ in plan.payments] == [6, 7, 8, 9]
        assert "negative" in plan.warnings[0]

    def test_early_start_warns_about_irr(self, weekly_slots):
        """Test forcing repayments right after the investment overshoots the target."""
        request = PlanRequest(
            investment=100000, target_irr=0.20, installment_count=12,
            first_repayment_week_index=1,
        )
        plan = synthesize_plan(request, _flush_context(weekly_slots))

        assert plan.payments[0][0] == 1
        assert plan.achieved_irr > 0.21
        assert any("differs from" in w for w in plan.warnings)

    def test_empty_plans(self, weekly_slots):
        context = _flush_context(weekly_slots)
        assert synthesize_plan(PlanRequest(0, 0.1, 12), context).schedule == []
        assert synthesize_plan(PlanRequest(1000, 0.0, 12), context).schedule == []
        assert synthesize_plan(PlanRequest(1000, 0.1, 0), context).schedule == []

        plan = synthesize_plan(PlanRequest(1000, 0.1, 4, investment_week_index=99), context)
        assert plan.schedule == []
        assert "outside" in plan.warnings[0]

    def test_deterministic(self, weekly_slots):
        request = PlanRequest(investment=50000, target_irr=0.15, installment_count=6, buffer_weeks=2)
        context = _context(weekly_slots, [20000.0 + 1000 * i for i in range(len(weekly_slots))])
        first = synthesize_plan(request, context)
        second = synthesize_plan(request, context)
        assert first.schedule == second.schedule
        assert first.warnings == second.warnings

    def test_export_rows(self, weekly_slots):
        request = PlanRequest(investment=100000, target_irr=0.20, installment_count=12)
        plan = synthesize_plan(request, _flush_context(weekly_slots))
        rows = plan_export_rows(plan, 0, 0.05)

        assert len(rows) == 12
        assert rows[-1]["cumulative"] == pytest.approx(120000, abs=0.01)
        assert rows[-1]["discounted_cumulative"] < rows[-1]["cumulative"]
        assert rows[0]["date"] == weekly_slots[rows[0]["week_index"]].date.isoformat()
        for rate in (-1.0, -1.5):
            undiscounted = plan_export_rows(plan, 0, rate)
            assert [row["discounted_cumulative"] for row in undiscounted] == [None] * 12
            assert undiscounted[-1]["cumulative"] == rows[-1]["cumulative"]

        empty = synthesize_plan(PlanRequest(0, 0.1, 1), _flush_context(weekly_slots))
        assert plan_export_rows(empty, 0, 0.05) == []


class TestRecompute:
    """Test the full engine recomputation."""

    @pytest.fixture
    def mapping(self):
        return ColumnMapping(label_row=1, first_column=1, last_column=4, first_data_row=2, last_data_row=4)

    def test_timeline(self, sample_grid, mapping):
        state = EngineState(
            grid=sample_grid,
            mapping=mapping,
            base_year=2025,
            opening_balance=500,
            repayments=(DateRepayment("2025-01-13", 200),),
        )
        result = recompute(state)

        assert [s.label for s in result.weeks] == ["6 Jan", "13 Jan", "20 Jan", "27 Jan"]
        assert [r.closing_balance for r in result.rows] == [400.0, 1800.0, 500.0, 1300.0]
        assert result.negative_weeks == []
        assert result.valuation is None
        assert result.plan is None
        assert result.monthly[0]["month"] == "2025-01"
        assert result.top_rows[0]["label"] == "Sales"
        assert result.warnings == []

    def test_excluded_columns(self, sample_grid):
        mapping = ColumnMapping(1, 1, 4, 2, 4, excluded_columns=(3,))
        result = recompute(EngineState(grid=sample_grid, mapping=mapping, base_year=2025))

        assert [s.label for s in result.weeks] == ["6 Jan", "13 Jan", "27 Jan"]
        assert [r.income for r in result.rows] == [1000.0, 2500.0, 1500.0]

    def test_negative_weeks(self, sample_grid, mapping):
        result = recompute(EngineState(grid=sample_grid, mapping=mapping, base_year=2025))
        assert result.negative_weeks == [0]

    def test_valuation_skips_repayments_before_investment(self, sample_grid, mapping):
        state = EngineState(
            grid=sample_grid,
            mapping=mapping,
            base_year=2025,
            opening_balance=10000,
            repayments=(DateRepayment("2025-01-06", 300), DateRepayment("2025-01-27", 1200)),
            investment=1000,
            investment_week_index=2,
            discount_rate=0.05,
        )
        result = recompute(state)

        assert result.valuation.total_invested == 1000
        assert result.valuation.total_returned == 1200
        assert result.valuation.multiple == pytest.approx(1.2)
        assert any("precedes the investment" in w for w in result.warnings)

    def test_plan_ignores_entered_repayments(self, sample_grid, mapping):
        """Test the plan is fitted to balances before entered repayments."""
        state = EngineState(
            grid=sample_grid,
            mapping=mapping,
            base_year=2025,
            opening_balance=10000,
            repayments=(DateRepayment("2025-01-06", 12000),),
            plan_request=PlanRequest(
                investment=1000, target_irr=0.10, installment_count=2,
                first_repayment_week_index=1,
            ),
        )
        result = recompute(state)

        assert result.negative_weeks == [0, 1, 2, 3]
        payments = result.plan.payments
        assert [week for week, _ in payments] == [1, 2]
        assert all(amount == pytest.approx(550) for _, amount in payments)
