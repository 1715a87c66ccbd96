"""
Tests for weekly cash-flow aggregation.
"""

import pytest

import cashflow_planner.calculations.invariants as invariants
from cashflow_planner.calculations.cashflow import (
    aggregate_cash_flows,
    cash_flow_table,
    get_negative_balance_weeks,
    monthly_totals,
    normalize_cell,
    top_impact_rows,
)
from cashflow_planner.calculations.invariants import InvariantViolation
from cashflow_planner.calculations.repayments import NormalizedRepayment
from cashflow_planner.calculations.weeks import resolve_week_slots
from cashflow_planner.config import Settings


@pytest.fixture
def grid_slots(sample_grid):
    """Week slots for the sample grid's label row (columns 1-4)."""
    return resolve_week_slots(sample_grid[1][1:5], 2025, source_columns=[1, 2, 3, 4]).slots


def _aggregate(grid, slots, repayments=(), opening_balance=0.0):
    return aggregate_cash_flows(grid, (1, 4), (2, 4), slots, list(repayments), opening_balance)


class TestNormalizeCell:
    """Test spreadsheet cell normalization."""

    def test_numbers(self):
        assert normalize_cell(12) == 12.0
        assert normalize_cell(-3.5) == -3.5

    def test_formatted_strings(self):
        assert normalize_cell("€1,200") == 1200.0
        assert normalize_cell("$ 3 400.50") == 3400.5
        assert normalize_cell("USD 10") == 10.0
        assert normalize_cell("-1,000") == -1000.0

    def test_accounting_negative(self):
        assert normalize_cell("(1,200)") == -1200.0

    def test_blanks_and_junk_are_zero(self):
        assert normalize_cell(None) == 0.0
        assert normalize_cell("") == 0.0
        assert normalize_cell("n/a") == 0.0
        assert normalize_cell(float("nan")) == 0.0
        assert normalize_cell(True) == 0.0


class TestAggregateCashFlows:
    """Test weekly totals and the running balance."""

    def test_income_and_expenditure(self, sample_grid, grid_slots):
        rows = _aggregate(sample_grid, grid_slots)
        assert [r.income for r in rows] == [1000.0, 2500.0, 0.0, 1500.0]
        assert [r.expenditure for r in rows] == [1100.0, 900.0, 1300.0, 700.0]

    def test_running_balance(self, sample_grid, grid_slots):
        """Test opening balance and repayments flow through the balance."""
        rows = _aggregate(
            sample_grid, grid_slots, [NormalizedRepayment(1, 200.0)], opening_balance=500.0
        )
        assert rows[0].opening_balance == 500.0
        assert [r.repayment for r in rows] == [0.0, 200.0, 0.0, 0.0]
        assert [r.closing_balance for r in rows] == [400.0, 1800.0, 500.0, 1300.0]

    def test_balance_continuity(self, sample_grid, grid_slots):
        rows = _aggregate(sample_grid, grid_slots, [NormalizedRepayment(2, 50.0)], 123.0)
        for current, following in zip(rows, rows[1:]):
            assert following.opening_balance == current.closing_balance
            assert current.closing_balance == pytest.approx(
                current.opening_balance + current.income - current.expenditure - current.repayment
            )

    def test_repayments_in_same_week_add_up(self, sample_grid, grid_slots):
        rows = _aggregate(
            sample_grid, grid_slots, [NormalizedRepayment(3, 10.0), NormalizedRepayment(3, 15.0)]
        )
        assert rows[3].repayment == 25.0

    def test_negative_balance_weeks(self, sample_grid, grid_slots):
        rows = _aggregate(sample_grid, grid_slots)
        assert rows[0].closing_balance == -100.0
        assert get_negative_balance_weeks(rows) == [0]

    def test_short_rows_read_as_blank(self, grid_slots):
        grid = [[], [], ["Sales", 10], ["Wages"], []]
        rows = _aggregate(grid, grid_slots)
        assert [r.income for r in rows] == [10.0, 0.0, 0.0, 0.0]

    def test_table_rows(self, sample_grid, grid_slots):
        table = cash_flow_table(_aggregate(sample_grid, grid_slots), grid_slots)
        assert table[0]["label"] == "6 Jan"
        assert table[0]["date"] == "2025-01-06"
        assert table[0]["net"] == -100.0


class TestInvariantViolations:
    """Test structurally impossible inputs."""

    def test_negative_week_index_raises_in_development(self, sample_grid, grid_slots):
        with pytest.raises(InvariantViolation):
            _aggregate(sample_grid, grid_slots, [NormalizedRepayment(-1, 10.0)])

    def test_negative_week_index_ignored_in_production(self, sample_grid, grid_slots, monkeypatch):
        monkeypatch.setattr(invariants, "get_settings", lambda: Settings(app_env="production"))
        rows = _aggregate(sample_grid, grid_slots, [NormalizedRepayment(-1, 10.0)])
        assert sum(r.repayment for r in rows) == 0.0


class TestRollups:
    """Test monthly totals and top-impact rows."""

    def test_monthly_totals(self, sample_grid, grid_slots):
        months = monthly_totals(_aggregate(sample_grid, grid_slots), grid_slots)
        assert len(months) == 1
        assert months[0]["month"] == "2025-01"
        assert months[0]["income"] == 5000.0
        assert months[0]["expenditure"] == 4000.0
        assert months[0]["weeks"] == 4
        assert months[0]["closing_balance"] == 1000.0

    def test_monthly_totals_split_by_month(self):
        grid = [[None] * 60, [100] * 60]
        slots = resolve_week_slots([f"W{n}" for n in range(2, 10)], 2025, list(range(8))).slots
        rows = aggregate_cash_flows(grid, (0, 59), (1, 1), slots, [], 0.0)
        months = monthly_totals(rows, slots)
        assert [m["month"] for m in months] == ["2025-01", "2025-02"]
        assert sum(m["weeks"] for m in months) == 8

    def test_top_impact_rows(self, sample_grid, grid_slots):
        ranked = top_impact_rows(sample_grid, (2, 4), grid_slots)
        assert [r["label"] for r in ranked] == ["Sales", "Wages", "Rent"]
        assert ranked[0]["impact"] == 5000.0
        assert ranked[1]["total"] == -3400.0
        assert len(top_impact_rows(sample_grid, (2, 4), grid_slots, limit=2)) == 2
