"""
Pytest configuration and shared fixtures.
"""

import pytest
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cashflow_planner.calculations.weeks import resolve_week_slots


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "integration: marks integration tests")


@pytest.fixture(scope="session")
def anyio_backend():
    """Backend for async tests."""
    return "asyncio"


@pytest.fixture
def sample_grid():
    """
    A small weekly sheet: title row, week labels in row 1 (columns 1-4),
    three data rows with a label column.
    """
    return [
        ["Project cash flow", None, None, None, None],
        ["Item", "6 Jan", "13 Jan", "20 Jan", "27 Jan"],
        ["Sales", "€1,000", "2,500", "", 1500],
        ["Wages", "-800", "(900)", "-1,000", "-700"],
        ["Rent", -300, "n/a", "-300", " "],
    ]


@pytest.fixture
def weekly_slots():
    """Sixty consecutive Monday weeks starting 2025-01-06."""
    headers = [f"W{n}" for n in range(2, 53)] + [f"W{n}" for n in range(1, 10)]
    return resolve_week_slots(headers, 2025).slots
