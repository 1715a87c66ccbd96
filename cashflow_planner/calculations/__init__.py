"""
Financial Calculation Engine

Week calendar resolution, cash-flow aggregation, date-accurate valuation and
repayment plan synthesis. Every function here is pure: results depend only on
the arguments.
"""

from cashflow_planner.calculations import weeks, repayments, cashflow, irr, plan, engine

__all__ = ["weeks", "repayments", "cashflow", "irr", "plan", "engine"]
