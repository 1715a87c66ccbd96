"""
Cash Flow Planner

Weekly cash-flow timeline, valuation and repayment planning engine.
"""
